REDIS_ROOM_META_KEY = "room:meta:{room_id}" # hash - room fields
REDIS_ROOM_MEMBERS_KEY = "room:members:{room_id}" # sorted set - user ids scored by join order
REDIS_ROOM_MESSAGES_KEY = "room:messages:{room_id}" # list - JSON messages, append only
REDIS_ROOM_NAME_KEY = "room:name:{name}" # string - room id owning the name
REDIS_ROOMS_INDEX_KEY = "rooms:index" # sorted set - room ids scored by creation order
REDIS_USER_KEY = "user:{user_id}" # hash - username
REDIS_SEQUENCE_KEY = "seq:ordering" # counter - monotonic scores for sorted sets

# **Example `room:meta:{id}` hash fields**
# - `_id` = `{roomId}`
# - `name` = unique room name
# - `description` = free text, may be empty
# - `created_by` = user id of the creator
# - `created_at` / `updated_at` = ISO timestamps (UTC)
