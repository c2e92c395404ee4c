"""Error taxonomy shared by the REST routes and the websocket gateway.

Every error carries a machine readable ``code``, a human readable ``message``
and the HTTP status used when it escapes through a REST route. On the realtime
side the same fields are sent back to the originating connection only.
"""


class ChatError(Exception):
    code = "chat_error"
    status_code = 500

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ChatError):
    code = "validation_error"
    status_code = 400


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class Conflict(ChatError):
    code = "conflict"
    status_code = 409


class DuplicateName(Conflict):
    code = "duplicate_name"


class AlreadyMember(Conflict):
    code = "already_member"


class NotMember(Conflict):
    code = "not_member"


class Unauthorized(ChatError):
    code = "unauthorized"
    status_code = 401


class PersistenceFailure(ChatError):
    code = "persistence_failure"
    status_code = 503
