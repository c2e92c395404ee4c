import asyncio
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from constants import SEND_TIMEOUT_SECONDS
from logging_config import get_logger
from presence import PresenceRegistry

logger = get_logger(__name__)

# Coroutine that delivers one JSON frame to a single connection
Sender = Callable[[dict], Awaitable[None]]


def make_frame(event, payload: dict) -> dict:
    # Accepts a ServerEvent member or its plain string value
    return {"event": getattr(event, "value", event), "data": payload}


class BroadcastRouter:
    """Delivers events to the connections present in a room.

    Delivery is best effort: each send is bounded by a timeout and a failing
    connection is logged and skipped, never blocking the other recipients.
    """

    def __init__(self, registry: PresenceRegistry, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.registry = registry
        self.send_timeout = send_timeout
        self._senders: Dict[str, Sender] = {}

    def register(self, connection_id: str, sender: Sender):
        self._senders[connection_id] = sender
        logger.debug(f"Registered sender for connection {connection_id}")

    def unregister(self, connection_id: str):
        if self._senders.pop(connection_id, None) is not None:
            logger.debug(f"Unregistered sender for connection {connection_id}")

    async def _deliver(self, connection_id: str, frame: dict) -> bool:
        sender = self._senders.get(connection_id)
        if sender is None:
            logger.debug(f"No sender for connection {connection_id}, dropping {frame['event']}")
            return False
        await asyncio.wait_for(sender(frame), timeout=self.send_timeout)
        return True

    async def send_to(self, connection_id: str, event: str, payload: dict) -> bool:
        try:
            return await self._deliver(connection_id, make_frame(event, payload))
        except Exception as e:
            logger.warning(f"Error sending {getattr(event, 'value', event)} to connection {connection_id}: {e}")
            return False

    async def broadcast(self, room_id: str, event: str, payload: dict, exclude: Optional[Union[str, Iterable[str]]] = None) -> int:
        frame = make_frame(event, payload)
        # exclude is one connection id or a collection of them
        excluded = {exclude} if isinstance(exclude, str) else set(exclude or ())
        targets = [conn_id for conn_id in self.registry.connections_in(room_id) if conn_id not in excluded]
        if not targets:
            return 0

        results = await asyncio.gather(*(self._deliver(conn_id, frame) for conn_id in targets), return_exceptions=True)

        delivered = 0
        for conn_id, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(f"Error sending {frame['event']} to connection {conn_id} in room {room_id}: {result!r}")
            elif result:
                delivered += 1
        logger.debug(f"Broadcast {frame['event']} to {delivered}/{len(targets)} connections in room {room_id}")
        return delivered
