import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .schemas import ProgressEvent

logger = logging.getLogger("uvicorn.error")

EventSink = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Channel(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


async def emit_to(sink: Optional[EventSink], event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
    if sink is None:
        return
    try:
        await sink(event_type, dict(payload or {}))
    except Exception as exc:
        logger.warning("Progress sink failed on %s: %s", event_type, exc)


class ProgressEmitter:
    """One live channel per session. Delivery is best effort and never raises."""

    def __init__(self) -> None:
        self.channels: Dict[str, Channel] = {}

    async def attach(self, session_key: str, channel: Channel) -> None:
        previous = self.channels.get(session_key)
        self.channels[session_key] = channel
        if previous is not None and previous is not channel:
            try:
                await previous.close(code=4000)
            except Exception as exc:
                logger.debug("Closing replaced channel for %s failed: %s", session_key, exc)
        await self.emit(session_key, "session_started", {"sessionId": session_key})

    def detach(self, session_key: str, channel: Channel) -> None:
        if self.channels.get(session_key) is channel:
            self.channels.pop(session_key, None)

    def is_attached(self, session_key: str) -> bool:
        return session_key in self.channels

    async def emit(self, session_key: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        channel = self.channels.get(session_key)
        if channel is None:
            return
        event = ProgressEvent(type=event_type, payload=dict(payload or {}))
        try:
            await channel.send_json(event.model_dump())
        except Exception as exc:
            logger.warning("Dropping %s event for %s: %s", event_type, session_key, exc)

    def session_sink(self, session_key: str) -> EventSink:
        async def sink(event_type: str, payload: Dict[str, Any]) -> None:
            await self.emit(session_key, event_type, payload)

        return sink
