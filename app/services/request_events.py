import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestStateChanged:
    request_id: int
    previous_status: str
    new_status: str
    action: str
    actor_id: Optional[int] = None
    role: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


Subscriber = Callable[[RequestStateChanged], Union[None, Awaitable[Any]]]


class RequestEventBus:
    """In-process fan-out of "request X changed state" events.

    Readers such as inbox views subscribe here instead of the approval code
    knowing which caches to refresh.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    async def publish(self, event: RequestStateChanged) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Request event subscriber failed for request_id=%s status=%s: %s",
                    event.request_id,
                    event.new_status,
                    exc,
                )


request_events = RequestEventBus()
