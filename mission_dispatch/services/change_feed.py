"""
In-process publish/subscribe cue for mission and offer mutations.

A cue only says "this row changed"; subscribers re-fetch whatever they
display. Delivery is at-least-once with no ordering guarantee.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

__all__ = ["ChangeEvent", "ChangeFeed"]


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    row_id: int
    mission_id: Optional[int] = None


Subscriber = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that removes it again."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    async def publish(self, table: str, row_id: int, *, mission_id: Optional[int] = None) -> None:
        event = ChangeEvent(table=table, row_id=row_id, mission_id=mission_id)
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("change feed subscriber failed for %s#%s", table, row_id)
