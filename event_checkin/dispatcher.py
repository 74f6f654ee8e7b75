"""
Roster change notification

Subscribers are called synchronously with the latest roster every time
it changes. There is no buffering: a subscriber only ever sees the
current roster, never a backlog.
"""

import logging
from typing import Callable, List, Sequence

from .models import AttendeeRecord

logger = logging.getLogger(__name__)

RosterListener = Callable[[Sequence[AttendeeRecord]], None]


class UpdateDispatcher:
    """Minimal observer registry for roster changes"""

    def __init__(self):
        self._listeners: List[RosterListener] = []

    def subscribe(self, listener: RosterListener) -> Callable[[], None]:
        """
        Register a listener

        Args:
            listener: Callable receiving the roster tuple

        Returns:
            Function that removes the listener; calling it twice is harmless
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, roster: Sequence[AttendeeRecord]) -> None:
        """
        Deliver a roster to every listener

        A failing listener is logged and does not stop delivery to the
        others.
        """
        snapshot = tuple(roster)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Roster listener %r failed", listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
