"""Process-wide online/offline state for the remote calendar."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .models import utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityService:
    """Tracks whether the remote calendar is reachable.

    The calendar service reports transport outcomes; everything else reads
    ``is_online`` or subscribes to state changes.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Listener] = []
        self.changed_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with the new state on every change.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self.changed_at = utc_now()
        logger.info(f"Remote calendar is now {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            listener(online)

    def report_success(self) -> None:
        self.last_error = None
        self.set_online(True)

    def report_failure(self, error: Exception) -> None:
        self.last_error = str(error)
        self.set_online(False)

    def status(self) -> dict:
        return {
            'online': self._online,
            'changed_at': self.changed_at.isoformat() if self.changed_at else None,
            'last_error': self.last_error,
        }
