"""
Connectivity Module

Tracks whether the remote store is reachable and notifies listeners when the
device comes back online (the trigger for draining the offline queue).
"""

from typing import Awaitable, Callable, List
import logging

from .exceptions import ConnectivityError

logger = logging.getLogger("field_lending.connectivity")

ReconnectListener = Callable[[], Awaitable[None]]


class ConnectivityMonitor:
    """Online/offline flag with reconnect notifications"""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[ReconnectListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def require_online(self) -> None:
        """Raise ConnectivityError when offline"""
        if not self._online:
            raise ConnectivityError("No connectivity to the remote store")

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        self._listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def mark_offline(self) -> None:
        if self._online:
            logger.info("Connectivity lost")
        self._online = False

    async def set_online(self, online: bool) -> None:
        """Update the flag; an offline -> online transition awaits every listener in order"""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info(f"Connectivity restored, notifying {len(self._listeners)} listener(s)")
            for listener in list(self._listeners):
                await listener()
        elif not online and was_online:
            logger.info("Connectivity lost")
