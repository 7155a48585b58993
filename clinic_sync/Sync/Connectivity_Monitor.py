# Connectivity_Monitor.py
# Description: Observable online/offline signal based on real server reachability.
#
# Imports
import asyncio
import logging
import threading
from typing import Callable, List, Optional
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.clinic_api.exceptions import APIConnectionError
from clinic_sync.Constants import HEALTH_CHECK_TIMEOUT, HEALTH_CHECK_RETRY_DELAY
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

OnlineCallback = Callable[[bool], None]


class ConnectivityContext:
    """
    Injectable, observable "is the server usable" flag.

    Subscribers are called synchronously with the new value on every transition
    (never on a no-op set), so they must not block.
    """

    def __init__(self, online: bool = False):
        self._online = online
        self._subscribers: List[OnlineCallback] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: OnlineCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def _set_online(self, online: bool):
        with self._lock:
            if self._online == online:
                return
            self._online = online
            subscribers = list(self._subscribers)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for callback in subscribers:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Connectivity subscriber {callback!r} raised: {e}", exc_info=True)


class StaticConnectivity(ConnectivityContext):
    """Connectivity that the host (or a test) sets explicitly."""

    def set_online(self, online: bool):
        self._set_online(online)


class ConnectivityMonitor(ConnectivityContext):
    """
    Distinguishes "interface up" from "server reachable".

    `interface_up()` starts a bounded health check of the health endpoint: any HTTP answer
    (4xx/5xx included) means online, only a transport failure means offline, in which
    case exactly one retry is made after `retry_delay`. `interface_down()` flips to
    offline immediately and cancels any health check in flight.
    """

    def __init__(self, api: ClinicAPIClient, health_path: str = "/health",
                 health_check_timeout: float = HEALTH_CHECK_TIMEOUT, retry_delay: float = HEALTH_CHECK_RETRY_DELAY,
                 initial_online: bool = False):
        super().__init__(online=initial_online)
        self.api = api
        self.health_path = health_path
        self.health_check_timeout = health_check_timeout
        self.retry_delay = retry_delay
        self._check_task: Optional[asyncio.Task] = None

    async def check_now(self) -> bool:
        """Runs one health check, applies the result and returns the new state."""
        try:
            status = await self.api.health(self.health_path, timeout=self.health_check_timeout)
            logger.debug(f"Health check answered with HTTP {status}")
            self._set_online(True)
        except APIConnectionError as e:
            logger.info(f"Health check failed, server unreachable: {e}")
            self._set_online(False)
        return self.is_online

    async def _check_with_retry(self):
        if await self.check_now():
            return
        logger.debug(f"Retrying health check in {self.retry_delay}s")
        await asyncio.sleep(self.retry_delay)
        await self.check_now()

    def _cancel_check(self):
        if self._check_task is not None and not self._check_task.done():
            self._check_task.cancel()
        self._check_task = None

    def interface_up(self) -> asyncio.Task:
        """Schedules a health check (replacing any pending one) on the running loop and returns its task."""
        self._cancel_check()
        self._check_task = asyncio.get_running_loop().create_task(self._check_with_retry(), name="ConnectivityCheck")
        return self._check_task

    def interface_down(self):
        self._cancel_check()
        self._set_online(False)

    async def close(self):
        task = self._check_task
        self._cancel_check()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

#
# End of Connectivity_Monitor.py
#######################################################################################################################
