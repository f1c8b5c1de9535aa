"""Connectivity monitor - tracks the platform's network presence signal.

The signal says whether the host has a usable network link, not whether the
remote API answers. It can report online while the server is unreachable;
the sync engine treats every remote call as fallible regardless.
"""

import asyncio
import logging
import socket
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# TEST-NET-1 address: connecting a UDP socket only asks the kernel for a
# route, no packet is sent
_ROUTE_PROBE_ADDR = ("192.0.2.1", 9)


def has_network_link() -> bool:
    """Check whether the host has an outbound route (link-state, no traffic)."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(_ROUTE_PROBE_ADDR)
            local_ip = sock.getsockname()[0]
    except OSError:
        return False
    return not local_ip.startswith("127.") and local_ip != "0.0.0.0"


class ConnectivityMonitor:
    """Holds the current online flag and notifies listeners on transitions."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []

    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Register ``listener(is_online)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Feed the platform signal. Listeners fire only on a real change."""
        if online == self._online:
            return
        self._online = online
        status = "online" if online else "offline"
        logger.info(f"Network change detected - {status}")
        for listener in list(self._listeners):
            _safe_call(listener, online)


class LinkStatePoller:
    """Samples the link-state signal on an interval and feeds the monitor."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        interval: float = 5.0,
        probe: Callable[[], bool] = has_network_link,
    ):
        self.monitor = monitor
        self.interval = interval
        self._probe = probe
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def poll_once(self) -> bool:
        online = self._probe()
        self.monitor.set_online(online)
        return online

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.exception("Link-state probe failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start polling on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Link-state poller started (interval: {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


def _safe_call(fn: Callable, *args) -> None:
    """Call a listener, logging instead of propagating its exceptions."""
    try:
        fn(*args)
    except Exception:
        logger.exception(f"Error in connectivity listener {getattr(fn, '__name__', fn)}")
