"""
Online/offline signal for the till.

The monitor probes the ledger on an interval from a daemon thread and flips
`is_online` on every change it sees. There is no debouncing: a flapping link
gives a flapping signal.
"""
import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(self, probe: Callable[[], bool], interval: float = 15.0):
        self._probe = probe
        self.interval = interval
        self._online = False
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def _check(self) -> bool:
        try:
            return bool(self._probe())
        except Exception as exc:
            logger.debug("Connectivity probe raised: %s", exc)
            return False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a transition callback; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Apply a connectivity reading. Returns True when it was a transition."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)
        logger.info("Connectivity changed: %s", 'online' if online else 'offline')
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")
        return True

    def poll_once(self) -> bool:
        self.set_online(self._check())
        return self.is_online

    def start(self) -> None:
        """Take the initial reading and start polling in the background."""
        if self._thread and self._thread.is_alive():
            return
        with self._lock:
            self._online = self._check()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='connectivity-monitor', daemon=True)
        self._thread.start()
        logger.info("Connectivity monitor started (online=%s, interval=%ss)", self.is_online, self.interval)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        self._thread = None
        with self._lock:
            self._listeners.clear()
