# Connectivity monitor: online/offline flag with transition listeners and an optional probe thread
import logging
import threading
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


class OnlineStatus:
    def __init__(self, online: bool = False):
        self._online = bool(online)
        self._lock = threading.Lock()
        self._online_listeners: List[Callable[[], None]] = []
        self._offline_listeners: List[Callable[[], None]] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_online(self) -> bool:
        return self._online

    def add_online_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` for offline -> online transitions; returns a remover."""
        with self._lock:
            self._online_listeners.append(callback)
        return lambda: self._remove(self._online_listeners, callback)

    def add_offline_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            self._offline_listeners.append(callback)
        return lambda: self._remove(self._offline_listeners, callback)

    def _remove(self, listeners: List[Callable[[], None]], callback: Callable[[], None]):
        with self._lock:
            if callback in listeners:
                listeners.remove(callback)

    def set_online(self, online: bool) -> bool:
        """Update the flag; listeners fire only on an actual transition. Returns True when it changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._online_listeners if online else self._offline_listeners)
        log.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in listeners:
            try:
                callback()
            except Exception as exc:
                log.exception("Connectivity listener %r failed: %s", callback, exc)
        return True

    def check(self, probe: Callable[[], bool]) -> bool:
        try:
            reachable = bool(probe())
        except Exception as exc:
            log.debug("Connectivity probe raised: %s", exc)
            reachable = False
        self.set_online(reachable)
        return reachable

    def start(self, probe: Callable[[], bool], interval: float = 15.0) -> threading.Thread:
        """Run ``probe`` every ``interval`` seconds on a daemon thread until ``stop()``."""
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()

        def _loop():
            while not self._stop.is_set():
                self.check(probe)
                self._stop.wait(interval)

        self._thread = threading.Thread(target=_loop, name="pos-connectivity", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
