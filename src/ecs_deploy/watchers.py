"""Registry of fire-and-forget background watchers."""
import logging
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


class WatcherRegistry:
    """Tracks one daemon thread per key.

    Keys are ("deployment", service, time) for stability watchers and
    ("drain", instance_id) for drain watchers. A second launch for a key
    whose watcher is still alive is ignored. Errors raised by a watcher are
    logged and never leave the thread.
    """

    def __init__(self, run_inline: bool = False):
        self.run_inline = run_inline
        self._threads: Dict[Hashable, threading.Thread] = {}
        self._lock = threading.Lock()

    def launch(self, key: Hashable, target: Callable[..., Any], *args, **kwargs) -> bool:
        """Start target in the background unless a watcher for key is in flight"""
        with self._lock:
            thread = self._threads.get(key)
            if thread is not None and thread.is_alive():
                logger.info(f"Watcher {key} already running")
                return False
            if self.run_inline:
                thread = None
            else:
                thread = threading.Thread(
                    target=self._run, args=(key, target, args, kwargs),
                    name=f"watcher-{'-'.join(str(k) for k in key) if isinstance(key, tuple) else key}",
                    daemon=True,
                )
                self._threads[key] = thread
        if thread is None:
            self._run(key, target, args, kwargs)
        else:
            thread.start()
        return True

    def _run(self, key: Hashable, target: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        logger.info(f"Watcher {key} started")
        try:
            target(*args, **kwargs)
        except Exception as e:
            logger.error(f"Watcher {key} failed: {str(e)}", exc_info=True)
        finally:
            with self._lock:
                if self._threads.get(key) is threading.current_thread():
                    del self._threads[key]
            logger.info(f"Watcher {key} finished")

    def is_running(self, key: Hashable) -> bool:
        with self._lock:
            thread = self._threads.get(key)
            return thread is not None and thread.is_alive()

    def keys(self) -> List[Hashable]:
        with self._lock:
            return [k for k, t in self._threads.items() if t.is_alive()]

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for all watchers; used by tests and the one-shot CLI commands"""
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
