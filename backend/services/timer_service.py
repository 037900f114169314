"""
Session-scoped timers on the asyncio event loop.

Callbacks are plain synchronous functions; the game session only ever passes
callbacks that enqueue a command, so no timer ever touches session state
directly. Handles can be registered under a key: scheduling the same key again
replaces (cancels) the previous handle. close() cancels everything and turns
any later scheduling into a no-op.
"""
import asyncio
import itertools
import logging
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


class TimerHandle:
    """Cancellable reference to a one-shot or periodic timer."""

    def __init__(self, key: Optional[str]):
        self.id = next(_handle_ids)
        self.key = key
        self.cancelled = False
        self.fired = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()


class TimerService:
    def __init__(self, owner: str = "session"):
        self._owner = owner
        self._handles: Dict[int, TimerHandle] = {}
        self._keyed: Dict[str, TimerHandle] = {}
        self._closed = False

    # ── Scheduling ─────────────────────────────────────────────────────────────

    def after(
        self, delay: float, callback: Callable[[], None], key: Optional[str] = None
    ) -> TimerHandle:
        """Run callback once after `delay` seconds."""
        handle = self._register(key)
        if handle.cancelled:
            return handle
        loop = asyncio.get_running_loop()
        handle._loop_handle = loop.call_later(max(0.0, delay), self._fire_once, handle, callback)
        return handle

    def every(
        self, interval: float, callback: Callable[[], None], key: Optional[str] = None
    ) -> TimerHandle:
        """Run callback every `interval` seconds until cancelled."""
        handle = self._register(key)
        if handle.cancelled:
            return handle
        handle._task = asyncio.create_task(
            self._repeat(handle, interval, callback), name=f"timer-{self._owner}-{key or handle.id}"
        )
        return handle

    def cancel(self, key: str) -> bool:
        """Cancel the handle registered under `key`. Returns True if one was active."""
        handle = self._keyed.pop(key, None)
        if handle is None:
            return False
        was_active = handle.active
        handle.cancel()
        self._handles.pop(handle.id, None)
        return was_active

    def stop_all(self) -> None:
        """Cancel every outstanding handle of this session."""
        for handle in list(self._handles.values()):
            handle.cancel()
        self._handles.clear()
        self._keyed.clear()

    def close(self) -> None:
        """stop_all() and refuse any further scheduling."""
        self._closed = True
        self.stop_all()

    # ── Introspection ─────────────────────────────────────────────────────────

    def is_active(self, key: str) -> bool:
        handle = self._keyed.get(key)
        return bool(handle and handle.active)

    def active_keys(self) -> List[str]:
        return sorted(k for k, h in self._keyed.items() if h.active)

    @property
    def active_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.active)

    # ── Internal ─────────────────────────────────────────────────────────────

    def _register(self, key: Optional[str]) -> TimerHandle:
        handle = TimerHandle(key)
        if self._closed:
            handle.cancel()
            return handle
        if key is not None:
            self.cancel(key)
            self._keyed[key] = handle
        self._handles[handle.id] = handle
        return handle

    def _forget(self, handle: TimerHandle) -> None:
        self._handles.pop(handle.id, None)
        if handle.key is not None and self._keyed.get(handle.key) is handle:
            self._keyed.pop(handle.key, None)

    def _fire_once(self, handle: TimerHandle, callback: Callable[[], None]) -> None:
        if handle.cancelled:
            return
        handle.fired = True
        self._forget(handle)
        try:
            callback()
        except Exception:
            logger.exception("[%s] Timer callback %s failed", self._owner, handle.key or handle.id)

    async def _repeat(
        self, handle: TimerHandle, interval: float, callback: Callable[[], None]
    ) -> None:
        try:
            while not handle.cancelled:
                await asyncio.sleep(interval)
                if handle.cancelled:
                    break
                try:
                    callback()
                except Exception:
                    logger.exception("[%s] Periodic timer %s failed", self._owner, handle.key or handle.id)
        except asyncio.CancelledError:
            pass
