from __future__ import annotations

"""Per-user fragment buffering with a silence timer and hard ceilings.

Each user key moves through a small state machine:

    idle --push--> buffering --(silence timer | count cap | window cap)--> flushing --> idle

A push while buffering appends and re-arms the silence timer. The timer is never
armed past first_seen_at + max_window, and reaching max_fragments or the window
flushes on the spot. The flushing entry is detached from the registry before its
callback runs, so a later push starts a fresh entry and the old timer can no
longer deliver it twice.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .utils import mask_user_id

logger = logging.getLogger("shopchat.buffer")

FlushCallback = Callable[[List[str]], Awaitable[None]]


class BufferState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    FLUSHING = "flushing"


@dataclass
class BufferEntry:
    """Pending fragments of one user plus the handle of the armed flush timer."""
    user_id: str
    first_seen_at: float
    on_flush: FlushCallback
    fragments: List[str] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None
    state: BufferState = BufferState.BUFFERING


class FragmentBuffer:
    def __init__(
        self,
        silence_sec: float,
        max_fragments: int,
        max_window_sec: float,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Purpose: Configure buffering limits and create the per-user registry.
        Inputs/Outputs: Inputs are silence window, fragment cap, absolute window
            and an optional clock; no return value.
        Side Effects / State: Creates the entry registry and flush task set.
        Dependencies: Uses asyncio timers from the running loop at push time.
        Failure Modes: Raises ValueError for non-positive limits.
        If Removed: Every fragment would trigger its own model call.
        Testing Notes: Use sub-second silence windows and a fake clock for windows.
        """
        # Validate limits once; everything else happens inside push().
        if silence_sec <= 0 or max_window_sec <= 0 or max_fragments <= 0:
            raise ValueError("buffer limits must be positive")
        self._silence_sec = silence_sec
        self._max_fragments = max_fragments
        self._max_window_sec = max_window_sec
        self._clock = clock or time.monotonic
        self._entries: Dict[str, BufferEntry] = {}
        self._tasks: Set[asyncio.Task] = set()

    def state(self, user_id: str) -> BufferState:
        entry = self._entries.get(user_id)
        return entry.state if entry else BufferState.IDLE

    def pending_users(self) -> List[str]:
        return list(self._entries)

    def push(self, user_id: str, text: str, on_flush: FlushCallback) -> Optional[asyncio.Task]:
        """Purpose: Add one fragment for a user and decide when the batch flushes.
        Inputs/Outputs: Inputs are user_id, fragment text and the async flush
            callback; returns the flush task when this push flushed immediately.
        Side Effects / State: Creates/updates the user's entry and (re)arms its timer.
        Dependencies: Must run inside the event loop; uses loop.call_later.
        Failure Modes: None raised; callback errors are logged by the flush task.
        If Removed: Inbound messages cannot be batched per user.
        Testing Notes: Three quick pushes flush once in order; the count cap
            flushes without waiting for the timer.
        """
        # Start a new entry when the user is idle.
        now = self._clock()
        entry = self._entries.get(user_id)
        if entry is None:
            entry = BufferEntry(user_id=user_id, first_seen_at=now, on_flush=on_flush)
            self._entries[user_id] = entry
        else:
            entry.on_flush = on_flush
        entry.fragments.append(text)

        elapsed = now - entry.first_seen_at
        if len(entry.fragments) >= self._max_fragments or elapsed >= self._max_window_sec:
            logger.info(
                "user=%s buffer cap reached fragments=%d elapsed=%.1fs",
                mask_user_id(user_id),
                len(entry.fragments),
                elapsed,
            )
            return self._flush(entry)

        # Re-arm the silence timer, never beyond the absolute window.
        if entry.timer is not None:
            entry.timer.cancel()
        delay = min(self._silence_sec, self._max_window_sec - elapsed)
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(delay, self._on_timer, entry)
        logger.debug(
            "user=%s buffered fragments=%d flush_in=%.1fs", mask_user_id(user_id), len(entry.fragments), delay
        )
        return None

    def _on_timer(self, entry: BufferEntry) -> None:
        # A stale timer for a replaced or already flushed entry does nothing.
        if self._entries.get(entry.user_id) is not entry or entry.state is not BufferState.BUFFERING:
            return
        entry.timer = None
        self._flush(entry)

    def _flush(self, entry: BufferEntry) -> asyncio.Task:
        """Detach the entry from the registry and run its callback as a task."""
        entry.state = BufferState.FLUSHING
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        if self._entries.get(entry.user_id) is entry:
            del self._entries[entry.user_id]
        fragments = list(entry.fragments)
        logger.info("user=%s flush fragments=%d", mask_user_id(entry.user_id), len(fragments))
        task = asyncio.get_running_loop().create_task(self._run_callback(entry, fragments))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_callback(self, entry: BufferEntry, fragments: List[str]) -> None:
        try:
            await entry.on_flush(fragments)
        except asyncio.CancelledError:
            raise
        except Exception:
            # One user's failed turn must not take the buffer down.
            logger.exception("user=%s flush callback failed", mask_user_id(entry.user_id))

    async def drain(self) -> None:
        """Wait until every running flush callback has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> int:
        """Purpose: Drop every pending entry without flushing (shutdown path).
        Inputs/Outputs: No inputs; returns the number of dropped entries.
        Side Effects / State: Cancels armed timers and empties the registry.
        Dependencies: None.
        Failure Modes: None.
        If Removed: Timers could fire into a closed event loop on shutdown.
        Testing Notes: After cancel_all no callback runs even when timers elapse.
        """
        # Cancel timers first so none can fire mid-cleanup.
        dropped = 0
        for entry in list(self._entries.values()):
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None
            entry.state = BufferState.IDLE
            dropped += 1
        self._entries.clear()
        if dropped:
            logger.warning("dropped %d pending buffers on shutdown", dropped)
        return dropped
