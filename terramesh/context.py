"""Per-request generation state: cancellation, bounded registry, debouncing."""

import asyncio
import hashlib
import json
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .errors import GenerationCancelled

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_REGISTRY_SIZE = 16


class CancellationToken:
    """Cooperative cancellation flag shared by the fetch and CPU stages.

    The flag is checked from worker threads as well as the event loop, so
    it is backed by a ``threading.Event``.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register ``callback``; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("generation was cancelled")


class GenerationStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class GenerationContext:
    """One generation request: its token, task and result slot."""
    channel: str = "default"
    signature: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    token: CancellationToken = field(default_factory=CancellationToken)
    status: GenerationStatus = GenerationStatus.pending
    progress: float = 0.0
    message: str = "Queued"
    result: Optional[Any] = None
    error: Optional[str] = None
    task: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def finished(self) -> bool:
        return self.status in (GenerationStatus.completed, GenerationStatus.failed,
                               GenerationStatus.cancelled)

    def mark_cancelled(self) -> None:
        """Cancel the token and status without touching the task."""
        self.token.cancel()
        if not self.finished:
            self.status = GenerationStatus.cancelled
            self.message = "Cancelled"

    def cancel(self) -> None:
        self.mark_cancelled()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def publish(self, result: Any) -> bool:
        """Store ``result`` unless the context was superseded meanwhile."""
        if self.token.cancelled:
            logger.info(f"Discarding result of cancelled generation {self.id}")
            return False
        self.result = result
        self.status = GenerationStatus.completed
        self.progress = 100.0
        self.message = "Complete"
        return True

    def fail(self, message: str) -> None:
        if not self.token.cancelled:
            self.status = GenerationStatus.failed
            self.progress = 0.0
            self.message = message
            self.error = message


class GenerationRegistry:
    """Bounded map of generation contexts with one active context per channel.

    Starting a new generation on a channel cancels the one in flight there.
    Beyond ``max_entries`` the oldest contexts are evicted (and cancelled if
    still running).
    """

    def __init__(self, max_entries: int = DEFAULT_REGISTRY_SIZE) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._contexts: OrderedDict[str, GenerationContext] = OrderedDict()
        self._active: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._contexts

    def start(self, channel: str = "default", signature: str = "") -> GenerationContext:
        self.cancel(channel)
        context = GenerationContext(channel=channel, signature=signature)
        self._contexts[context.id] = context
        self._active[channel] = context.id

        while len(self._contexts) > self.max_entries:
            old_id, old = self._contexts.popitem(last=False)
            old.cancel()
            if self._active.get(old.channel) == old_id:
                del self._active[old.channel]
            logger.debug(f"Evicted generation {old_id}")
        return context

    def get(self, context_id: str) -> Optional[GenerationContext]:
        return self._contexts.get(context_id)

    def active(self, channel: str = "default") -> Optional[GenerationContext]:
        context_id = self._active.get(channel)
        return self._contexts.get(context_id) if context_id else None

    def cancel(self, channel: str = "default") -> bool:
        current = self.active(channel)
        if current is None or current.finished:
            return False
        logger.info(f"Cancelling superseded generation {current.id} on '{channel}'")
        current.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every unfinished context; returns how many were cancelled."""
        cancelled = 0
        for context in self._contexts.values():
            if not context.finished:
                context.cancel()
                cancelled += 1
        return cancelled

    def find_completed(self, channel: str, signature: str) -> Optional[GenerationContext]:
        """Most recent completed context on ``channel`` with the same signature."""
        for context in reversed(self._contexts.values()):
            if (context.channel == channel and context.signature == signature
                    and context.status == GenerationStatus.completed):
                return context
        return None


class Debouncer:
    """Coalesce rapid triggers: only the last one in a quiet period runs."""

    def __init__(self, delay: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self.delay = delay
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self, func: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Schedule ``func`` after the quiet period, replacing any pending call."""
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(func))
        return self._task

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()

    async def _run(self, func):
        await asyncio.sleep(self.delay)
        return await func()


def request_signature(params: dict) -> str:
    """Stable hash of every geometry-affecting request parameter."""
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
