"""Rate-limited dispatch of description requests across a pool of providers.

Each provider has a concurrency limit. Requests wait in one FIFO queue and
are handed to the first provider (in priority order) with spare capacity.
Transient failures are retried with exponential backoff; permanent failures
and exhausted retries resolve the caller's future with ``None``.

All queue and counter mutation happens on the event-loop thread, so no
provider can ever exceed its limit.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from .errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 150
DEFAULT_MAX_RETRIES = 3


class DescriptionProvider(Protocol):
    async def generate(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> Optional[str]:
        ...


@dataclass
class ProviderSlot:
    """A named provider with its concurrency limit and live in-flight count."""

    name: str
    provider: DescriptionProvider
    limit: int = 1
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.active < self.limit


@dataclass
class _Task:
    prompt: str
    max_tokens: int
    future: "asyncio.Future[Optional[str]]"
    retries: int = 0


@dataclass
class SchedulerStats:
    queued: int = 0
    in_flight: Dict[str, int] = field(default_factory=dict)
    completed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, int] = field(default_factory=dict)


class TaskScheduler:
    """Queue + per-provider limits; implements ``generate_description``."""

    def __init__(
        self,
        slots: Sequence[ProviderSlot],
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_unit: float = 1.0,
    ) -> None:
        self.slots: List[ProviderSlot] = list(slots)
        self.max_retries = max_retries
        self.backoff_unit = backoff_unit
        self._queue: Deque[_Task] = deque()
        self._running: Set["asyncio.Task[None]"] = set()
        self._timers: Dict[int, Tuple[asyncio.TimerHandle, _Task]] = {}
        self._closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.slots)

    async def generate_description(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> Optional[str]:
        """Queue *prompt* and wait for its description (``None`` on failure)."""
        if not self.slots or self._closed:
            return None
        future: "asyncio.Future[Optional[str]]" = asyncio.get_running_loop().create_future()
        self._queue.append(_Task(prompt=prompt, max_tokens=max_tokens, future=future))
        self._drain()
        return await future

    def stats(self) -> SchedulerStats:
        return SchedulerStats(
            queued=len(self._queue),
            in_flight={s.name: s.active for s in self.slots},
            completed={s.name: s.completed for s in self.slots},
            failed={s.name: s.failed for s in self.slots},
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _drain(self) -> None:
        for slot in self.slots:
            while slot.has_capacity and self._queue:
                task = self._queue.popleft()
                if task.future.done():
                    continue
                slot.active += 1
                runner = asyncio.get_running_loop().create_task(self._run(slot, task))
                self._running.add(runner)
                runner.add_done_callback(self._running.discard)

    async def _run(self, slot: ProviderSlot, task: _Task) -> None:
        try:
            text = await slot.provider.generate(task.prompt, max_tokens=task.max_tokens)
        except ProviderError as exc:
            slot.failed += 1
            if exc.retryable:
                self._retry(slot, task, exc)
            else:
                logger.error("Provider %s rejected request: %s", slot.name, exc)
                self._resolve(task, None)
        except asyncio.CancelledError:
            self._resolve(task, None)
            raise
        except Exception as exc:
            slot.failed += 1
            self._retry(slot, task, exc)
        else:
            slot.completed += 1
            self._resolve(task, text)
        finally:
            slot.active -= 1
            if not self._closed:
                self._drain()

    def _retry(self, slot: ProviderSlot, task: _Task, exc: BaseException) -> None:
        if self._closed or task.retries >= self.max_retries:
            logger.error(
                "Giving up after %d retries (last provider %s): %s", task.retries, slot.name, exc,
            )
            self._resolve(task, None)
            return
        task.retries += 1
        delay = self.backoff_unit * (2 ** task.retries)
        logger.warning(
            "Provider %s failed (%s); retry %d/%d in %.2fs",
            slot.name, exc, task.retries, self.max_retries, delay,
        )
        handle = asyncio.get_running_loop().call_later(delay, self._requeue, task)
        self._timers[id(task)] = (handle, task)

    def _requeue(self, task: _Task) -> None:
        self._timers.pop(id(task), None)
        if self._closed:
            self._resolve(task, None)
            return
        self._queue.append(task)
        self._drain()

    @staticmethod
    def _resolve(task: _Task, value: Optional[str]) -> None:
        if not task.future.done():
            task.future.set_result(value)

    async def close(self) -> None:
        """Cancel backoff timers and resolve every waiting caller with ``None``."""
        self._closed = True
        for handle, waiting in self._timers.values():
            handle.cancel()
            self._resolve(waiting, None)
        self._timers.clear()
        while self._queue:
            self._resolve(self._queue.popleft(), None)
        for runner in list(self._running):
            runner.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

