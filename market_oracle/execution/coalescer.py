# execution/coalescer.py - MARKET ORACLE - IN-FLIGHT JOIN + ID BATCHER - 2026 v1.2
# Patch vs v1.1:
# - Timer tasks tracked with running batches: close() cancels a batch the timer already started
# Patch vs v1.0:
# - Joiners are shielded: one caller giving up never cancels the shared call
# - Batcher: one timer per window, atomic drain, missing ids -> None
# - Single queued id goes to the single-entity endpoint
# - Queue hitting max_batch flushes immediately

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from market_oracle.utils.logging import log_exec

FetchOne = Callable[[str], Awaitable[Any]]
FetchMany = Callable[[Sequence[str]], Awaitable[Dict[str, Any]]]


def request_key(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Stable identity for endpoint + params (param order does not matter)."""
    p = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{endpoint}:{p}"


class RequestCoalescer:
    """Identical concurrent requests share one underlying task."""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}
        self.started = 0
        self.joined = 0

    def __len__(self) -> int:
        return len(self._inflight)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._settled(k, t))
            self.started += 1
        else:
            self.joined += 1
            log_exec.debug(f"COALESCED | {key}")
        return await asyncio.shield(task)

    def _settled(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def stats(self) -> Dict[str, int]:
        return {"in_flight": len(self._inflight), "started": self.started, "joined": self.joined}


class RequestBatcher:
    """
    Merges single-id lookups issued within `delay` seconds into one multi-id call.

    fetch_many(ids) -> {id: data}; ids absent from the mapping resolve to None.
    fetch_one(id)   -> data (used when the window holds exactly one id).
    A failed flush rejects every waiter of that batch with the same exception.
    """

    def __init__(
        self,
        fetch_many: FetchMany,
        fetch_one: FetchOne,
        delay: float = 0.1,
        max_batch: int = 50,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.fetch_many = fetch_many
        self.fetch_one = fetch_one
        self.delay = max(0.0, float(delay))
        self.max_batch = max(1, int(max_batch))
        self._sleep = sleep or asyncio.sleep

        self._queue: Dict[str, List[asyncio.Future]] = {}
        self._timer: Optional[asyncio.Task] = None
        self._running: set = set()

        # telemetry
        self.flushes = 0
        self.multi_calls = 0
        self.single_calls = 0
        self.ids_served = 0

    def pending(self) -> int:
        return len(self._queue)

    async def submit(self, item_id: str) -> Any:
        fut = asyncio.get_running_loop().create_future()
        self._queue.setdefault(item_id, []).append(fut)

        if len(self._queue) >= self.max_batch:
            self._cancel_timer()
            self._spawn(self._drain())
        elif self._timer is None:
            self._timer = self._track(asyncio.ensure_future(self._fire()))

        return await fut

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire(self) -> None:
        await self._sleep(self.delay)
        self._timer = None
        batch = self._drain()
        if batch:
            await self._run_batch(batch)

    def _drain(self) -> Dict[str, List[asyncio.Future]]:
        batch, self._queue = self._queue, {}
        return batch

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    def _spawn(self, batch: Dict[str, List[asyncio.Future]]) -> None:
        if batch:
            self._track(asyncio.ensure_future(self._run_batch(batch)))

    async def _run_batch(self, batch: Dict[str, List[asyncio.Future]]) -> None:
        ids = list(batch.keys())
        self.flushes += 1
        try:
            if len(ids) == 1:
                self.single_calls += 1
                results = {ids[0]: await self.fetch_one(ids[0])}
            else:
                self.multi_calls += 1
                log_exec.debug(f"BATCH FLUSH | {len(ids)} ids")
                results = await self.fetch_many(ids) or {}
        except asyncio.CancelledError:
            for futs in batch.values():
                for f in futs:
                    if not f.done():
                        f.cancel()
            raise
        except Exception as e:
            log_exec.warning(f"BATCH FAILED | {len(ids)} ids: {e}")
            for futs in batch.values():
                for f in futs:
                    if not f.done():
                        f.set_exception(e)
            return

        for item_id, futs in batch.items():
            value = results.get(item_id)
            self.ids_served += 1
            for f in futs:
                if not f.done():
                    f.set_result(value)

    async def close(self) -> None:
        self._cancel_timer()
        for futs in self._drain().values():
            for f in futs:
                if not f.done():
                    f.cancel()
        for t in list(self._running):
            t.cancel()

    def stats(self) -> Dict[str, int]:
        return {
            "pending": len(self._queue),
            "flushes": self.flushes,
            "multi_calls": self.multi_calls,
            "single_calls": self.single_calls,
            "ids_served": self.ids_served,
        }
