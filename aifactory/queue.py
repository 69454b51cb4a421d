"""Queue Manager: priority admission of pending executions.

A heap keyed by (priority rank, submission time, sequence) holds queued
entries. Each tick pops entries in order, checks and allocates the first
tier's resources, and hands admitted executions to the orchestrator.
Entries that cannot be admitted yet are put back; they never block
lower-priority entries whose resources are free.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from aifactory.errors import OrchestratorError, ResourceExhaustedError
from aifactory.models import AllocationSet, QueueEntry, ResourceRequirement

if TYPE_CHECKING:
    from aifactory.ledger import ExecutionLedger
    from aifactory.resources import ResourceLedger

logger = logging.getLogger(__name__)


class QueueManager:
    def __init__(
        self,
        ledger: "ExecutionLedger",
        resources: "ResourceLedger",
        requirements_for: Callable[[QueueEntry], Awaitable[list[ResourceRequirement]]],
        on_admit: Callable[[QueueEntry, AllocationSet], Awaitable[None]],
        on_reject: Callable[[QueueEntry, OrchestratorError], Awaitable[None]] | None = None,
        max_active: int = 4,
        tick_interval: float = 1.0,
        max_scan: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self._ledger = ledger
        self._resources = resources
        self._requirements_for = requirements_for
        self._on_admit = on_admit
        self._on_reject = on_reject
        self.max_active = max_active
        self.tick_interval = tick_interval
        self.max_scan = max_scan
        self._clock = clock

        self._heap: list[tuple[tuple[int, float, int], QueueEntry]] = []
        self._entries: dict[str, QueueEntry] = {}
        self._wait_estimates: dict[str, int] = {}
        self._active: set[str] = set()
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._stopping = False

    # -- entries ---------------------------------------------------------------

    async def enqueue(
        self,
        execution_id: str,
        priority: str = "normal",
        resume: bool = False,
        submitted_at: float | None = None,
    ) -> QueueEntry:
        existing = self._entries.get(execution_id)
        if existing is not None:
            return existing

        entry = QueueEntry(
            execution_id=execution_id,
            priority=priority,
            submitted_at=self._clock() if submitted_at is None else submitted_at,
            seq=next(self._seq),
            resume=resume,
        )
        self._entries[execution_id] = entry
        heapq.heappush(self._heap, (entry.key, entry))
        await self._ledger.save_queue_entry(entry)
        logger.info(f"Queued {execution_id} (priority={priority}, depth={len(self._entries)})")
        self.notify()
        return entry

    async def cancel(self, execution_id: str) -> bool:
        """Drop a queued entry. The heap slot is discarded lazily on pop."""
        entry = self._entries.pop(execution_id, None)
        self._wait_estimates.pop(execution_id, None)
        if entry is None:
            return False
        entry.status = "cancelled"
        await self._ledger.remove_queue_entry(execution_id)
        logger.info(f"Removed {execution_id} from queue")
        return True

    def finished(self, execution_id: str):
        """An admitted execution reached a terminal state; free its slot."""
        self._active.discard(execution_id)
        self.notify()

    def notify(self):
        self._wakeup.set()

    @property
    def depth(self) -> int:
        return len(self._entries)

    @property
    def active(self) -> set[str]:
        return set(self._active)

    def is_queued(self, execution_id: str) -> bool:
        return execution_id in self._entries

    # -- admission ---------------------------------------------------------------

    async def tick(self) -> list[str]:
        """One admission pass. Returns the ids admitted."""
        admitted: list[tuple[QueueEntry, AllocationSet]] = []
        try:
            async with self._lock:
                await self._resources.expire_stale()
                deferred: list[QueueEntry] = []
                try:
                    await self._scan(admitted, deferred)
                finally:
                    for entry in deferred:
                        if self._entries.get(entry.execution_id) is not entry:
                            continue
                        heapq.heappush(self._heap, (entry.key, entry))
                        await self._ledger.save_queue_entry(entry)
        finally:
            # Whatever was allocated in this pass is handed over even if the scan failed
            for entry, allocation in admitted:
                await self._hand_off(entry, allocation)
        return [entry.execution_id for entry, _ in admitted]

    async def _scan(self, admitted: list[tuple[QueueEntry, AllocationSet]], deferred: list[QueueEntry]):
        starved: set[str] = set()
        scanned = 0
        # _active already counts the entries admitted earlier in this pass
        while self._heap and len(self._active) < self.max_active and scanned < self.max_scan:
            _, entry = heapq.heappop(self._heap)
            if entry.status == "cancelled" or self._entries.get(entry.execution_id) is not entry:
                continue
            scanned += 1

            try:
                requirements = await self._requirements_for(entry)
            except OrchestratorError as e:
                await self._reject(entry, e)
                continue

            names = {r.resource_name for r in requirements}
            if names & starved:
                self._block(entry, f"waiting for {', '.join(sorted(names & starved))}")
                deferred.append(entry)
                continue

            report = self._resources.check_availability(requirements)
            if report["status"] == "unavailable":
                short = {r["resource_name"] for r in report["resources"] if r["status"] in ("unavailable", "unknown")}
                starved |= short
                self._block(entry, f"waiting for {', '.join(sorted(short))}", report["wait_estimate_ms"])
                deferred.append(entry)
                continue

            try:
                allocation = await self._resources.allocate(entry.execution_id, requirements)
            except ResourceExhaustedError as e:
                starved |= set(e.details.get("resources", []))
                self._block(entry, e.message, e.wait_estimate_ms)
                deferred.append(entry)
                continue

            entry.status = "admitted"
            entry.blocked_reason = None
            self._entries.pop(entry.execution_id, None)
            self._wait_estimates.pop(entry.execution_id, None)
            self._active.add(entry.execution_id)
            admitted.append((entry, allocation))
            await self._ledger.remove_queue_entry(entry.execution_id)

    async def _reject(self, entry: QueueEntry, error: OrchestratorError):
        logger.error(f"Cannot admit {entry.execution_id}: {error.message}")
        entry.status = "rejected"
        self._entries.pop(entry.execution_id, None)
        self._wait_estimates.pop(entry.execution_id, None)
        await self._ledger.remove_queue_entry(entry.execution_id)
        if self._on_reject is None:
            return
        try:
            await self._on_reject(entry, error)
        except Exception as e:
            logger.error(f"Reject handler failed for {entry.execution_id}: {e}", exc_info=True)

    async def _hand_off(self, entry: QueueEntry, allocation: AllocationSet):
        logger.info(f"Admitted {entry.execution_id} (priority={entry.priority})")
        try:
            await self._on_admit(entry, allocation)
        except Exception as e:
            logger.error(f"Admission handler failed for {entry.execution_id}: {e}", exc_info=True)
            await self._resources.release(allocation)
            self.finished(entry.execution_id)

    def _block(self, entry: QueueEntry, reason: str, wait_estimate_ms: int | None = None):
        if entry.status != "blocked":
            logger.warning(f"Execution {entry.execution_id} blocked: {reason}")
        entry.status = "blocked"
        entry.blocked_reason = reason
        if wait_estimate_ms is not None:
            self._wait_estimates[entry.execution_id] = wait_estimate_ms

    # -- loop ------------------------------------------------------------------------

    async def run(self):
        """Admission loop: tick on every notification or at least every ``tick_interval``."""
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Queue tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    def start(self):
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        self._stopping = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # -- views ---------------------------------------------------------------------------

    def _ordered(self) -> list[QueueEntry]:
        return sorted(self._entries.values(), key=lambda e: e.key)

    def position(self, execution_id: str) -> int | None:
        for index, entry in enumerate(self._ordered(), start=1):
            if entry.execution_id == execution_id:
                return index
        return None

    def snapshot(self) -> list[dict]:
        rows = []
        for index, entry in enumerate(self._ordered(), start=1):
            row = entry.to_dict()
            row["position"] = index
            row["wait_estimate_ms"] = self._wait_estimates.get(entry.execution_id, 0)
            rows.append(row)
        return rows
