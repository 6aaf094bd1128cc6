"""Phase Scheduler — the periodic heartbeat that keeps tickets moving.

Every sweep runs three independent passes:

1. RESEARCH: backlog tickets with fewer than the capped number of
   research versions. The role alternates by version (author, reviewer,
   author).
2. PLANNING: research approved, no plan yet.
3. IMPLEMENTATION: plan approved, building, and no agent activity within
   the quiet period.

Within a pass, tickets are grouped by project and drawn round-robin (at
most one per project per round) up to the per-pass cap, then run in
batches of ``max_concurrent``. Each batch is awaited in full before the
next starts. A failed dispatch never aborts the batch or the sweep; its
activity marker is cleared so a later sweep retries it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Hashable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from grove.config import GroveConfig
from grove.credits import PauseManager
from grove.models import DispatchTrigger, MentionKind, Phase, Skip, Ticket
from grove.roles import Role, research_role_for_version
from grove.router import DispatchRouter, JobResult
from grove.store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


# ── Fair interleaving ────────────────────────────────────────────────────────


def round_robin(
    groups: dict[K, Sequence[T]],
    cap: int,
    skip: Callable[[T], bool] | None = None,
) -> list[T]:
    """Draw at most one item per group per round until ``cap`` or exhaustion.

    Groups are visited in insertion order. Items for which ``skip``
    returns True are passed over; the group then offers its next item.

    >>> round_robin({"A": [1, 2, 3], "B": [4], "C": [5, 6]}, cap=4)
    [1, 4, 5, 2]
    """
    queues = {key: list(items) for key, items in groups.items()}
    positions = {key: 0 for key in queues}
    selected: list[T] = []

    while len(selected) < cap:
        drew = False
        for key, queue in queues.items():
            if len(selected) >= cap:
                break
            while positions[key] < len(queue):
                item = queue[positions[key]]
                positions[key] += 1
                if skip is not None and skip(item):
                    continue
                selected.append(item)
                drew = True
                break
        if not drew:
            break
    return selected


def batched(items: Iterable[T], size: int) -> Iterator[list[T]]:
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def group_by_project(candidates: Iterable[tuple[Ticket, DispatchTrigger]]) -> dict[str, list[tuple[Ticket, DispatchTrigger]]]:
    groups: dict[str, list[tuple[Ticket, DispatchTrigger]]] = {}
    for ticket, trigger in candidates:
        groups.setdefault(ticket.project_id, []).append((ticket, trigger))
    return groups


# ── Reports ──────────────────────────────────────────────────────────────────


@dataclass
class PassReport:
    phase: Phase
    selected: list[str] = field(default_factory=list)
    results: list[JobResult] = field(default_factory=list)
    skipped: list[tuple[str, Skip]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def completed(self) -> list[str]:
        return [r.ticket_id for r in self.results if r.ok]


@dataclass
class SweepReport:
    started_at: datetime
    passes: list[PassReport] = field(default_factory=list)
    paused: bool = False

    def for_phase(self, phase: Phase) -> PassReport | None:
        return next((p for p in self.passes if p.phase == phase), None)


# ── Scheduler ────────────────────────────────────────────────────────────────


class PhaseScheduler:
    """Periodic sweep over RESEARCH, PLANNING and IMPLEMENTATION work."""

    def __init__(
        self,
        config: GroveConfig,
        store: RecordStore,
        router: DispatchRouter,
        pause: PauseManager,
    ):
        self.config = config
        self.store = store
        self.router = router
        self.pause = pause

        self.interval = config.scheduler.interval
        self._running = False
        self._task: asyncio.Task | None = None
        self._sweep_lock = asyncio.Lock()

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="phase-scheduler")
        logger.info("Phase scheduler started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Phase scheduler stopped")

    async def _loop(self) -> None:
        """Main heartbeat loop."""
        while self._running:
            try:
                await self.sweep()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Heartbeat sweep error")
                await asyncio.sleep(self.interval)

    # ── Sweep ────────────────────────────────────────────────────────────

    async def sweep(self, limit: int | None = None) -> SweepReport:
        """Run one heartbeat: all three passes, one after another."""
        async with self._sweep_lock:
            report = SweepReport(started_at=datetime.now(timezone.utc))
            if await self.pause.is_paused():
                logger.info("Heartbeat skipped: dispatching is paused")
                report.paused = True
                return report

            cap = limit if limit is not None else self.config.scheduler.per_phase_limit
            for phase, select in (
                (Phase.RESEARCH, self._research_candidates),
                (Phase.PLANNING, self._planning_candidates),
                (Phase.IMPLEMENTATION, self._implementation_candidates),
            ):
                try:
                    candidates = await select()
                except Exception:
                    logger.exception("Selecting %s candidates failed", phase.value)
                    report.passes.append(PassReport(phase=phase, errors=["selection failed"]))
                    continue
                report.passes.append(await self.run_pass(phase, candidates, cap))

            logger.info(
                "Heartbeat done: %s",
                ", ".join(f"{p.phase.value}={len(p.completed)}/{len(p.selected)}" for p in report.passes),
            )
            return report

    async def run_pass(
        self, phase: Phase, candidates: list[tuple[Ticket, DispatchTrigger]], cap: int
    ) -> PassReport:
        report = PassReport(phase=phase)
        picked = round_robin(
            group_by_project(candidates),
            cap,
            skip=lambda item: self.router.is_active(item[0].id),
        )
        report.selected = [ticket.id for ticket, _ in picked]
        if not picked:
            return report
        logger.info("%s pass: %d ticket(s) selected", phase.value, len(picked))

        for batch in batched(picked, self.config.scheduler.max_concurrent):
            outcomes = await asyncio.gather(*(self._run_one(t, trig) for t, trig in batch))
            for ticket, (skips, results, error) in zip((t for t, _ in batch), outcomes):
                report.skipped.extend((ticket.id, s) for s in skips)
                report.results.extend(results)
                if error:
                    report.errors.append(f"{ticket.id}: {error}")
        return report

    async def _run_one(
        self, ticket: Ticket, trigger: DispatchTrigger
    ) -> tuple[list[Skip], list[JobResult], str | None]:
        try:
            outcome, results = await self.router.dispatch_and_wait(ticket.id, trigger)
        except Exception as e:
            logger.exception("Dispatch for ticket %s failed", ticket.id)
            try:
                await self.store.clear_activity(ticket.id)
            except Exception:
                logger.exception("Failed to clear activity for ticket %s", ticket.id)
            return [], [], f"{type(e).__name__}: {e}"
        return outcome.skipped, results, None

    # ── Candidate selection ──────────────────────────────────────────────

    async def _research_candidates(self) -> list[tuple[Ticket, DispatchTrigger]]:
        rows = await self.store.research_candidates(self.config.scheduler.candidate_pool)
        return [
            (
                ticket,
                DispatchTrigger(kind=MentionKind.AUTO, role=research_role_for_version(version), suppress_ack=True),
            )
            for ticket, version in rows
        ]

    async def _planning_candidates(self) -> list[tuple[Ticket, DispatchTrigger]]:
        tickets = await self.store.planning_candidates(self.config.scheduler.candidate_pool)
        trigger = DispatchTrigger(kind=MentionKind.AUTO, role=Role.DEVELOPER, suppress_ack=True)
        return [(t, trigger) for t in tickets]

    async def _implementation_candidates(self) -> list[tuple[Ticket, DispatchTrigger]]:
        quiet = timedelta(seconds=self.config.scheduler.activity_quiet_period)
        tickets = await self.store.implementation_candidates(
            datetime.now(timezone.utc) - quiet, self.config.scheduler.candidate_pool
        )
        trigger = DispatchTrigger(kind=MentionKind.AUTO, role=Role.DEVELOPER, suppress_ack=True)
        return [(t, trigger) for t in tickets]
