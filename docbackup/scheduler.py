# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup Scheduler - Fires tier runs on their cron schedules.

Each enabled tier's cron expression is parsed once into an APScheduler
CronTrigger. The loop computes the next fire time of every tier and
sleeps until the earliest one; it never polls. At most one run per tier
is in flight: a tier that is still running when it fires again is
skipped, and manual triggers for a busy tier raise RunInProgressError.
"""

import asyncio
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Iterable, List

import structlog
from apscheduler.triggers.cron import CronTrigger

from docbackup.config import BackupConfig, ExportFormat, Tier
from docbackup.core import BackupState, RunLog, RunPhase, run_backup
from docbackup.errors import explain_invalid_schedule
from docbackup.exceptions import ConfigurationError, RunInProgressError

logger = structlog.get_logger()

_TICK = timedelta(microseconds=1)


class BackupScheduler:
    """
    Owns the tier triggers and the runs they start.

    Example:
        scheduler = BackupScheduler(config, state)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, config: BackupConfig, state: BackupState):
        self.config = config
        self.state = state
        self._triggers: Dict[Tier, CronTrigger] = {}
        self._next: Dict[Tier, datetime | None] = {}
        self._runs: Dict[Tier, asyncio.Task] = {}
        self._cancel_events: Dict[Tier, asyncio.Event] = {}
        self._loop_task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

        for tier, tier_config in config.tiers.items():
            if not tier_config.enabled:
                continue
            try:
                self._triggers[tier] = CronTrigger.from_crontab(
                    tier_config.schedule, timezone=config.timezone
                )
            except (ValueError, TypeError, LookupError) as e:
                raise ConfigurationError(
                    explain_invalid_schedule(tier.value, tier_config.schedule, str(e))
                ) from e

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    @property
    def tiers(self) -> List[Tier]:
        """Tiers with an active schedule."""
        return list(self._triggers)

    def next_fire_times(self, now: datetime | None = None) -> Dict[Tier, datetime | None]:
        """Next fire time of every scheduled tier at or after `now`."""
        now = now or datetime.now(UTC)
        return {
            tier: trigger.get_next_fire_time(None, now)
            for tier, trigger in self._triggers.items()
        }

    async def run_pending(self, now: datetime | None = None, wait: bool = True) -> List[RunLog]:
        """
        Start a run for every tier whose fire time has passed.

        The first call only arms the schedule: tiers fire from the next
        matching time at or after `now`.

        Args:
            now: Current time (defaults to the wall clock)
            wait: Await the started runs and return their RunLogs

        Returns:
            RunLogs of the runs started (empty when wait is False)
        """
        now = now or datetime.now(UTC)
        started: List[asyncio.Task] = []

        for tier, trigger in self._triggers.items():
            if tier not in self._next:
                self._next[tier] = trigger.get_next_fire_time(None, now)

            due_at = self._next[tier]
            if due_at is None or due_at > now:
                continue

            # Missed fire times are not replayed
            self._next[tier] = trigger.get_next_fire_time(None, now + _TICK)

            if self.is_running(tier):
                logger.warning("scheduled_run_skipped", tier=tier.value, reason="tier_running")
                continue

            logger.info("scheduled_run_starting", tier=tier.value, due_at=due_at.isoformat())
            started.append(self._start(tier))

        if not wait or not started:
            return []
        return list(await asyncio.gather(*started))

    async def run_forever(self) -> None:
        """Fire runs until stop() is called, sleeping until the next fire time."""
        logger.info("scheduler_started", tiers=[t.value for t in self._triggers])

        while not self._stopping.is_set():
            now = datetime.now(UTC)
            await self.run_pending(now, wait=False)

            upcoming = [t for t in self._next.values() if t is not None]
            timeout = max((min(upcoming) - now).total_seconds(), 0.0) if upcoming else None

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                continue

        logger.info("scheduler_stopped")

    def start(self) -> None:
        """Run the scheduler loop as a background task."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self.run_forever())

    async def stop(self, abort_runs: bool = True) -> None:
        """
        Stop the loop and wait for runs in flight.

        Args:
            abort_runs: Ask running runs to stop at their next page boundary
        """
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if abort_runs:
            for tier in list(self._runs):
                self.abort(tier)
        if self._runs:
            await asyncio.gather(*self._runs.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Manual entry points
    # ------------------------------------------------------------------

    async def trigger_manual(
        self,
        collections: Iterable[str] | None = None,
        formats: Iterable[ExportFormat | str] | None = None,
        dry_run: bool = False,
    ) -> RunLog:
        """
        Run an unscheduled backup into the manual tier (never pruned).

        Raises:
            RunInProgressError: If a manual run is still in flight
        """
        return await self.trigger_tier(Tier.MANUAL, collections, formats, dry_run)

    async def trigger_tier(
        self,
        tier: Tier | str,
        collections: Iterable[str] | None = None,
        formats: Iterable[ExportFormat | str] | None = None,
        dry_run: bool = False,
    ) -> RunLog:
        """
        Run a tier now, with that tier's pruning. The schedule is untouched.

        Raises:
            RunInProgressError: If the tier is already running
        """
        tier = Tier(tier)
        if self.is_running(tier):
            raise RunInProgressError(
                f"A {tier.value} backup is already running",
                details={"tier": tier.value, "run_id": self.state["running"].get(tier.value)},
            )
        logger.info("manual_run_starting", tier=tier.value, dry_run=dry_run)
        return await self._start(tier, collections, formats, dry_run)

    def abort(self, tier: Tier | str) -> bool:
        """Cancel a tier's run at its next page boundary. False if not running."""
        tier = Tier(tier)
        event = self._cancel_events.get(tier)
        if event is None or not self.is_running(tier):
            return False
        event.set()
        logger.warning("backup_run_abort_requested", tier=tier.value)
        return True

    def is_running(self, tier: Tier | str) -> bool:
        tier = Tier(tier)
        task = self._runs.get(tier)
        return (task is not None and not task.done()) or tier.value in self.state["running"]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, now: datetime | None = None) -> Dict[str, Dict[str, Any]]:
        """Per-tier schedule, retention, running flag, phase, last and next run."""
        next_times = self.next_fire_times(now)
        result: Dict[str, Dict[str, Any]] = {}

        for tier in Tier:
            tier_config = self.config.tiers.get(tier)
            last: RunLog | None = self.state["last_runs"].get(tier.value)
            next_at = next_times.get(tier)
            result[tier.value] = {
                "enabled": tier in self._triggers,
                "schedule": tier_config.schedule if tier_config else None,
                "description": tier_config.description if tier_config else "On demand",
                "retention": tier_config.retention if tier_config else None,
                "running": self.is_running(tier),
                "running_run_id": self.state["running"].get(tier.value),
                "phase": self.state["phases"].get(tier.value, RunPhase.IDLE).value,
                "last_run_at": last.started_at.isoformat() if last else None,
                "last_status": last.status.value if last else None,
                "last_run_id": last.run_id if last else None,
                "next_run_at": next_at.isoformat() if next_at else None,
            }
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(
        self,
        tier: Tier,
        collections: Iterable[str] | None = None,
        formats: Iterable[ExportFormat | str] | None = None,
        dry_run: bool = False,
    ) -> asyncio.Task:
        cancel_event = asyncio.Event()
        self._cancel_events[tier] = cancel_event
        task = asyncio.create_task(
            run_backup(
                self.config,
                self.state,
                tier=tier,
                collections=collections,
                formats=formats,
                dry_run=dry_run,
                cancel_event=cancel_event,
            )
        )
        self._runs[tier] = task
        task.add_done_callback(lambda t, tier=tier: self._finished(tier, t))
        return task

    def _finished(self, tier: Tier, task: asyncio.Task) -> None:
        if self._runs.get(tier) is task:
            del self._runs[tier]
            self._cancel_events.pop(tier, None)
        if task.cancelled():
            logger.warning("backup_run_task_cancelled", tier=tier.value)
            return
        error = task.exception()
        if error is not None:
            logger.error("backup_run_crashed", tier=tier.value, error=str(error))
