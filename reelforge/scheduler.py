"""
Automation Scheduler: re-triggers the pipeline for 24/7 subscribers.

On every cron tick (default ``*/5 * * * *``, UTC) the scheduler asks the
user directory for automation candidates, re-checks each one's
subscription, and enqueues one create_from_topic job per eligible user.

Eligibility:
    automation switched on, plan PREMIUM_24_7, a non-blank preferred topic,
    and a subscription the SubscriptionChecker reports active.

There is no guard against a previous cycle's job for the same user still
running.

Usage:
    scheduler = AutomationScheduler(users, subscriptions, queue, notifier, activity)
    report = await scheduler.run_cycle()
    await scheduler.start()     # loop until stop()

CLI:
    python -m reelforge scheduler --once
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from reelforge.collaborators import ActivityLog, SubscriptionChecker, UserDirectory, UserProfile
from reelforge.config import DEFAULT_AUTOMATION_CRON, PREMIUM_PLAN
from reelforge.errors import ConfigError
from reelforge.job_queue import JobQueue
from reelforge.models import JobType
from reelforge.realtime import EventType, RealtimeNotifier
from reelforge.utils import _now_iso, _now_utc

logger = logging.getLogger("reelforge.scheduler")

AUTOMATED_TRIGGER_USAGE = "automated_trigger_requested"


# ===================================================================
# CRON
# ===================================================================

class CronField:
    """One field of a cron expression: ``*``, ``5``, ``1-5``, ``1,3,5``, ``*/15``, ``5/15``."""

    def __init__(self, expression: str, min_val: int, max_val: int) -> None:
        self.expression = expression
        self.min_val = min_val
        self.max_val = max_val
        self.values: Set[int] = self._parse(expression)

    def _parse(self, expr: str) -> Set[int]:
        values: Set[int] = set()
        for part in expr.split(","):
            part = part.strip()
            if not part:
                continue
            step = 1
            has_step = "/" in part
            if has_step:
                part, step_str = part.split("/", 1)
                step = int(step_str)
                if step < 1:
                    raise ValueError(f"step must be positive in {expr!r}")
            if part == "*":
                start, end = self.min_val, self.max_val
            elif "-" in part:
                start_str, end_str = part.split("-", 1)
                start, end = int(start_str), int(end_str)
            elif has_step:
                # "5/15" runs from 5 to the top of the range.
                start, end = int(part), self.max_val
            else:
                start = end = int(part)
            if not (self.min_val <= start <= self.max_val and self.min_val <= end <= self.max_val):
                raise ValueError(f"{part!r} outside {self.min_val}-{self.max_val}")
            if start > end:
                values.update(range(start, self.max_val + 1, step))
                values.update(range(self.min_val, end + 1, step))
            else:
                values.update(range(start, end + 1, step))
        if not values:
            raise ValueError(f"empty cron field {expr!r}")
        return values

    def matches(self, value: int) -> bool:
        return value in self.values

    def __repr__(self) -> str:
        return f"CronField({self.expression!r})"


class CronExpression:
    """minute hour day-of-month month day-of-week (0 = Sunday)."""

    def __init__(self, expression: str) -> None:
        self.expression = expression.strip()
        parts = self.expression.split()
        if len(parts) != 5:
            raise ConfigError(f"cron expression needs 5 fields, got {len(parts)}: {self.expression!r}")
        try:
            self.minute = CronField(parts[0], 0, 59)
            self.hour = CronField(parts[1], 0, 23)
            self.day_of_month = CronField(parts[2], 1, 31)
            self.month = CronField(parts[3], 1, 12)
            self.day_of_week = CronField(parts[4], 0, 6)
        except ValueError as exc:
            raise ConfigError(f"invalid cron expression {self.expression!r}: {exc}") from None

    def matches(self, dt: datetime) -> bool:
        weekday = (dt.weekday() + 1) % 7
        return (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.day_of_month.matches(dt.day)
            and self.month.matches(dt.month)
            and self.day_of_week.matches(weekday)
        )

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """First matching minute strictly after *after*, searching one year ahead."""
        after = after or _now_utc()
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(366 * 24 * 60):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        raise ConfigError(f"cron expression {self.expression!r} never fires")

    def __str__(self) -> str:
        return self.expression


# ===================================================================
# CYCLE
# ===================================================================

@dataclass
class CycleReport:
    started_at: str = field(default_factory=_now_iso)
    candidates: int = 0
    enqueued: int = 0
    skipped_inactive: int = 0
    skipped_ineligible: int = 0
    errors: int = 0
    operation_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def effective_topic(user: UserProfile) -> str:
    topic = user.preferred_topic.strip()
    niche = (user.preferred_niche or "").strip()
    return f"{topic} (related to {niche})" if niche else topic


class AutomationScheduler:
    """Periodic enqueuer of create_from_topic jobs for subscribers."""

    def __init__(
        self,
        users: UserDirectory,
        subscriptions: SubscriptionChecker,
        queue: JobQueue,
        notifier: Optional[RealtimeNotifier] = None,
        activity: Optional[ActivityLog] = None,
        cron: str = DEFAULT_AUTOMATION_CRON,
    ) -> None:
        self.users = users
        self.subscriptions = subscriptions
        self.queue = queue
        self.notifier = notifier
        self.activity = activity
        self.cron = CronExpression(cron)
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self.last_report: Optional[CycleReport] = None

    # -- one cycle ----------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Enqueue jobs for every eligible user.  Never raises."""
        report = CycleReport()
        try:
            candidates = self.users.find_automation_candidates()
        except Exception as exc:
            report.errors += 1
            logger.error("Automation cycle could not list candidates: %s", exc)
            self._audit("automation_cycle", "failure", details={"error": str(exc)})
            self.last_report = report
            return report

        report.candidates = len(candidates)
        for user in candidates:
            try:
                await self._process_user(user, report)
            except Exception as exc:
                report.errors += 1
                logger.error("Automation for user %s failed: %s", user.user_id, exc)
                self._audit("automation_enqueue", "failure", user_id=user.user_id,
                            details={"error": str(exc)})

        logger.info(
            "Automation cycle: %d candidate(s), %d enqueued, %d inactive, %d error(s)",
            report.candidates, report.enqueued, report.skipped_inactive, report.errors,
        )
        self.last_report = report
        return report

    async def _process_user(self, user: UserProfile, report: CycleReport) -> None:
        if not (user.automation_enabled and user.plan == PREMIUM_PLAN and user.preferred_topic.strip()):
            report.skipped_ineligible += 1
            logger.warning("Directory returned ineligible automation user %s; skipping", user.user_id)
            return
        status = self.subscriptions.check(user.user_id)
        if not status.active:
            report.skipped_inactive += 1
            logger.info("Skipping %s: subscription inactive (%s)", user.user_id, status.reason or "-")
            return

        topic = effective_topic(user)
        job = self.queue.enqueue(JobType.CREATE_FROM_TOPIC.value, {"topic": topic, "userId": user.user_id})
        report.enqueued += 1
        report.operation_ids.append(job.operation_id)
        self._audit("automation_enqueue", "success", user_id=user.user_id,
                    operation_id=job.operation_id, details={"topic": topic, "jobId": job.job_id})
        self._record_usage(user.user_id, job.operation_id)
        if self.notifier is not None:
            await self.notifier.emit(
                user.user_id, EventType.TASK_QUEUED,
                operationId=job.operation_id, jobId=job.job_id, topic=topic, source="automation",
            )

    def _record_usage(self, user_id: str, operation_id: str) -> None:
        if self.activity is None:
            return
        try:
            self.activity.record_usage(user_id, AUTOMATED_TRIGGER_USAGE, operation_id=operation_id)
        except Exception as exc:
            logger.warning("Usage record failed for %s: %s", user_id, exc)

    def _audit(self, action: str, status: str, **kwargs: Any) -> None:
        if self.activity is None:
            return
        try:
            self.activity.log(action, status, **kwargs)
        except Exception as exc:
            logger.warning("Activity log write failed for %s: %s", action, exc)

    # -- loop ---------------------------------------------------------------

    async def _loop(self) -> None:
        logger.info("Automation scheduler started (cron=%s)", self.cron)
        while not self._stopping.is_set():
            now = _now_utc()
            due = self.cron.next_run(now)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=(due - now).total_seconds())
                break
            except asyncio.TimeoutError:
                pass
            await self.run_cycle()
        logger.info("Automation scheduler stopped")

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="automation-scheduler")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    def next_fire(self, after: Optional[datetime] = None) -> datetime:
        return self.cron.next_run(after)
