"""
Urgency scoring for outstanding tasks.

score = priority x 2, plus a due-date bonus, plus a bonus for work already
in progress, capped at 10. Days until due are counted from `now` to the
start of the due date, rounded up, so anything due earlier today counts
as "today" and anything due yesterday as overdue.

Scores are derived values: recomputed on every request because they
depend on the wall clock.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from .config import UrgencyConfig
from .types import Task, TaskStatus, TimeHorizon, normalize_status


class Bucket(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


BUCKET_ORDER = (Bucket.URGENT, Bucket.HIGH, Bucket.MEDIUM, Bucket.LOW)


@dataclass
class ScoredTask:
    task: Task
    score: float
    days_until_due: Optional[int]
    bucket: Bucket


@dataclass
class PrioritySummary:
    total: int = 0
    overdue: int = 0
    due_today: int = 0
    due_this_week: int = 0


def utc_datetime(now: Optional[datetime] = None) -> datetime:
    """`now`, or the current time, as an aware datetime (naive -> UTC)."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def days_until_due(due: Optional[date], now: datetime) -> Optional[int]:
    """ceil((start of due date - now) / 1 day); None without a due date."""
    if due is None:
        return None
    now = utc_datetime(now)
    due_start = datetime.combine(due, time.min, tzinfo=now.tzinfo)
    return math.ceil((due_start - now).total_seconds() / 86400)


class UrgencyScorer:
    """Scores and buckets tasks using an UrgencyConfig table."""

    def __init__(self, config: Optional[UrgencyConfig] = None):
        self.config = config or UrgencyConfig()

    def due_bonus(self, days: Optional[int]) -> float:
        c = self.config
        if days is None:
            return 0.0
        if days < 0:
            return c.overdue_bonus
        if days == 0:
            return c.due_today_bonus
        if days == 1:
            return c.due_tomorrow_bonus
        if days <= c.soon_days:
            return c.soon_bonus
        if days <= c.week_days:
            return c.week_bonus
        return 0.0

    def score(self, task: Task, now: Optional[datetime] = None) -> float:
        """Urgency in [0, max_score]."""
        c = self.config
        total = task.priority * c.priority_weight
        total += self.due_bonus(days_until_due(task.due_date, utc_datetime(now)))
        if normalize_status(task.status) == TaskStatus.IN_PROGRESS.value:
            total += c.in_progress_bonus
        return float(min(max(total, 0.0), c.max_score))

    def bucket(self, score: float) -> Bucket:
        """Half-open ranges, so every score falls in exactly one bucket."""
        c = self.config
        if score >= c.urgent_threshold:
            return Bucket.URGENT
        if score >= c.high_threshold:
            return Bucket.HIGH
        if score >= c.medium_threshold:
            return Bucket.MEDIUM
        return Bucket.LOW

    def rank(self, tasks: list[Task], now: Optional[datetime] = None) -> list[ScoredTask]:
        """
        Score all tasks against one `now` and sort them.

        Order: score desc, priority desc, due date asc (undated last), id.
        """
        now = utc_datetime(now)
        scored = []
        for task in tasks:
            s = self.score(task, now)
            scored.append(ScoredTask(
                task=task,
                score=s,
                days_until_due=days_until_due(task.due_date, now),
                bucket=self.bucket(s),
            ))
        scored.sort(key=lambda st: (
            -st.score,
            -st.task.priority,
            st.task.due_date is None,
            st.task.due_date or date.max,
            st.task.id,
        ))
        return scored

    @staticmethod
    def bucketize(scored: list[ScoredTask]) -> dict[Bucket, list[ScoredTask]]:
        """Group ranked tasks by bucket, keeping their order."""
        buckets: dict[Bucket, list[ScoredTask]] = {b: [] for b in BUCKET_ORDER}
        for st in scored:
            buckets[st.bucket].append(st)
        return buckets


def priority_summary(tasks: list[Task], now: Optional[datetime] = None) -> PrioritySummary:
    """
    Counts for the work-priorities summary line.

    Due this week includes overdue tasks (anything due on or before
    today + 7 days).
    """
    today = utc_datetime(now).date()
    week_end = today + timedelta(days=7)
    summary = PrioritySummary(total=len(tasks))
    for task in tasks:
        if task.due_date is None:
            continue
        if task.due_date < today:
            summary.overdue += 1
        elif task.due_date == today:
            summary.due_today += 1
        if task.due_date <= week_end:
            summary.due_this_week += 1
    return summary


def horizon_window(horizon: TimeHorizon, now: Optional[datetime] = None
                   ) -> Optional[tuple[Optional[date], date]]:
    """
    Due-date window for a time horizon.

    Returns (earliest, latest) inclusive dates, earliest None for "no lower
    bound", or None for no due-date filter at all (ALL, which also keeps
    undated tasks).
    """
    today = utc_datetime(now).date()
    horizon = TimeHorizon(horizon)
    if horizon is TimeHorizon.TODAY:
        return (today, today)
    if horizon is TimeHorizon.WEEK:
        return (None, today + timedelta(days=7))
    if horizon is TimeHorizon.MONTH:
        return (None, today + timedelta(days=30))
    return None


def is_overdue(task: Task, now: Optional[datetime] = None) -> bool:
    """Open task whose due date is before today."""
    if task.due_date is None or task.is_closed:
        return False
    return task.due_date < utc_datetime(now).date()
