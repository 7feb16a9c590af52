"""
Canonical partition plans.

A plan is an ordered list of disjoint, exhaustive filters. Time-window plans are anchored
when the plan is built and stored in sync state, so a resumed import replays the exact
same windows. Bump the version whenever a plan's shape changes: a stored plan with a
different name or version forces a fresh import.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .clock import format_timestamp, utc_now
from .models import PartitionFilter, PartitionPlan

TASK_PLAN_VERSION = 2

# (name, newer bound in days ago, older bound in days ago); newest first
TASK_WINDOWS: List[Tuple[str, Optional[int], Optional[int]]] = [
    ("last-1-day", None, 1),
    ("2-3-days", 1, 3),
    ("4-7-days", 3, 7),
    ("8-14-days", 7, 14),
    ("15-30-days", 14, 30),
    ("31-60-days", 30, 60),
    ("61-90-days", 60, 90),
    ("91-180-days", 90, 180),
    ("181-365-days", 180, 365),
    ("older", 365, None),
]


def time_window_plan(name: str, version: int, windows, anchor: Optional[datetime] = None) -> PartitionPlan:
    anchor = anchor or utc_now()

    def days_ago(n):
        return format_timestamp(anchor - timedelta(days=n))

    partitions = [
        PartitionFilter(
            name=window_name,
            edited_before=days_ago(newer) if newer is not None else None,
            edited_on_or_after=days_ago(older) if older is not None else None,
        )
        for window_name, newer, older in windows
    ]
    return PartitionPlan(name=name, version=version, created_at=format_timestamp(anchor), partitions=partitions)


def task_plan(anchor: Optional[datetime] = None) -> PartitionPlan:
    """Tasks split by last_edited_time so each window's cursor stays shallow."""
    return time_window_plan("tasks-edited-windows", TASK_PLAN_VERSION, TASK_WINDOWS, anchor)


def single_partition_plan(resource: str, anchor: Optional[datetime] = None) -> PartitionPlan:
    return PartitionPlan(
        name=f"{resource}-all",
        version=1,
        created_at=format_timestamp(anchor or utc_now()),
        partitions=[PartitionFilter(name="all")],
    )


def status_bucket_plan(resource: str, completed_status: str, anchor: Optional[datetime] = None) -> PartitionPlan:
    """Open items first, then everything carrying the completed status."""
    return PartitionPlan(
        name=f"{resource}-status-buckets",
        version=1,
        created_at=format_timestamp(anchor or utc_now()),
        partitions=[
            PartitionFilter(name="open", status_not_equals=completed_status),
            PartitionFilter(name="completed", status_equals=completed_status),
        ],
    )


CANONICAL_PLANS: Dict[str, Callable[[Optional[datetime]], PartitionPlan]] = {
    "tasks": task_plan,
    "projects": lambda anchor=None: single_partition_plan("projects", anchor),
    "time_logs": lambda anchor=None: single_partition_plan("time_logs", anchor),
}


def canonical_plan(resource: str, anchor: Optional[datetime] = None) -> PartitionPlan:
    try:
        factory = CANONICAL_PLANS[resource]
    except KeyError:
        raise ValueError(f"Unknown resource: {resource}") from None
    return factory(anchor)
