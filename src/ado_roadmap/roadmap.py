"""Roadmap health, completion rollups and timeline layout."""

import calendar
import logging
import math
import threading
from datetime import date, datetime, time, timedelta

from ado_roadmap.batching import run_in_batches
from ado_roadmap.exceptions import AllUnitsFailedError
from ado_roadmap.models import (
    RoadmapItem,
    RoadmapResult,
    TimelineColumn,
    WorkItem,
    to_json_dict,
)

logger = logging.getLogger(__name__)

ON_TRACK = "on-track"
AT_RISK = "at-risk"
BEHIND = "behind"
AHEAD = "ahead"

DEADLINE_WARNING_THRESHOLD = 5  # days before the target date when unfinished work is behind
PLANNING_HORIZON_DAYS = 60  # unstarted work further out than this is not flagged
# Assumed velocity for the remaining-items check. Not measured; tune per team.
REASONABLE_ITEMS_PER_DAY = 1
TIME_BUFFER_FACTOR = 1.2
AHEAD_THRESHOLD = 15
AT_RISK_THRESHOLD = -10

FEATURE_COMPLETED_STATES = ("Done", "Closed")
BACKLOG_COMPLETED_STATES = ("UAT - Test Done", "Done", "Closed")

HEALTH_STATUS_COLORS = {
    ON_TRACK: "#4CAF50",
    AHEAD: "#2196F3",
    AT_RISK: "#FF9800",
    BEHIND: "#F44336",
}

HEALTH_STATUS_LABELS = {
    ON_TRACK: "On Track",
    AHEAD: "Ahead",
    AT_RISK: "At Risk",
    BEHIND: "Behind",
}


def calculate_health_status(
    completion_percentage: float,
    time_elapsed_percentage: float,
    days_remaining: int,
    remaining_items: int | None = None,
) -> str:
    """Classify progress against the schedule.

    Rules are evaluated in order and the first match wins.

    Args:
        completion_percentage: Share of children completed (0-100)
        time_elapsed_percentage: Share of the created-to-target span elapsed (0-100)
        days_remaining: Days until the target date, negative when overdue
        remaining_items: Children still open, if known

    Returns:
        One of "on-track", "at-risk", "behind", "ahead"
    """
    if days_remaining < 0:
        return ON_TRACK if completion_percentage >= 100 else BEHIND

    if completion_percentage >= 100:
        return ON_TRACK

    if days_remaining <= DEADLINE_WARNING_THRESHOLD:
        return BEHIND

    if days_remaining > PLANNING_HORIZON_DAYS and completion_percentage == 0:
        return ON_TRACK

    if remaining_items is not None and remaining_items > 0:
        days_needed = remaining_items / REASONABLE_ITEMS_PER_DAY
        if days_remaining >= days_needed * TIME_BUFFER_FACTOR:
            return ON_TRACK

    progress_delta = completion_percentage - time_elapsed_percentage
    if progress_delta > AHEAD_THRESHOLD:
        return AHEAD
    if progress_delta < AT_RISK_THRESHOLD:
        return AT_RISK
    return ON_TRACK


def _to_local_naive(value: datetime | date) -> datetime:
    """Express a date or datetime as a naive datetime in local time."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)


def calculate_days_remaining(target_date: date, today: date | None = None) -> int:
    """Whole local calendar days until `target_date` (negative when past due).

    Both ends are taken at local midnight, so the result flips sign exactly
    when the local date passes the target date.
    """
    if isinstance(target_date, datetime):
        target_date = _to_local_naive(target_date).date()
    if today is None:
        today = date.today()
    elif isinstance(today, datetime):
        today = _to_local_naive(today).date()
    return (target_date - today).days


def calculate_time_elapsed(
    created_date: datetime | date,
    target_date: date,
    now: datetime | None = None,
) -> float:
    """Percentage of the created-to-target span that has elapsed, clamped to [0, 100].

    A target on or before the creation time counts as fully elapsed.
    """
    created = _to_local_naive(created_date)
    target = _to_local_naive(target_date)
    current = _to_local_naive(now) if now is not None else datetime.now()

    total = (target - created).total_seconds()
    if total <= 0:
        return 100.0

    elapsed = (current - created).total_seconds()
    return max(0.0, min(100.0, elapsed / total * 100))


def completed_states_for(children: list[WorkItem]) -> tuple[str, ...]:
    """Completed-state set for a group of siblings.

    Feature-level children only count Done/Closed; backlog items also count
    the UAT sign-off state.
    """
    if any(child.work_item_type == "Feature" for child in children):
        return FEATURE_COMPLETED_STATES
    return BACKLOG_COMPLETED_STATES


def count_completed(children: list[WorkItem]) -> int:
    states = completed_states_for(children)
    return sum(1 for child in children if child.state in states)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_completion_percentage(children: list[WorkItem]) -> int:
    """Integer percentage (0-100) of children in a completed state; 0 when empty."""
    if not children:
        return 0
    return _round_half_up(count_completed(children) / len(children) * 100)


def build_roadmap_item(
    item: WorkItem,
    children: list[WorkItem],
    today: date | None = None,
    now: datetime | None = None,
) -> RoadmapItem:
    """Compute the roadmap view of an Epic or Feature from its direct children."""
    if item.target_date is None:
        raise ValueError(f"Work item {item.id} has no target date")

    if today is None:
        today = date.today()
    if now is None:
        now = datetime.combine(today, datetime.now().time())

    child_count = len(children)
    completed_count = count_completed(children) if children else 0
    completion = calculate_completion_percentage(children)
    created = item.created_date or datetime.combine(today, time.min)
    elapsed = calculate_time_elapsed(created, item.target_date, now=now)
    days_remaining = calculate_days_remaining(item.target_date, today=today)

    return RoadmapItem(
        id=item.id,
        title=item.title,
        work_item_type=item.work_item_type,
        target_date=item.target_date,
        state=item.state,
        created_date=item.created_date,
        assigned_to=item.assigned_to,
        completion_percentage=completion,
        child_count=child_count,
        completed_count=completed_count,
        health_status=calculate_health_status(
            completion, elapsed, days_remaining, child_count - completed_count
        ),
        days_remaining=days_remaining,
        time_elapsed_percentage=elapsed,
        children=list(children),
    )


class RoadmapCache:
    """Roadmap items cached per parent id.

    An entry is reused only while the parent's title, assignee and schedule,
    the evaluation date and every child's id, state, title and dates are
    unchanged; any difference replaces the entry wholesale.
    """

    def __init__(self) -> None:
        self._entries: dict[int, tuple[tuple, RoadmapItem]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _fingerprint(item: WorkItem, children: list[WorkItem], today: date) -> tuple:
        child_keys = sorted(
            (c.id, c.state, c.title, c.target_date, c.due_date) for c in children
        )
        return (
            today,
            item.title,
            item.assigned_to,
            item.target_date,
            item.created_date,
            item.state,
            tuple(child_keys),
        )

    def get_or_build(
        self, item: WorkItem, children: list[WorkItem], today: date | None = None
    ) -> RoadmapItem:
        if today is None:
            today = date.today()
        fingerprint = self._fingerprint(item, children, today)
        with self._lock:
            entry = self._entries.get(item.id)
            if entry is not None and entry[0] == fingerprint:
                return entry[1]

        built = build_roadmap_item(item, children, today=today)
        with self._lock:
            self._entries[item.id] = (fingerprint, built)
        return built

    def invalidate(self, parent_id: int | None = None) -> None:
        """Drop one parent's entry, or everything when no id is given."""
        with self._lock:
            if parent_id is None:
                self._entries.clear()
            else:
                self._entries.pop(parent_id, None)

    def __contains__(self, parent_id: int) -> bool:
        return parent_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def prepare_roadmap_items(
    work_items: list[WorkItem],
    include_types: list[str],
    children_by_parent: dict[int, list[WorkItem]] | None = None,
    today: date | None = None,
    cache: RoadmapCache | None = None,
) -> list[RoadmapItem]:
    """Roadmap items for scheduled Epics/Features, ordered by target date."""
    children_by_parent = children_by_parent or {}
    roadmap_items: list[RoadmapItem] = []

    for item in work_items:
        if item.work_item_type not in include_types or item.target_date is None:
            continue
        children = children_by_parent.get(item.id, [])
        if cache is not None:
            roadmap_items.append(cache.get_or_build(item, children, today=today))
        else:
            roadmap_items.append(build_roadmap_item(item, children, today=today))

    roadmap_items.sort(key=lambda r: r.target_date)
    return roadmap_items


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def generate_monthly_timeline(
    start_date: date, end_date: date, today: date | None = None
) -> list[TimelineColumn]:
    """One column per calendar month from `start_date`'s month through `end_date`."""
    if today is None:
        today = date.today()
    columns: list[TimelineColumn] = []
    year, month = start_date.year, start_date.month

    while date(year, month, 1) <= end_date:
        month_start = date(year, month, 1)
        columns.append(
            TimelineColumn(
                label=month_start.strftime("%b %Y"),
                start_date=month_start,
                end_date=_month_end(year, month),
                is_current_period=(year, month) == (today.year, today.month),
            )
        )
        year, month = _add_months(year, month, 1)

    return columns


def generate_quarterly_timeline(
    start_date: date, end_date: date, today: date | None = None
) -> list[TimelineColumn]:
    """One column per calendar quarter, starting at the quarter containing `start_date`."""
    if today is None:
        today = date.today()
    columns: list[TimelineColumn] = []
    year = start_date.year
    quarter = (start_date.month - 1) // 3
    current_quarter = (today.year, (today.month - 1) // 3)

    while date(year, quarter * 3 + 1, 1) <= end_date:
        columns.append(
            TimelineColumn(
                label=f"Q{quarter + 1} {year}",
                start_date=date(year, quarter * 3 + 1, 1),
                end_date=_month_end(year, quarter * 3 + 3),
                is_current_period=(year, quarter) == current_quarter,
            )
        )
        year, month = _add_months(year, quarter * 3 + 1, 3)
        quarter = (month - 1) // 3

    return columns


def is_date_in_column(target_date: date | str, column: TimelineColumn) -> bool:
    """Check whether a calendar date (or `YYYY-MM-DD` string) falls inside a column."""
    if isinstance(target_date, str):
        target_date = date.fromisoformat(target_date[:10])
    return column.start_date <= target_date <= column.end_date


def health_status_color(status: str) -> str:
    return HEALTH_STATUS_COLORS[status]


def health_status_label(status: str) -> str:
    return HEALTH_STATUS_LABELS[status]


def fetch_roadmap(
    service,
    include_types: list[str] | None = None,
    view: str = "monthly",
    today: date | None = None,
    cache: RoadmapCache | None = None,
    batch_size: int = 5,
) -> RoadmapResult:
    """Fetch scheduled Epics/Features with their children and compute the roadmap.

    Args:
        service: AzureDevOpsService scoped to the project/area path
        include_types: Work item types to show ("Epic", "Feature")
        view: "monthly" or "quarterly" timeline columns
        today: Evaluation date (defaults to the local date)
        cache: Optional cache of computed items keyed by parent id
        batch_size: Concurrent child lookups per batch

    Raises:
        AllUnitsFailedError: If children could not be fetched for any item
    """
    include_types = include_types or ["Epic", "Feature"]
    if today is None:
        today = date.today()

    scheduled = [
        item
        for item in service.get_roadmap_work_items(include_types)
        if item.target_date is not None
    ]

    children_by_parent, failed = run_in_batches(
        [item.id for item in scheduled],
        service.get_children,
        batch_size=batch_size,
        description="roadmap children",
    )
    if scheduled and len(failed) == len(scheduled):
        raise AllUnitsFailedError("Could not fetch children for any roadmap item.")

    available = [item for item in scheduled if item.id in children_by_parent]
    items = prepare_roadmap_items(
        available, include_types, children_by_parent, today=today, cache=cache
    )

    # Timeline runs from the earlier of today and the first target, and always
    # reaches at least nine months out.
    target_dates = [item.target_date for item in items]
    timeline_start = min([today, *target_dates])
    year, month = _add_months(today.year, today.month, 9)
    timeline_end = max([date(year, month, 1) - timedelta(days=1), *target_dates])

    if view == "quarterly":
        timeline = generate_quarterly_timeline(timeline_start, timeline_end, today=today)
    else:
        timeline = generate_monthly_timeline(timeline_start, timeline_end, today=today)

    logger.info("Built roadmap with %d items (%d skipped)", len(items), len(failed))
    return RoadmapResult(items=items, timeline=timeline, view=view, generated_on=today)


def roadmap_result_to_dict(result: RoadmapResult) -> dict:
    """Convert RoadmapResult to a JSON-serializable dict."""
    items = []
    for item in result.items:
        data = to_json_dict(item)
        data["health_label"] = health_status_label(item.health_status)
        data["health_color"] = health_status_color(item.health_status)
        data["time_elapsed_percentage"] = round(item.time_elapsed_percentage, 1)
        items.append(data)

    return {
        "items": items,
        "timeline": [to_json_dict(column) for column in result.timeline],
        "view": result.view,
        "generated_on": result.generated_on.isoformat(),
    }
