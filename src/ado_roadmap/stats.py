"""Per-developer statistics derived from work item revision histories."""

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from typing import TypeVar

from ado_roadmap.batching import run_in_batches
from ado_roadmap.exceptions import AllUnitsFailedError
from ado_roadmap.history import (
    PULL_REQUEST_STATE,
    SECONDS_PER_DAY,
    extract_due_date_changes,
    find_completion_date,
    time_in_state,
)
from ado_roadmap.models import (
    BugSummary,
    CycleTimeData,
    DeveloperDueDateStats,
    DueDateChange,
    DueDateHitRateStats,
    HitRateDetail,
    PbiBugDetail,
    PullRequestDetail,
    PullRequestTimeStats,
    QABugStats,
    WorkItem,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

UNASSIGNED = "Unassigned"

HIT = "hit"
MISS = "miss"
IN_PROGRESS = "in-progress"

HIT_RATE_COMPLETED_STATES = ("UAT - Test Done", "Ready For Release", "Done", "Closed")


def _developer_of(item: WorkItem) -> str:
    return item.assigned_to or UNASSIGNED


def _matches(name: str, developer: str | None) -> bool:
    return developer is None or name == developer


def fetch_revisions(service, ids: Iterable[int], batch_size: int = 5) -> dict[int, list[dict]]:
    """Revision lists keyed by work item id; items whose lookup failed are left out."""
    revisions, _ = run_in_batches(ids, service.get_revisions, batch_size, "revision fetch")
    return revisions


def calculate_cycle_time_for_items(
    service, ids: Iterable[int], batch_size: int = 3
) -> dict[int, CycleTimeData | None]:
    """Cycle time for each id, at most `batch_size` revision lookups in flight."""
    results, failed = run_in_batches(ids, service.calculate_cycle_time, batch_size, "cycle time")
    if failed:
        logger.warning("Cycle time unavailable for %d work items", len(failed))
    return results


def collect_due_date_changes(service, ids: Iterable[int], batch_size: int = 5) -> list[DueDateChange]:
    """All due date changes across the given items, oldest item first."""
    per_item, _ = run_in_batches(
        ids, service.get_due_date_change_history_for_item, batch_size, "due date history"
    )
    changes: list[DueDateChange] = []
    for item_changes in per_item.values():
        changes.extend(item_changes)
    return changes


def aggregate_due_date_stats(
    changes: Iterable[DueDateChange], developer: str | None = None
) -> list[DeveloperDueDateStats]:
    """Group changes by who made them, with a histogram of reasons.

    Sorted by total changes, most first.
    """
    by_developer: dict[str, DeveloperDueDateStats] = {}
    for change in changes:
        if not _matches(change.changed_by, developer):
            continue
        stats = by_developer.setdefault(change.changed_by, DeveloperDueDateStats(developer=change.changed_by))
        stats.total_changes += 1
        stats.reason_breakdown[change.reason] = stats.reason_breakdown.get(change.reason, 0) + 1

    return sorted(by_developer.values(), key=lambda s: s.total_changes, reverse=True)


def merge_due_date_stats(groups: Iterable[list[DeveloperDueDateStats]]) -> list[DeveloperDueDateStats]:
    merged: dict[str, DeveloperDueDateStats] = {}
    for group in groups:
        for stats in group:
            target = merged.setdefault(stats.developer, DeveloperDueDateStats(developer=stats.developer))
            target.total_changes += stats.total_changes
            for reason, count in stats.reason_breakdown.items():
                target.reason_breakdown[reason] = target.reason_breakdown.get(reason, 0) + count
    return sorted(merged.values(), key=lambda s: s.total_changes, reverse=True)


def classify_due_date_hit(
    item: WorkItem, revisions: list[dict], today: date | None = None
) -> HitRateDetail | None:
    """Classify one item against its due date.

    A miss is any due date movement, a late completion, or an open item past
    its due date. Open items not yet due and never moved are in progress.
    Returns None for items without a due date.
    """
    if item.due_date is None:
        return None
    if today is None:
        today = date.today()

    changed = any(
        change.old_due_date is not None for change in extract_due_date_changes(revisions, item.id)
    )
    completion = None
    if item.state in HIT_RATE_COMPLETED_STATES:
        completion = find_completion_date(revisions, HIT_RATE_COMPLETED_STATES) or item.closed_date

    if changed:
        status = MISS
    elif completion is not None:
        status = HIT if completion <= item.due_date else MISS
    elif item.due_date < today:
        status = MISS
    else:
        status = IN_PROGRESS

    return HitRateDetail(
        id=item.id,
        title=item.title,
        due_date=item.due_date,
        completion_date=completion,
        hit=status == HIT,
        status=status,
    )


def _hit_rate(hits: int, total: int) -> float:
    return round(hits / total * 100, 1) if total else 0.0


def calculate_hit_rate(
    items: Iterable[WorkItem],
    revisions_by_id: dict[int, list[dict]],
    developer: str | None = None,
    today: date | None = None,
) -> list[DueDateHitRateStats]:
    """Due date hit rate per assigned developer.

    Items whose revisions could not be fetched are skipped. In-progress
    items count towards the total but neither towards hits nor misses.
    """
    by_developer: dict[str, DueDateHitRateStats] = {}
    for item in items:
        name = _developer_of(item)
        if not _matches(name, developer) or item.id not in revisions_by_id:
            continue
        detail = classify_due_date_hit(item, revisions_by_id[item.id], today)
        if detail is None:
            continue

        stats = by_developer.setdefault(name, DueDateHitRateStats(developer=name))
        stats.total_work_items += 1
        if detail.status == HIT:
            stats.hit_due_date += 1
        elif detail.status == MISS:
            stats.missed_due_date += 1
        stats.work_item_details.append(detail)

    for stats in by_developer.values():
        stats.hit_rate = _hit_rate(stats.hit_due_date, stats.total_work_items)
    return sorted(by_developer.values(), key=lambda s: s.developer)


def merge_hit_rate_stats(groups: Iterable[list[DueDateHitRateStats]]) -> list[DueDateHitRateStats]:
    merged: dict[str, DueDateHitRateStats] = {}
    for group in groups:
        for stats in group:
            target = merged.setdefault(stats.developer, DueDateHitRateStats(developer=stats.developer))
            target.total_work_items += stats.total_work_items
            target.hit_due_date += stats.hit_due_date
            target.missed_due_date += stats.missed_due_date
            target.work_item_details.extend(stats.work_item_details)
    for stats in merged.values():
        stats.hit_rate = _hit_rate(stats.hit_due_date, stats.total_work_items)
    return sorted(merged.values(), key=lambda s: s.developer)


def calculate_pull_request_time(
    items: Iterable[WorkItem],
    revisions_by_id: dict[int, list[dict]],
    developer: str | None = None,
    now: datetime | None = None,
) -> list[PullRequestTimeStats]:
    """Time each item spent in its first "In Pull Request" stint, per developer.

    Items still in pull request are measured up to `now`.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    by_developer: dict[str, PullRequestTimeStats] = {}
    for item in items:
        name = _developer_of(item)
        if not _matches(name, developer):
            continue
        stint = time_in_state(revisions_by_id.get(item.id, []), PULL_REQUEST_STATE)
        if stint is None:
            continue
        entered, exited = stint
        days = round(((exited or now) - entered).total_seconds() / SECONDS_PER_DAY, 1)

        stats = by_developer.setdefault(name, PullRequestTimeStats(developer=name))
        stats.total_items_in_pull_request += 1
        stats.total_time_in_pull_request = round(stats.total_time_in_pull_request + days, 1)
        stats.work_item_details.append(
            PullRequestDetail(
                id=item.id,
                title=item.title,
                time_in_pull_request_days=days,
                entered_pull_request_date=entered.date(),
                exited_pull_request_date=exited.date() if exited else None,
            )
        )

    for stats in by_developer.values():
        stats.average_time_in_pull_request = round(
            stats.total_time_in_pull_request / stats.total_items_in_pull_request, 1
        )
    return sorted(by_developer.values(), key=lambda s: s.developer)


def merge_pull_request_stats(groups: Iterable[list[PullRequestTimeStats]]) -> list[PullRequestTimeStats]:
    merged: dict[str, PullRequestTimeStats] = {}
    for group in groups:
        for stats in group:
            target = merged.setdefault(stats.developer, PullRequestTimeStats(developer=stats.developer))
            target.total_items_in_pull_request += stats.total_items_in_pull_request
            target.total_time_in_pull_request = round(
                target.total_time_in_pull_request + stats.total_time_in_pull_request, 1
            )
            target.work_item_details.extend(stats.work_item_details)
    for stats in merged.values():
        if stats.total_items_in_pull_request:
            stats.average_time_in_pull_request = round(
                stats.total_time_in_pull_request / stats.total_items_in_pull_request, 1
            )
    return sorted(merged.values(), key=lambda s: s.developer)


def calculate_qa_bug_stats(
    pbis: Iterable[WorkItem],
    bugs_by_parent: dict[int, list[WorkItem]],
    developer: str | None = None,
) -> list[QABugStats]:
    """Bugs raised against each developer's backlog items."""
    by_developer: dict[str, QABugStats] = {}
    for pbi in pbis:
        name = _developer_of(pbi)
        if not _matches(name, developer):
            continue
        bugs = bugs_by_parent.get(pbi.id, [])
        stats = by_developer.setdefault(name, QABugStats(developer=name))
        stats.total_pbis += 1
        stats.total_bugs += len(bugs)
        stats.pbi_details.append(
            PbiBugDetail(
                id=pbi.id,
                title=pbi.title,
                bug_count=len(bugs),
                bugs=[BugSummary(id=bug.id, title=bug.title, state=bug.state) for bug in bugs],
            )
        )

    for stats in by_developer.values():
        stats.average_bugs_per_pbi = round(stats.total_bugs / stats.total_pbis, 2)
    return sorted(by_developer.values(), key=lambda s: s.total_bugs, reverse=True)


def merge_qa_bug_stats(groups: Iterable[list[QABugStats]]) -> list[QABugStats]:
    merged: dict[str, QABugStats] = {}
    for group in groups:
        for stats in group:
            target = merged.setdefault(stats.developer, QABugStats(developer=stats.developer))
            target.total_pbis += stats.total_pbis
            target.total_bugs += stats.total_bugs
            target.pbi_details.extend(stats.pbi_details)
    for stats in merged.values():
        if stats.total_pbis:
            stats.average_bugs_per_pbi = round(stats.total_bugs / stats.total_pbis, 2)
    return sorted(merged.values(), key=lambda s: s.total_bugs, reverse=True)


def _recent_ids(service, from_date: str | None, to_date: str | None) -> list[int]:
    ids = service.query_changed_ids(from_date, to_date)
    limit = service.config.max_stats_items
    if len(ids) > limit:
        logger.info("Limiting statistics to the %d most recently changed of %d items", limit, len(ids))
    return ids[:limit]


def team_due_date_stats(service, from_date=None, to_date=None, developer=None) -> list[DeveloperDueDateStats]:
    ids = _recent_ids(service, from_date, to_date)
    changes = collect_due_date_changes(service, ids, service.config.due_date_batch_size)
    return aggregate_due_date_stats(changes, developer)


def team_hit_rate(service, from_date=None, to_date=None, developer=None, today=None) -> list[DueDateHitRateStats]:
    items = [
        item
        for item in service.get_work_items_by_ids(_recent_ids(service, from_date, to_date))
        if item.due_date is not None and _matches(_developer_of(item), developer)
    ]
    revisions = fetch_revisions(service, [item.id for item in items], service.config.due_date_batch_size)
    return calculate_hit_rate(items, revisions, developer, today)


def team_pull_request_time(service, from_date=None, to_date=None, developer=None) -> list[PullRequestTimeStats]:
    items = [
        item
        for item in service.get_work_items_by_ids(_recent_ids(service, from_date, to_date))
        if _matches(_developer_of(item), developer)
    ]
    revisions = fetch_revisions(service, [item.id for item in items], service.config.due_date_batch_size)
    return calculate_pull_request_time(items, revisions, developer)


def team_qa_bug_stats(service, from_date=None, to_date=None, developer=None) -> list[QABugStats]:
    bug_ids_by_parent = service.get_child_bugs(from_date, to_date)
    pbis = service.get_work_items_by_ids(list(bug_ids_by_parent))
    bug_ids = [bug_id for ids in bug_ids_by_parent.values() for bug_id in ids]
    bugs = {bug.id: bug for bug in service.get_work_items_by_ids(bug_ids)}
    bugs_by_parent = {
        parent_id: [bugs[bug_id] for bug_id in ids if bug_id in bugs]
        for parent_id, ids in bug_ids_by_parent.items()
    }
    return calculate_qa_bug_stats(pbis, bugs_by_parent, developer)


def collect_for_teams(teams: Iterable[T], fn: Callable[[T], R]) -> list[R]:
    """Run `fn` for every team, skipping teams that fail.

    Raises:
        AllUnitsFailedError: If there was at least one team and every one failed
    """
    results: list[R] = []
    errors: list[str] = []
    for team in teams:
        try:
            results.append(fn(team))
        except Exception as e:
            logger.warning("Skipping %r: %s", team, e)
            errors.append(str(e))

    if errors and not results:
        raise AllUnitsFailedError(f"All {len(errors)} teams failed. Last error: {errors[-1]}")
    return results
