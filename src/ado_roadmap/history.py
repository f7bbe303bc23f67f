"""Revision-history scans: cycle time milestones and due date movements.

All functions take the raw revision list returned by the revisions endpoint,
oldest first, where each revision is a dict with a "fields" snapshot.
"""

import math
import re
from datetime import date, datetime

from ado_roadmap.models import CycleTimeData, DueDateChange

STATE_FIELD = "System.State"
CHANGED_DATE_FIELD = "System.ChangedDate"
CHANGED_BY_FIELD = "System.ChangedBy"
ASSIGNED_TO_FIELD = "System.AssignedTo"
HISTORY_FIELD = "System.History"
CLOSED_DATE_FIELD = "Microsoft.VSTS.Common.ClosedDate"
DUE_DATE_FIELD = "Microsoft.VSTS.Scheduling.DueDate"

IN_PROGRESS_STATE = "In Progress"
READY_FOR_TEST_STATE = "Ready For Test"
UAT_READY_STATE = "UAT - Ready For Test"
PULL_REQUEST_STATE = "In Pull Request"

REASON_FIELDS = (
    "Custom.DueDateMovementReasons",
    "Custom.DueDateMovementReason",
    "Custom.DueDateReason",
)

# Written by update_due_date into System.History; older revisions only carry
# the reason there, so the pattern must keep matching that exact wording.
HISTORY_REASON_PATTERN = re.compile(r"Due date change reason:\s*(.+?)(?:<|$)", re.IGNORECASE)

NO_REASON = "No reason provided"
UNKNOWN_CHANGED_BY = "Unknown"

SECONDS_PER_DAY = 24 * 60 * 60


def parse_timestamp(value) -> datetime | None:
    """Parse an ADO timestamp ("2024-01-05T10:00:00.123Z") into an aware datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_date(value) -> date | None:
    """Reduce an ADO date or timestamp to the local calendar date."""
    if not value:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone()
    return parsed.date()


def identity_name(value) -> str | None:
    """Display name from an ADO identity reference, or the value itself if it is a string."""
    if not value:
        return None
    if isinstance(value, dict):
        return value.get("displayName") or value.get("uniqueName")
    return str(value)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounded up."""
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def _fields(revision: dict) -> dict:
    return revision.get("fields") or {}


def calculate_cycle_time(revisions: list[dict]) -> CycleTimeData | None:
    """Find the first entry into each tracked state and the day counts between them.

    The developer is whoever was assigned when the item first went In Progress;
    the tester is whoever was assigned when it first went Ready For Test.
    Returns None for an empty history.
    """
    if not revisions:
        return None

    in_progress_at: datetime | None = None
    qa_ready_at: datetime | None = None
    uat_ready_at: datetime | None = None
    developer: str | None = None
    tester: str | None = None

    for revision in revisions:
        fields = _fields(revision)
        state = fields.get(STATE_FIELD)
        changed_at = parse_timestamp(fields.get(CHANGED_DATE_FIELD))
        if changed_at is None:
            continue

        if in_progress_at is None and state == IN_PROGRESS_STATE:
            in_progress_at = changed_at
            developer = identity_name(fields.get(ASSIGNED_TO_FIELD))
        elif qa_ready_at is None and state == READY_FOR_TEST_STATE:
            qa_ready_at = changed_at
            tester = identity_name(fields.get(ASSIGNED_TO_FIELD))
        elif uat_ready_at is None and state == UAT_READY_STATE:
            uat_ready_at = changed_at

    cycle_time_days = None
    if in_progress_at and qa_ready_at:
        cycle_time_days = days_between(in_progress_at, qa_ready_at)

    qa_cycle_time_days = None
    if qa_ready_at and uat_ready_at:
        qa_cycle_time_days = days_between(qa_ready_at, uat_ready_at)

    return CycleTimeData(
        in_progress_date=normalize_date(in_progress_at),
        qa_ready_date=normalize_date(qa_ready_at),
        cycle_time_days=cycle_time_days,
        assigned_to=developer,
        uat_ready_date=normalize_date(uat_ready_at),
        qa_cycle_time_days=qa_cycle_time_days,
        qa_assigned_to=tester,
    )


def parse_history_reason(history: str | None) -> str | None:
    """Pull a due date change reason out of a System.History comment.

    Best effort: returns None when the comment does not carry the
    "Due date change reason:" marker or the reason after it is empty.
    """
    if not history:
        return None
    match = HISTORY_REASON_PATTERN.search(history)
    if not match:
        return None
    reason = match.group(1).strip()
    return reason or None


def _reason_from_fields(fields: dict) -> str:
    for name in REASON_FIELDS:
        value = fields.get(name)
        if value:
            return str(value)
    return parse_history_reason(fields.get(HISTORY_FIELD)) or NO_REASON


def extract_due_date_changes(
    revisions: list[dict], work_item_id: int | None = None
) -> list[DueDateChange]:
    """List every revision whose due date differs from the previous revision's.

    The first revision has nothing to compare against and never produces a
    change. Dates are compared as calendar days, so re-saving the same day
    with a different time is not a change.
    """
    changes: list[DueDateChange] = []
    previous: date | None = None

    for index, revision in enumerate(revisions):
        fields = _fields(revision)
        current = normalize_date(fields.get(DUE_DATE_FIELD))
        changed_at = parse_timestamp(fields.get(CHANGED_DATE_FIELD))

        if index > 0 and current != previous and changed_at is not None:
            changes.append(
                DueDateChange(
                    changed_date=changed_at,
                    changed_by=identity_name(fields.get(CHANGED_BY_FIELD)) or UNKNOWN_CHANGED_BY,
                    old_due_date=previous,
                    new_due_date=current,
                    reason=_reason_from_fields(fields),
                    work_item_id=work_item_id,
                )
            )
        previous = current

    return changes


def find_state_entry(revisions: list[dict], states: tuple[str, ...]) -> datetime | None:
    """Timestamp of the first revision whose state is in `states`."""
    for revision in revisions:
        fields = _fields(revision)
        if fields.get(STATE_FIELD) in states:
            changed_at = parse_timestamp(fields.get(CHANGED_DATE_FIELD))
            if changed_at is not None:
                return changed_at
    return None


def find_completion_date(revisions: list[dict], completed_states: tuple[str, ...]) -> date | None:
    """Date the item first reached a completed state, falling back to ClosedDate."""
    entered = find_state_entry(revisions, completed_states)
    if entered is not None:
        return normalize_date(entered)
    for revision in reversed(revisions):
        closed = normalize_date(_fields(revision).get(CLOSED_DATE_FIELD))
        if closed is not None:
            return closed
    return None


def time_in_state(
    revisions: list[dict], state: str
) -> tuple[datetime, datetime | None] | None:
    """When the item first entered `state` and when it next left it.

    Returns None if the item never entered the state; the exit is None while
    the item is still there.
    """
    entered: datetime | None = None
    for revision in revisions:
        fields = _fields(revision)
        changed_at = parse_timestamp(fields.get(CHANGED_DATE_FIELD))
        if changed_at is None:
            continue
        current_state = fields.get(STATE_FIELD)
        if entered is None:
            if current_state == state:
                entered = changed_at
        elif current_state != state:
            return entered, changed_at
    if entered is None:
        return None
    return entered, None
