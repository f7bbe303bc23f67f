"""Release metrics and release notes over the items linked to a release epic."""

from datetime import date

from ado_roadmap.exceptions import ValidationError
from ado_roadmap.models import Deployment, ReleaseMetrics, WorkItem

FEATURE_DONE_STATES = ("Done", "Closed")
READY_FOR_RELEASE_STATE = "Ready For Release"
BLOCKED_MARKER = "Blocked"
NOT_STARTED_STATES = ("New", "Removed")

NOTE_SECTIONS = (
    ("features", "Features", ("Feature", "Epic")),
    ("improvements", "Improvements", ("Product Backlog Item", "Technical Backlog Item")),
    ("bug_fixes", "Bug Fixes", ("Bug",)),
)

NOTE_FORMATS = ("json", "markdown")


def _is_blocked(item: WorkItem) -> bool:
    if item.state == BLOCKED_MARKER:
        return True
    tags = [tag.strip() for tag in (item.tags or "").split(";")]
    return BLOCKED_MARKER in tags


def calculate_release_metrics(
    version: str, items: list[WorkItem], deployments: list[Deployment]
) -> ReleaseMetrics:
    """Feature progress, lead time and deployment history for one release.

    Lead time is days from creation to close, averaged over completed features.
    """
    features = [item for item in items if item.work_item_type == "Feature"]

    completed = [f for f in features if f.state in FEATURE_DONE_STATES]
    ready = [f for f in features if f.state == READY_FOR_RELEASE_STATE]
    blocked = [f for f in features if _is_blocked(f) and f not in completed]
    in_progress = [
        f
        for f in features
        if f not in completed
        and f not in ready
        and f not in blocked
        and f.state not in NOT_STARTED_STATES
    ]

    lead_times = [
        (f.closed_date - f.created_date.date()).days
        for f in completed
        if f.closed_date is not None and f.created_date is not None
    ]
    average_lead_time = round(sum(lead_times) / len(lead_times), 1) if lead_times else None

    history = sorted(
        (d for d in deployments if d.release_version == version),
        key=lambda d: d.deployed_at,
        reverse=True,
    )

    return ReleaseMetrics(
        release_version=version,
        total_features=len(features),
        completed_features=len(completed),
        in_progress_features=len(in_progress),
        blocked_features=len(blocked),
        ready_for_release_features=len(ready),
        average_lead_time=average_lead_time,
        deployment_history=history,
    )


def _group_for_notes(items: list[WorkItem]) -> dict[str, list[WorkItem]]:
    grouped: dict[str, list[WorkItem]] = {key: [] for key, _, _ in NOTE_SECTIONS}
    for item in sorted(items, key=lambda i: i.id):
        for key, _, types in NOTE_SECTIONS:
            if item.work_item_type in types:
                grouped[key].append(item)
                break
    return grouped


def render_release_notes(
    version: str, items: list[WorkItem], fmt: str = "json", today: date | None = None
):
    """Release notes grouped into features, improvements and bug fixes.

    Returns a JSON-ready dict for "json" and a string for "markdown".

    Raises:
        ValidationError: For an unknown format
    """
    if fmt not in NOTE_FORMATS:
        raise ValidationError(f"Unknown release notes format: {fmt}. Use json or markdown")
    if today is None:
        today = date.today()

    grouped = _group_for_notes(items)

    if fmt == "json":
        return {
            "version": version,
            "generated_on": today.isoformat(),
            "total_items": sum(len(v) for v in grouped.values()),
            "sections": {
                key: [
                    {"id": item.id, "title": item.title, "state": item.state, "type": item.work_item_type}
                    for item in grouped[key]
                ]
                for key, _, _ in NOTE_SECTIONS
            },
        }

    lines = [f"# Release {version}", "", f"_Generated {today.isoformat()}_", ""]
    for key, heading, _ in NOTE_SECTIONS:
        if not grouped[key]:
            continue
        lines.append(f"## {heading}")
        lines.append("")
        lines.extend(f"- #{item.id} {item.title} ({item.state})" for item in grouped[key])
        lines.append("")
    if len(lines) == 4:
        lines.extend(["No work items are linked to this release.", ""])
    return "\n".join(lines)
