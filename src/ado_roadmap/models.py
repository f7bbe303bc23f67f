"""Data models for ADO Roadmap."""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime


@dataclass
class CycleTimeData:
    """Milestones and day counts derived from a work item's revision history."""

    in_progress_date: date | None = None
    qa_ready_date: date | None = None
    cycle_time_days: int | None = None
    assigned_to: str | None = None  # developer at the "In Progress" transition
    uat_ready_date: date | None = None
    qa_cycle_time_days: int | None = None
    qa_assigned_to: str | None = None  # tester at the "Ready For Test" transition


@dataclass
class WorkItem:
    """A transient copy of an Azure DevOps work item."""

    id: int
    title: str
    state: str
    work_item_type: str  # "Epic" | "Feature" | "Product Backlog Item" | ...
    created_date: datetime | None = None
    changed_date: datetime | None = None
    assigned_to: str | None = None
    due_date: date | None = None
    target_date: date | None = None
    start_date: date | None = None
    qa_complete_date: date | None = None
    closed_date: date | None = None
    area_path: str = ""
    iteration_path: str = ""
    tags: str = ""
    parent_id: int | None = None
    cycle_time: CycleTimeData | None = None


@dataclass
class DueDateChange:
    """One due date movement found in a revision history."""

    changed_date: datetime
    changed_by: str
    old_due_date: date | None
    new_due_date: date | None
    reason: str
    work_item_id: int | None = None


@dataclass
class DeveloperDueDateStats:
    developer: str
    total_changes: int = 0
    reason_breakdown: dict[str, int] = field(default_factory=dict)


@dataclass
class HitRateDetail:
    id: int
    title: str
    due_date: date
    completion_date: date | None
    hit: bool
    status: str  # "hit" | "miss" | "in-progress"


@dataclass
class DueDateHitRateStats:
    developer: str
    total_work_items: int = 0
    hit_due_date: int = 0
    missed_due_date: int = 0
    hit_rate: float = 0.0
    work_item_details: list[HitRateDetail] = field(default_factory=list)


@dataclass
class PullRequestDetail:
    id: int
    title: str
    time_in_pull_request_days: float
    entered_pull_request_date: date
    exited_pull_request_date: date | None


@dataclass
class PullRequestTimeStats:
    developer: str
    total_items_in_pull_request: int = 0
    average_time_in_pull_request: float = 0.0
    total_time_in_pull_request: float = 0.0
    work_item_details: list[PullRequestDetail] = field(default_factory=list)


@dataclass
class BugSummary:
    id: int
    title: str
    state: str


@dataclass
class PbiBugDetail:
    id: int
    title: str
    bug_count: int
    bugs: list[BugSummary] = field(default_factory=list)


@dataclass
class QABugStats:
    developer: str
    total_pbis: int = 0
    total_bugs: int = 0
    average_bugs_per_pbi: float = 0.0
    pbi_details: list[PbiBugDetail] = field(default_factory=list)


@dataclass
class RoadmapItem:
    """An Epic or Feature with its completion and health computed from children."""

    id: int
    title: str
    work_item_type: str
    target_date: date
    state: str
    created_date: datetime | None
    assigned_to: str | None
    completion_percentage: int
    child_count: int
    completed_count: int
    health_status: str  # "on-track" | "at-risk" | "behind" | "ahead"
    days_remaining: int
    time_elapsed_percentage: float
    children: list[WorkItem] = field(default_factory=list)


@dataclass
class TimelineColumn:
    label: str
    start_date: date
    end_date: date
    is_current_period: bool


@dataclass
class RoadmapResult:
    """Complete result of a roadmap fetch."""

    items: list[RoadmapItem]
    timeline: list[TimelineColumn]
    view: str  # "monthly" | "quarterly"
    generated_on: date


@dataclass
class Deployment:
    id: str
    release_version: str
    environment: str  # "dev" | "staging" | "production"
    work_item_ids: list[int]
    deployed_by: str
    deployed_at: str
    notes: str | None = None


@dataclass
class ReleaseEpic:
    id: int
    title: str
    version: str
    status: str
    start_date: date | None
    target_date: date | None
    progress: int
    completed_items: int
    total_items: int


@dataclass
class ReleaseMetrics:
    release_version: str
    total_features: int
    completed_features: int
    in_progress_features: int
    blocked_features: int
    ready_for_release_features: int
    average_lead_time: float | None
    deployment_history: list[Deployment] = field(default_factory=list)


def to_json_dict(obj):
    """Convert a model (or list/dict of models) to JSON-serializable data."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_json_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): to_json_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json_dict(v) for v in obj]
    return obj
