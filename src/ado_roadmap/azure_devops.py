"""Work item operations against one Azure DevOps project/area path."""

import functools
import logging
import re
from datetime import date, datetime, time, timezone

from ado_roadmap.ado_client import (
    AdoClient,
    ApiError,
    AuthenticationError,
    NotFoundError,
    TransientApiError,
)
from ado_roadmap.ado_client import ConnectionError as AdoClientConnectionError
from ado_roadmap.batching import run_in_batches
from ado_roadmap.config import Config
from ado_roadmap.exceptions import (
    AdoApiError,
    AdoAuthError,
    AdoConnectionError,
    AdoRateLimitError,
    AllUnitsFailedError,
    ValidationError,
    WorkItemNotFoundError,
)
from ado_roadmap.history import (
    calculate_cycle_time,
    extract_due_date_changes,
    identity_name,
    normalize_date,
    parse_timestamp,
)
from ado_roadmap.models import CycleTimeData, DueDateChange, ReleaseEpic, WorkItem

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

HIERARCHY_FORWARD = "System.LinkTypes.Hierarchy-Forward"
HIERARCHY_REVERSE = "System.LinkTypes.Hierarchy-Reverse"
RELATED = "System.LinkTypes.Related"

BACKLOG_TYPES = ("Product Backlog Item", "Technical Backlog Item")
CALENDAR_TYPES = (*BACKLOG_TYPES, "Feature", "Epic")

RELEASE_TAG = "Release"
RELEASE_COMPLETED_STATES = ("Done", "Closed", "Ready For Release")

WORK_ITEM_FIELDS = [
    "System.Id",
    "System.Title",
    "System.State",
    "System.AssignedTo",
    "System.WorkItemType",
    "System.ChangedDate",
    "System.CreatedDate",
    "System.AreaPath",
    "System.IterationPath",
    "System.Tags",
    "System.Parent",
    "Microsoft.VSTS.Common.ClosedDate",
    "Microsoft.VSTS.Scheduling.DueDate",
    "Microsoft.VSTS.Scheduling.TargetDate",
    "Microsoft.VSTS.Scheduling.StartDate",
    "Custom.QACompleteDate",
]

# Fields that can be edited through update_work_item_field, by API name.
FIELD_MAP = {
    "state": "System.State",
    "assignedTo": "System.AssignedTo",
    "iterationPath": "System.IterationPath",
    "areaPath": "System.AreaPath",
    "title": "System.Title",
    "description": "System.Description",
    "qaCompleteDate": "Custom.QACompleteDate",
    "dueDate": "Microsoft.VSTS.Scheduling.DueDate",
    "targetDate": "Microsoft.VSTS.Scheduling.TargetDate",
    "startDate": "Microsoft.VSTS.Scheduling.StartDate",
}

DATE_FIELDS = {
    "Custom.QACompleteDate",
    "Microsoft.VSTS.Scheduling.DueDate",
    "Microsoft.VSTS.Scheduling.TargetDate",
    "Microsoft.VSTS.Scheduling.StartDate",
}

REFERENCE_NAME_PATTERN = re.compile(r"^[A-Za-z][\w]*(\.[\w]+)+$")


def resolve_field_name(field: str) -> str:
    """Map an API field name to its ADO reference name.

    Fully qualified reference names ("Custom.Foo") pass through unchanged.

    Raises:
        ValidationError: If the name is neither known nor a reference name
    """
    if field in FIELD_MAP:
        return FIELD_MAP[field]
    if REFERENCE_NAME_PATTERN.match(field):
        return field
    raise ValidationError(f"Unknown field: {field}")


def parse_iso_date(value: str) -> date:
    """Parse a strict YYYY-MM-DD string.

    Raises:
        ValidationError: If the value is not a valid calendar date in that format
    """
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value}") from e


def to_ado_datetime(day: date) -> str:
    """Local midnight of `day` as a UTC timestamp, the way ADO stores date fields."""
    local_midnight = datetime.combine(day, time.min).astimezone()
    return local_midnight.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _work_item_url_id(url: str | None) -> int | None:
    if not url:
        return None
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def to_work_item(raw: dict) -> WorkItem:
    """Convert a REST work item payload into a WorkItem."""
    fields = raw.get("fields", {})
    return WorkItem(
        id=raw.get("id") or fields.get("System.Id"),
        title=fields.get("System.Title", ""),
        state=fields.get("System.State", ""),
        work_item_type=fields.get("System.WorkItemType", ""),
        created_date=parse_timestamp(fields.get("System.CreatedDate")),
        changed_date=parse_timestamp(fields.get("System.ChangedDate")),
        assigned_to=identity_name(fields.get("System.AssignedTo")),
        due_date=normalize_date(fields.get("Microsoft.VSTS.Scheduling.DueDate")),
        target_date=normalize_date(fields.get("Microsoft.VSTS.Scheduling.TargetDate")),
        start_date=normalize_date(fields.get("Microsoft.VSTS.Scheduling.StartDate")),
        qa_complete_date=normalize_date(fields.get("Custom.QACompleteDate")),
        closed_date=normalize_date(fields.get("Microsoft.VSTS.Common.ClosedDate")),
        area_path=fields.get("System.AreaPath", ""),
        iteration_path=fields.get("System.IterationPath", ""),
        tags=fields.get("System.Tags", ""),
        parent_id=fields.get("System.Parent"),
    )


def translate_errors(method):
    """Re-raise client transport errors as domain exceptions."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except AuthenticationError as e:
            raise AdoAuthError(
                "Azure DevOps authentication failed. Check the personal access token in "
                "~/.ado-roadmap/config.toml."
            ) from e
        except AdoClientConnectionError as e:
            raise AdoConnectionError(str(e)) from e
        except TransientApiError as e:
            if e.status_code == 429:
                raise AdoRateLimitError(
                    "Azure DevOps rate limit exceeded. Please wait a moment and try again."
                ) from e
            raise AdoApiError(f"Azure DevOps is unavailable (HTTP {e.status_code}).") from e
        except NotFoundError as e:
            raise WorkItemNotFoundError(str(e)) from e
        except ApiError as e:
            raise AdoApiError(str(e)) from e

    return wrapper


def _quote_wiql(value: str) -> str:
    return value.replace("'", "''")


class AzureDevOpsService:
    """Domain operations scoped to one project and optional area path."""

    def __init__(
        self,
        config: Config,
        project: str | None = None,
        area_path: str | None = None,
        client: AdoClient | None = None,
    ) -> None:
        self.config = config
        self.project = project or config.project
        self.area_path = config.area_path if area_path is None else area_path
        self.client = client or AdoClient(config, project=self.project)

    def _scope_clause(self, under: bool = False) -> str:
        clause = f"[System.TeamProject] = '{_quote_wiql(self.project)}'"
        if self.area_path:
            operator = "UNDER" if under else "="
            clause += f" AND [System.AreaPath] {operator} '{_quote_wiql(self.area_path)}'"
        return clause

    @staticmethod
    def _type_clause(types) -> str:
        return "(" + " OR ".join(
            f"[System.WorkItemType] = '{_quote_wiql(t)}'" for t in types
        ) + ")"

    def _fetch(self, ids: list[int]) -> list[WorkItem]:
        if not ids:
            return []
        return [to_work_item(raw) for raw in self.client.get_work_items(ids, WORK_ITEM_FIELDS)]

    @translate_errors
    def get_work_items(self, from_date: str | None = None, to_date: str | None = None) -> list[WorkItem]:
        """Calendar items in the area path, optionally limited to a due/target date window.

        Items without a due or target date are always included so they can be
        scheduled.
        """
        wiql = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            f"{self._scope_clause()} AND {self._type_clause(CALENDAR_TYPES)}"
        )
        if from_date and to_date:
            wiql += (
                " AND ("
                f"([Microsoft.VSTS.Scheduling.DueDate] >= '{from_date}'"
                f" AND [Microsoft.VSTS.Scheduling.DueDate] <= '{to_date}')"
                f" OR ([Microsoft.VSTS.Scheduling.TargetDate] >= '{from_date}'"
                f" AND [Microsoft.VSTS.Scheduling.TargetDate] <= '{to_date}')"
                " OR [Microsoft.VSTS.Scheduling.DueDate] = ''"
                " OR [Microsoft.VSTS.Scheduling.TargetDate] = '')"
            )
        wiql += " ORDER BY [System.ChangedDate] DESC"

        items = self._fetch(self.client.query_ids(wiql))
        logger.info("Fetched %d work items for %s/%s", len(items), self.project, self.area_path)
        return items

    @translate_errors
    def get_roadmap_work_items(self, types: list[str]) -> list[WorkItem]:
        """Epics/Features under the area path that have a target date."""
        wiql = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            f"{self._scope_clause(under=True)} AND {self._type_clause(types)}"
            " AND [Microsoft.VSTS.Scheduling.TargetDate] <> ''"
            " ORDER BY [Microsoft.VSTS.Scheduling.TargetDate]"
        )
        return self._fetch(self.client.query_ids(wiql))

    def _linked_ids(self, source_id: int, recursive: bool) -> list[int]:
        mode = "Recursive" if recursive else "MustContain"
        wiql = (
            "SELECT [System.Id] FROM WorkItemLinks WHERE "
            f"([Source].[System.Id] = {int(source_id)}) AND "
            f"([System.Links.LinkType] = '{HIERARCHY_FORWARD}') MODE ({mode})"
        )
        ids: list[int] = []
        for relation in self.client.query_links(wiql):
            # The first relation is the source itself, with no link type
            if not relation.get("rel"):
                continue
            target_id = (relation.get("target") or {}).get("id")
            if target_id is not None and target_id != source_id and target_id not in ids:
                ids.append(target_id)
        return ids

    @translate_errors
    def get_children(self, parent_id: int) -> list[WorkItem]:
        """Direct children of a work item. An item without children yields []."""
        return self._fetch(self._linked_ids(parent_id, recursive=False))

    @translate_errors
    def get_epic_children(self, epic_id: int) -> list[WorkItem]:
        """All backlog items anywhere below an Epic (Features excluded to avoid double counting)."""
        descendants = self._fetch(self._linked_ids(epic_id, recursive=True))
        return [item for item in descendants if item.work_item_type in BACKLOG_TYPES]

    def get_feature_children(self, feature_id: int) -> list[WorkItem]:
        return self.get_children(feature_id)

    @translate_errors
    def get_work_item(self, work_item_id: int) -> WorkItem:
        return to_work_item(self.client.get_work_item(work_item_id, expand=None))

    @translate_errors
    def get_work_item_relations(self, work_item_id: int) -> list[WorkItem]:
        """Children and related items linked from a work item."""
        raw = self.client.get_work_item(work_item_id, expand="relations")
        ids: list[int] = []
        for relation in raw.get("relations") or []:
            if relation.get("rel") not in (HIERARCHY_FORWARD, RELATED):
                continue
            related_id = _work_item_url_id(relation.get("url"))
            if related_id is not None and related_id not in ids:
                ids.append(related_id)
        return self._fetch(ids)

    @translate_errors
    def get_parent_epic(self, work_item_id: int, max_depth: int = 5) -> WorkItem | None:
        """Walk up the parent chain until an Epic is found."""
        current = to_work_item(self.client.get_work_item(work_item_id, expand=None))
        for _ in range(max_depth):
            if current.parent_id is None:
                return None
            current = to_work_item(self.client.get_work_item(current.parent_id, expand=None))
            if current.work_item_type == "Epic":
                return current
        return None

    @translate_errors
    def update_due_date(self, work_item_id: int, due_date: str | None, reason: str | None = None) -> None:
        """Set or clear a due date, recording the reason in a custom field and the history."""
        path = "/fields/Microsoft.VSTS.Scheduling.DueDate"
        if due_date is None:
            operations = [{"op": "remove", "path": path}]
        else:
            operations = [
                {"op": "add", "path": path, "value": to_ado_datetime(parse_iso_date(due_date))}
            ]

        if reason:
            operations.append(
                {"op": "add", "path": "/fields/Custom.DueDateMovementReasons", "value": reason}
            )
            # System.History always exists, so the reason survives even where the
            # custom field is missing from the process template
            operations.append(
                {"op": "add", "path": "/fields/System.History", "value": f"Due date change reason: {reason}"}
            )

        logger.info("Updating due date of work item %d to %s", work_item_id, due_date)
        self.client.update_work_item(work_item_id, operations)

    @translate_errors
    def update_work_item_field(self, work_item_id: int, field: str, value) -> None:
        """Set one field, or remove it when the value is None or empty."""
        reference_name = resolve_field_name(field)
        path = f"/fields/{reference_name}"

        if value is None or value == "":
            operations = [{"op": "remove", "path": path}]
        else:
            if reference_name in DATE_FIELDS and isinstance(value, str) and DATE_PATTERN.match(value):
                value = to_ado_datetime(parse_iso_date(value))
            operations = [{"op": "add", "path": path, "value": value}]

        logger.info("Updating work item %d field %s", work_item_id, reference_name)
        self.client.update_work_item(work_item_id, operations)

    def health_check(self) -> bool:
        try:
            self.client.get_project()
            return True
        except Exception as e:
            logger.error("Health check failed for project %s: %s", self.project, e)
            return False

    @translate_errors
    def delete_work_item(self, work_item_id: int) -> None:
        logger.info("Deleting work item %d", work_item_id)
        self.client.delete_work_item(work_item_id)

    @translate_errors
    def get_revisions(self, work_item_id: int) -> list[dict]:
        return self.client.get_revisions(work_item_id)

    def calculate_cycle_time(self, work_item_id: int) -> CycleTimeData | None:
        return calculate_cycle_time(self.get_revisions(work_item_id))

    def get_due_date_change_history_for_item(self, work_item_id: int) -> list[DueDateChange]:
        return extract_due_date_changes(self.get_revisions(work_item_id), work_item_id)

    @translate_errors
    def query_changed_ids(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
        types: tuple[str, ...] = ("Product Backlog Item",),
    ) -> list[int]:
        """Ids of items changed in a date window, most recently changed first."""
        wiql = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            f"{self._scope_clause(under=True)} AND {self._type_clause(types)}"
        )
        if from_date and to_date:
            wiql += f" AND [System.ChangedDate] >= '{from_date}' AND [System.ChangedDate] <= '{to_date}'"
        wiql += " ORDER BY [System.ChangedDate] DESC"
        return self.client.query_ids(wiql)

    @translate_errors
    def get_work_items_by_ids(self, ids: list[int]) -> list[WorkItem]:
        return self._fetch(ids)

    @translate_errors
    def get_child_bugs(self, from_date: str | None = None, to_date: str | None = None) -> dict[int, list[int]]:
        """Map of backlog item id to the ids of Bugs parented under it."""
        wiql = (
            "SELECT [System.Id] FROM WorkItemLinks WHERE "
            f"([Source].[System.TeamProject] = '{_quote_wiql(self.project)}')"
            f" AND ([Source].[System.WorkItemType] = 'Product Backlog Item')"
            f" AND ([Target].[System.WorkItemType] = 'Bug')"
            f" AND ([System.Links.LinkType] = '{HIERARCHY_FORWARD}')"
        )
        if self.area_path:
            wiql += f" AND ([Source].[System.AreaPath] UNDER '{_quote_wiql(self.area_path)}')"
        if from_date and to_date:
            wiql += (
                f" AND ([Source].[System.ChangedDate] >= '{from_date}')"
                f" AND ([Source].[System.ChangedDate] <= '{to_date}')"
            )
        wiql += " MODE (MustContain)"

        bugs_by_parent: dict[int, list[int]] = {}
        for relation in self.client.query_links(wiql):
            source = (relation.get("source") or {}).get("id")
            target = (relation.get("target") or {}).get("id")
            if relation.get("rel") and source is not None and target is not None:
                bugs_by_parent.setdefault(source, []).append(target)
        return bugs_by_parent

    @translate_errors
    def get_team_members(self, team: str) -> list[str]:
        members = self.client.get_team_members(team)
        names = {identity_name(member.get("identity")) for member in members}
        return sorted(name for name in names if name)

    @translate_errors
    def get_work_item_comments(self, work_item_id: int) -> list[dict]:
        return [
            {
                "author": identity_name(comment.get("createdBy")),
                "created_date": comment.get("createdDate"),
                "text": comment.get("text", ""),
            }
            for comment in self.client.get_comments(work_item_id)
        ]

    # Releases are Epics tagged "Release" whose title is the version string.

    def _release_epics(self) -> list[WorkItem]:
        wiql = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            f"{self._scope_clause(under=True)} AND [System.WorkItemType] = 'Epic'"
            f" AND [System.Tags] CONTAINS '{RELEASE_TAG}'"
            " ORDER BY [System.CreatedDate] DESC"
        )
        return self._fetch(self.client.query_ids(wiql))

    @translate_errors
    def get_release_versions(self) -> list[str]:
        return [epic.title for epic in self._release_epics()]

    @translate_errors
    def find_release_epic(self, version: str) -> WorkItem | None:
        for epic in self._release_epics():
            if epic.title == version:
                return epic
        return None

    @translate_errors
    def get_release_epics(self) -> list[ReleaseEpic]:
        """Release epics with progress over all their descendant items.

        Epics whose descendants could not be fetched are left out.
        """
        epics = self._release_epics()
        descendants, failed = run_in_batches(
            [epic.id for epic in epics],
            lambda epic_id: self._fetch(self._linked_ids(epic_id, recursive=True)),
            batch_size=self.config.due_date_batch_size,
            description="release progress",
        )
        if epics and len(failed) == len(epics):
            raise AllUnitsFailedError("Could not fetch progress for any release epic.")

        result = []
        for epic in epics:
            if epic.id not in descendants:
                continue
            items = descendants[epic.id]
            completed = sum(1 for item in items if item.state in RELEASE_COMPLETED_STATES)
            result.append(
                ReleaseEpic(
                    id=epic.id,
                    title=epic.title,
                    version=epic.title,
                    status=epic.state,
                    start_date=epic.start_date,
                    target_date=epic.target_date,
                    progress=round(completed / len(items) * 100) if items else 0,
                    completed_items=completed,
                    total_items=len(items),
                )
            )
        return result

    @translate_errors
    def get_release_work_items(self, version: str) -> list[WorkItem]:
        epic = self.find_release_epic(version)
        if epic is None:
            return []
        return self._fetch(self._linked_ids(epic.id, recursive=True))

    @translate_errors
    def create_release(
        self,
        version: str,
        target_date: str | None = None,
        start_date: str | None = None,
        description: str | None = None,
    ) -> WorkItem:
        operations = [
            {"op": "add", "path": "/fields/System.Title", "value": version},
            {"op": "add", "path": "/fields/System.Tags", "value": RELEASE_TAG},
        ]
        if self.area_path:
            operations.append({"op": "add", "path": "/fields/System.AreaPath", "value": self.area_path})
        if target_date:
            operations.append({
                "op": "add",
                "path": "/fields/Microsoft.VSTS.Scheduling.TargetDate",
                "value": to_ado_datetime(parse_iso_date(target_date)),
            })
        if start_date:
            operations.append({
                "op": "add",
                "path": "/fields/Microsoft.VSTS.Scheduling.StartDate",
                "value": to_ado_datetime(parse_iso_date(start_date)),
            })
        if description:
            operations.append({"op": "add", "path": "/fields/System.Description", "value": description})

        logger.info("Creating release epic %s", version)
        return to_work_item(self.client.create_work_item("Epic", operations))

    @translate_errors
    def update_release_epic(
        self,
        epic_id: int,
        title: str | None = None,
        start_date: str | None = None,
        target_date: str | None = None,
        description: str | None = None,
    ) -> None:
        """Patch the given release fields; arguments left as None are not touched."""
        operations = []
        if title is not None:
            operations.append({"op": "add", "path": "/fields/System.Title", "value": title})
        for reference_name, value in (
            ("Microsoft.VSTS.Scheduling.StartDate", start_date),
            ("Microsoft.VSTS.Scheduling.TargetDate", target_date),
        ):
            if value is None:
                continue
            path = f"/fields/{reference_name}"
            if value == "":
                operations.append({"op": "remove", "path": path})
            else:
                operations.append({"op": "add", "path": path, "value": to_ado_datetime(parse_iso_date(value))})
        if description is not None:
            operations.append({"op": "add", "path": "/fields/System.Description", "value": description})

        if not operations:
            raise ValidationError("No release fields to update")
        self.client.update_work_item(epic_id, operations)

    @translate_errors
    def link_work_items_to_epic(self, epic_id: int, work_item_ids: list[int]) -> int:
        """Parent each work item under the epic. Returns the number linked."""
        epic_url = f"{self.client.org_url}/_apis/wit/workItems/{epic_id}"
        for work_item_id in work_item_ids:
            self.client.update_work_item(
                work_item_id,
                [{
                    "op": "add",
                    "path": "/relations/-",
                    "value": {"rel": HIERARCHY_REVERSE, "url": epic_url},
                }],
            )
        logger.info("Linked %d work items to epic %d", len(work_item_ids), epic_id)
        return len(work_item_ids)
