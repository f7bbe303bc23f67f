"""Tests for AzureDevOpsService domain operations."""

from datetime import date, datetime, time, timezone
from unittest.mock import MagicMock

import pytest

from ado_roadmap.ado_client import AuthenticationError, NotFoundError, TransientApiError
from ado_roadmap.azure_devops import (
    AzureDevOpsService,
    parse_iso_date,
    resolve_field_name,
    to_ado_datetime,
    to_work_item,
)
from ado_roadmap.config import Config
from ado_roadmap.exceptions import (
    AdoAuthError,
    AdoRateLimitError,
    AllUnitsFailedError,
    ValidationError,
    WorkItemNotFoundError,
)


def _make_config(**kwargs):
    return Config(
        ado_org_url="https://dev.azure.com/contoso",
        ado_pat="secret",
        project="Roadmap",
        area_path=kwargs.pop("area_path", "Roadmap\\Web"),
        **kwargs,
    )


def _make_service(**kwargs):
    client = MagicMock()
    client.org_url = "https://dev.azure.com/contoso"
    return AzureDevOpsService(_make_config(**kwargs), client=client), client


def _raw(item_id, work_item_type="Product Backlog Item", state="New", **fields):
    data = {
        "System.Title": f"Item {item_id}",
        "System.WorkItemType": work_item_type,
        "System.State": state,
    }
    data.update(fields)
    return {"id": item_id, "fields": data}


def _expected_midnight(day):
    local = datetime.combine(day, time.min).astimezone()
    return local.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class TestHelpers:
    """Tests for module-level helpers."""

    def test_parse_iso_date(self):
        assert parse_iso_date("2024-03-15") == date(2024, 3, 15)

    @pytest.mark.parametrize("value", ["15/03/2024", "2024-3-15", "2024-02-30", "", None])
    def test_parse_iso_date_rejects(self, value):
        with pytest.raises(ValidationError):
            parse_iso_date(value)

    def test_to_ado_datetime_is_local_midnight(self):
        value = to_ado_datetime(date(2024, 3, 15))

        assert value == _expected_midnight(date(2024, 3, 15))
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone()
        assert parsed.date() == date(2024, 3, 15)
        assert (parsed.hour, parsed.minute) == (0, 0)

    def test_resolve_field_name(self):
        assert resolve_field_name("assignedTo") == "System.AssignedTo"
        assert resolve_field_name("qaCompleteDate") == "Custom.QACompleteDate"
        assert resolve_field_name("Custom.Severity") == "Custom.Severity"

    def test_resolve_field_name_rejects_unknown(self):
        with pytest.raises(ValidationError):
            resolve_field_name("severity")

    def test_to_work_item(self):
        raw = _raw(
            5,
            "Feature",
            "Active",
            **{
                "System.AssignedTo": {"displayName": "Dana"},
                "System.CreatedDate": "2024-01-01T12:00:00Z",
                "Microsoft.VSTS.Scheduling.TargetDate": "2024-03-01",
                "System.Parent": 2,
            },
        )

        item = to_work_item(raw)

        assert item.id == 5
        assert item.work_item_type == "Feature"
        assert item.assigned_to == "Dana"
        assert item.target_date == date(2024, 3, 1)
        assert item.due_date is None
        assert item.parent_id == 2


class TestQueries:
    """Tests for WIQL-backed queries."""

    def test_get_work_items_scopes_to_area_path_and_dates(self):
        service, client = _make_service()
        client.query_ids.return_value = [1, 2]
        client.get_work_items.return_value = [_raw(1), _raw(2)]

        items = service.get_work_items("2024-01-01", "2024-01-31")

        wiql = client.query_ids.call_args.args[0]
        assert "[System.TeamProject] = 'Roadmap'" in wiql
        assert "[System.AreaPath] = 'Roadmap\\Web'" in wiql
        assert "'2024-01-01'" in wiql and "'2024-01-31'" in wiql
        assert [item.id for item in items] == [1, 2]

    def test_empty_area_path_queries_whole_project(self):
        service, client = _make_service(area_path="")
        client.query_ids.return_value = []

        assert service.get_work_items() == []
        assert "AreaPath" not in client.query_ids.call_args.args[0]
        client.get_work_items.assert_not_called()

    def test_request_scope_overrides_config(self):
        client = MagicMock()
        service = AzureDevOpsService(_make_config(), project="Other", area_path="Other\\Team", client=client)

        assert service.project == "Other"
        assert service.area_path == "Other\\Team"

    def test_get_children_skips_source_row(self):
        service, client = _make_service()
        client.query_links.return_value = [
            {"rel": None, "source": None, "target": {"id": 1}},
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": 10}},
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": 11}},
        ]
        client.get_work_items.return_value = [_raw(10), _raw(11)]

        children = service.get_children(1)

        assert [c.id for c in children] == [10, 11]
        assert client.get_work_items.call_args.args[0] == [10, 11]
        assert "MODE (MustContain)" in client.query_links.call_args.args[0]

    def test_get_children_without_children(self):
        service, client = _make_service()
        client.query_links.return_value = [{"rel": None, "source": None, "target": {"id": 1}}]

        assert service.get_children(1) == []

    def test_epic_children_keeps_backlog_items_only(self):
        service, client = _make_service()
        client.query_links.return_value = [
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": i}}
            for i in (2, 3, 4)
        ]
        client.get_work_items.return_value = [
            _raw(2, "Feature"),
            _raw(3, "Product Backlog Item"),
            _raw(4, "Technical Backlog Item"),
        ]

        children = service.get_epic_children(1)

        assert [c.id for c in children] == [3, 4]
        assert "MODE (Recursive)" in client.query_links.call_args.args[0]

    def test_get_parent_epic_walks_up(self):
        service, client = _make_service()
        client.get_work_item.side_effect = lambda item_id, expand=None: {
            30: _raw(30, **{"System.Parent": 20}),
            20: _raw(20, "Feature", **{"System.Parent": 10}),
            10: _raw(10, "Epic"),
        }[item_id]

        epic = service.get_parent_epic(30)

        assert epic.id == 10

    def test_get_parent_epic_none_without_parent(self):
        service, client = _make_service()
        client.get_work_item.return_value = _raw(30)

        assert service.get_parent_epic(30) is None

    def test_get_work_item_relations(self):
        service, client = _make_service()
        client.get_work_item.return_value = {
            "id": 1,
            "relations": [
                {"rel": "System.LinkTypes.Hierarchy-Forward", "url": "https://x/_apis/wit/workItems/5"},
                {"rel": "System.LinkTypes.Related", "url": "https://x/_apis/wit/workItems/6"},
                {"rel": "AttachedFile", "url": "https://x/_apis/wit/attachments/abc"},
            ],
        }
        client.get_work_items.return_value = [_raw(5), _raw(6)]

        related = service.get_work_item_relations(1)

        assert [r.id for r in related] == [5, 6]
        assert client.get_work_items.call_args.args[0] == [5, 6]


class TestUpdates:
    """Tests for JSON Patch generation."""

    def test_update_due_date_with_reason(self):
        service, client = _make_service()

        service.update_due_date(7, "2024-03-15", "Scope change")

        work_item_id, operations = client.update_work_item.call_args.args
        assert work_item_id == 7
        assert operations == [
            {
                "op": "add",
                "path": "/fields/Microsoft.VSTS.Scheduling.DueDate",
                "value": _expected_midnight(date(2024, 3, 15)),
            },
            {"op": "add", "path": "/fields/Custom.DueDateMovementReasons", "value": "Scope change"},
            {"op": "add", "path": "/fields/System.History", "value": "Due date change reason: Scope change"},
        ]

    def test_clear_due_date(self):
        service, client = _make_service()

        service.update_due_date(7, None)

        operations = client.update_work_item.call_args.args[1]
        assert operations == [{"op": "remove", "path": "/fields/Microsoft.VSTS.Scheduling.DueDate"}]

    def test_update_due_date_rejects_bad_date(self):
        service, client = _make_service()

        with pytest.raises(ValidationError):
            service.update_due_date(7, "03/15/2024")
        client.update_work_item.assert_not_called()

    def test_update_field_maps_name(self):
        service, client = _make_service()

        service.update_work_item_field(7, "state", "Done")

        operations = client.update_work_item.call_args.args[1]
        assert operations == [{"op": "add", "path": "/fields/System.State", "value": "Done"}]

    def test_update_date_field_converts_value(self):
        service, client = _make_service()

        service.update_work_item_field(7, "targetDate", "2024-06-01")

        operations = client.update_work_item.call_args.args[1]
        assert operations[0]["value"] == _expected_midnight(date(2024, 6, 1))

    def test_update_field_with_empty_value_removes(self):
        service, client = _make_service()

        service.update_work_item_field(7, "qaCompleteDate", "")

        operations = client.update_work_item.call_args.args[1]
        assert operations == [{"op": "remove", "path": "/fields/Custom.QACompleteDate"}]


class TestErrorTranslation:
    """Tests for client error translation."""

    def test_auth_error(self):
        service, client = _make_service()
        client.query_ids.side_effect = AuthenticationError("bad pat")

        with pytest.raises(AdoAuthError):
            service.get_work_items()

    def test_rate_limit_error(self):
        service, client = _make_service()
        client.get_revisions.side_effect = TransientApiError(429, "slow down")

        with pytest.raises(AdoRateLimitError):
            service.get_revisions(1)

    def test_not_found(self):
        service, client = _make_service()
        client.get_comments.side_effect = NotFoundError("gone")

        with pytest.raises(WorkItemNotFoundError):
            service.get_work_item_comments(1)

    def test_health_check(self):
        service, client = _make_service()
        assert service.health_check() is True

        client.get_project.side_effect = AuthenticationError("bad pat")
        assert service.health_check() is False


class TestRevisionsAndPeople:
    """Tests for history-derived and people lookups."""

    def test_due_date_change_history(self):
        service, client = _make_service()
        client.get_revisions.return_value = [
            {"fields": {"System.ChangedDate": "2024-01-01T12:00:00Z",
                        "Microsoft.VSTS.Scheduling.DueDate": "2024-02-01T12:00:00Z"}},
            {"fields": {"System.ChangedDate": "2024-01-02T12:00:00Z",
                        "Microsoft.VSTS.Scheduling.DueDate": "2024-02-05T12:00:00Z"}},
        ]

        changes = service.get_due_date_change_history_for_item(3)

        assert len(changes) == 1
        assert changes[0].work_item_id == 3
        assert changes[0].changed_by == "Unknown"

    def test_team_members_are_unique_and_sorted(self):
        service, client = _make_service()
        client.get_team_members.return_value = [
            {"identity": {"displayName": "Sam"}},
            {"identity": {"displayName": "Alex"}},
            {"identity": {"displayName": "Sam"}},
        ]

        assert service.get_team_members("Web") == ["Alex", "Sam"]

    def test_comments(self):
        service, client = _make_service()
        client.get_comments.return_value = [
            {"createdBy": {"displayName": "Sam"}, "createdDate": "2024-01-02T12:00:00Z", "text": "<p>hi</p>"}
        ]

        assert service.get_work_item_comments(1) == [
            {"author": "Sam", "created_date": "2024-01-02T12:00:00Z", "text": "<p>hi</p>"}
        ]

    def test_child_bugs(self):
        service, client = _make_service()
        client.query_links.return_value = [
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": 10}},
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": 11}},
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 2}, "target": {"id": 12}},
        ]

        assert service.get_child_bugs() == {1: [10, 11], 2: [12]}


class TestReleases:
    """Tests for release epic operations."""

    def test_release_versions(self):
        service, client = _make_service()
        client.query_ids.return_value = [1, 2]
        client.get_work_items.return_value = [
            _raw(1, "Epic", **{"System.Title": "2.1.0", "System.Tags": "Release"}),
            _raw(2, "Epic", **{"System.Title": "2.0.0", "System.Tags": "Release"}),
        ]

        assert service.get_release_versions() == ["2.1.0", "2.0.0"]
        assert "CONTAINS 'Release'" in client.query_ids.call_args.args[0]

    def test_create_release(self):
        service, client = _make_service()
        client.create_work_item.return_value = _raw(9, "Epic", **{"System.Title": "2.2.0"})

        epic = service.create_release("2.2.0", target_date="2024-06-01")

        work_item_type, operations = client.create_work_item.call_args.args
        assert work_item_type == "Epic"
        assert {"op": "add", "path": "/fields/System.Tags", "value": "Release"} in operations
        assert {"op": "add", "path": "/fields/System.Title", "value": "2.2.0"} in operations
        assert {"op": "add", "path": "/fields/System.AreaPath", "value": "Roadmap\\Web"} in operations
        assert epic.id == 9

    def test_update_release_requires_a_field(self):
        service, _ = _make_service()

        with pytest.raises(ValidationError):
            service.update_release_epic(9)

    def test_link_work_items(self):
        service, client = _make_service()

        linked = service.link_work_items_to_epic(9, [1, 2])

        assert linked == 2
        assert client.update_work_item.call_count == 2
        operation = client.update_work_item.call_args.args[1][0]
        assert operation["path"] == "/relations/-"
        assert operation["value"] == {
            "rel": "System.LinkTypes.Hierarchy-Reverse",
            "url": "https://dev.azure.com/contoso/_apis/wit/workItems/9",
        }

    def test_release_epics_progress(self):
        service, client = _make_service()
        client.query_ids.return_value = [1]
        client.query_links.return_value = [
            {"rel": "System.LinkTypes.Hierarchy-Forward", "source": {"id": 1}, "target": {"id": i}}
            for i in (2, 3, 4, 5)
        ]
        client.get_work_items.side_effect = lambda ids, fields=None: {
            (1,): [_raw(1, "Epic", **{"System.Title": "2.1.0"})],
            (2, 3, 4, 5): [
                _raw(2, state="Done"),
                _raw(3, state="Ready For Release"),
                _raw(4, state="In Progress"),
                _raw(5, state="New"),
            ],
        }[tuple(ids)]

        epics = service.get_release_epics()

        assert epics[0].version == "2.1.0"
        assert epics[0].completed_items == 2
        assert epics[0].total_items == 4
        assert epics[0].progress == 50

    def test_release_epics_carry_start_date(self):
        service, client = _make_service()
        client.query_ids.return_value = [1]
        client.query_links.return_value = []
        client.get_work_items.return_value = [
            _raw(
                1,
                "Epic",
                **{
                    "System.Title": "2.1.0",
                    "Microsoft.VSTS.Scheduling.StartDate": "2024-02-01T12:00:00Z",
                    "Microsoft.VSTS.Scheduling.TargetDate": "2024-03-01T12:00:00Z",
                },
            )
        ]

        epics = service.get_release_epics()

        assert epics[0].start_date == date(2024, 2, 1)
        assert epics[0].target_date == date(2024, 3, 1)
        assert epics[0].total_items == 0

    def test_release_epics_skip_failed_lookups(self):
        service, client = _make_service()
        client.query_ids.return_value = [1, 2]
        client.get_work_items.return_value = [
            _raw(1, "Epic", **{"System.Title": "2.1.0"}),
            _raw(2, "Epic", **{"System.Title": "2.0.0"}),
        ]

        def query_links(wiql):
            if "[System.Id] = 2)" in wiql:
                raise RuntimeError("timeout")
            return []

        client.query_links.side_effect = query_links

        epics = service.get_release_epics()

        assert [epic.id for epic in epics] == [1]

    def test_release_epics_all_failed(self):
        service, client = _make_service()
        client.query_ids.return_value = [1]
        client.get_work_items.return_value = [_raw(1, "Epic", **{"System.Title": "2.1.0"})]
        client.query_links.side_effect = RuntimeError("timeout")

        with pytest.raises(AllUnitsFailedError):
            service.get_release_epics()

    def test_release_work_items_unknown_version(self):
        service, client = _make_service()
        client.query_ids.return_value = []

        assert service.get_release_work_items("9.9.9") == []
