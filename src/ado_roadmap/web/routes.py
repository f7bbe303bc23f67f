"""HTTP route handlers for the ADO Roadmap JSON API."""

import logging
from datetime import datetime, timezone

from flask import Blueprint, Response, jsonify, request

from ado_roadmap.automation import auto_complete_features, promote_uat_items, run_for_teams
from ado_roadmap.azure_devops import AzureDevOpsService, parse_iso_date
from ado_roadmap.config import Config, Team, config_exists, load_config
from ado_roadmap.deployments import DeploymentStore
from ado_roadmap.exceptions import (
    AdoAuthError,
    AdoConnectionError,
    AdoRateLimitError,
    ConfigNotFoundError,
    InvalidConfigError,
    RoadmapError,
    ValidationError,
    WorkItemNotFoundError,
)
from ado_roadmap.models import to_json_dict
from ado_roadmap.releases import NOTE_FORMATS, calculate_release_metrics, render_release_notes
from ado_roadmap.roadmap import RoadmapCache, fetch_roadmap, roadmap_result_to_dict
from ado_roadmap.stats import (
    calculate_cycle_time_for_items,
    collect_for_teams,
    merge_due_date_stats,
    merge_hit_rate_stats,
    merge_pull_request_stats,
    merge_qa_bug_stats,
    team_due_date_stats,
    team_hit_rate,
    team_pull_request_time,
    team_qa_bug_stats,
)

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__)

roadmap_cache = RoadmapCache()

ERROR_STATUS = (
    (ValidationError, 400),
    (AdoAuthError, 401),
    (WorkItemNotFoundError, 404),
    (AdoRateLimitError, 429),
    (ConfigNotFoundError, 503),
    (InvalidConfigError, 503),
    (AdoConnectionError, 503),
)


@bp.errorhandler(RoadmapError)
def handle_roadmap_error(error: RoadmapError):
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            break
    else:
        status = 500
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, error)
    return jsonify({"error": str(error)}), status


def _get_config() -> Config:
    try:
        return load_config()
    except FileNotFoundError as e:
        raise ConfigNotFoundError(str(e)) from e
    except ValueError as e:
        raise InvalidConfigError(str(e)) from e


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _param(name: str, source: dict | None = None) -> str | None:
    value = (source if source is not None else request.args).get(name)
    if isinstance(value, str):
        value = value.strip()
    return value or None


def _parse_id(raw: str, label: str = "work item ID") -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid {label}")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label}") from None
    if value <= 0:
        raise ValidationError(f"Invalid {label}")
    return value


def _parse_id_list(raw) -> list[int]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("workItemIds array is required")
    return [_parse_id(value) for value in raw]


def _date_range() -> tuple[str | None, str | None]:
    from_date = _param("from")
    to_date = _param("to")
    for value in (from_date, to_date):
        if value is not None:
            parse_iso_date(value)
    return from_date, to_date


def _service(config: Config, source: dict | None = None) -> AzureDevOpsService:
    """Service for the project/areaPath given in the request, or the configured default."""
    return AzureDevOpsService(config, _param("project", source), _param("areaPath", source))


def _stats_teams(config: Config) -> list[Team]:
    project = _param("project")
    if project:
        return [Team(project=project, area_path=_param("areaPath") or "")]
    return config.get_stats_teams()


def _stats_for_teams(config: Config, team_fn, merge_fn, **kwargs):
    from_date, to_date = _date_range()
    developer = _param("developer")
    results = collect_for_teams(
        _stats_teams(config),
        lambda team: team_fn(
            AzureDevOpsService(config, team.project, team.area_path),
            from_date,
            to_date,
            developer,
            **kwargs,
        ),
    )
    return jsonify(to_json_dict(merge_fn(results)))


@bp.route("/health")
def health():
    """Health check endpoint."""
    config_loaded = config_exists()
    if config_loaded:
        return jsonify({"status": "ok", "config_loaded": True})
    else:
        return jsonify({
            "status": "error",
            "config_loaded": False,
            "message": "Configuration not found",
        }), 503


@bp.route("/api/health")
def api_health():
    """Check that Azure DevOps is reachable with the configured credentials."""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        healthy = AzureDevOpsService(_get_config()).health_check()
    except (ConfigNotFoundError, InvalidConfigError) as e:
        return jsonify({"healthy": False, "error": str(e), "timestamp": timestamp}), 503
    if not healthy:
        return jsonify({"healthy": False, "timestamp": timestamp}), 503
    return jsonify({"healthy": True, "timestamp": timestamp})


@bp.route("/api/workitems")
def api_workitems():
    from_date, to_date = _date_range()
    items = _service(_get_config()).get_work_items(from_date, to_date)
    return jsonify(to_json_dict(items))


@bp.route("/api/workitems/<work_item_id>/due-date", methods=["PATCH"])
def api_update_due_date(work_item_id):
    """Set or clear a due date. Body: {dueDate: "YYYY-MM-DD" | null, reason?}."""
    item_id = _parse_id(work_item_id)
    body = _body()
    due_date = body.get("dueDate")
    if due_date is not None:
        parse_iso_date(due_date)

    _service(_get_config(), body).update_due_date(item_id, due_date, _param("reason", body))
    roadmap_cache.invalidate()
    return jsonify({"success": True})


@bp.route("/api/workitems/<work_item_id>/field", methods=["PATCH"])
def api_update_field(work_item_id):
    """Set one field. Body: {field, value}."""
    item_id = _parse_id(work_item_id)
    body = _body()
    field = _param("field", body)
    if not field:
        raise ValidationError("Field name is required")

    _service(_get_config(), body).update_work_item_field(item_id, field, body.get("value"))
    roadmap_cache.invalidate()
    return jsonify({"success": True})


@bp.route("/api/cycle-time", methods=["POST"])
def api_cycle_time():
    body = _body()
    ids = _parse_id_list(body.get("workItemIds"))
    config = _get_config()
    logger.info("Calculating cycle time for %d work items", len(ids))
    results = calculate_cycle_time_for_items(
        _service(config, body), ids, batch_size=config.cycle_time_batch_size
    )
    return jsonify(to_json_dict(results))


@bp.route("/api/due-date-stats")
def api_due_date_stats():
    return _stats_for_teams(_get_config(), team_due_date_stats, merge_due_date_stats)


@bp.route("/api/due-date-hit-rate")
def api_due_date_hit_rate():
    return _stats_for_teams(_get_config(), team_hit_rate, merge_hit_rate_stats)


@bp.route("/api/pull-request-time-stats")
def api_pull_request_time_stats():
    return _stats_for_teams(_get_config(), team_pull_request_time, merge_pull_request_stats)


@bp.route("/api/qa-bug-stats")
def api_qa_bug_stats():
    return _stats_for_teams(_get_config(), team_qa_bug_stats, merge_qa_bug_stats)


@bp.route("/api/workitems/<work_item_id>/due-date-changes")
def api_due_date_changes(work_item_id):
    item_id = _parse_id(work_item_id)
    changes = _service(_get_config()).get_due_date_change_history_for_item(item_id)
    return jsonify(to_json_dict(changes))


@bp.route("/api/workitems/<work_item_id>/discussions")
def api_discussions(work_item_id):
    item_id = _parse_id(work_item_id)
    return jsonify(_service(_get_config()).get_work_item_comments(item_id))


@bp.route("/api/workitems/<work_item_id>/relations")
def api_relations(work_item_id):
    item_id = _parse_id(work_item_id)
    return jsonify(to_json_dict(_service(_get_config()).get_work_item_relations(item_id)))


@bp.route("/api/workitems/<work_item_id>/parent-epic")
def api_parent_epic(work_item_id):
    item_id = _parse_id(work_item_id)
    epic = _service(_get_config()).get_parent_epic(item_id)
    return jsonify(to_json_dict(epic))


@bp.route("/api/team-members")
def api_team_members():
    project = _param("project")
    team_name = _param("teamName")
    if not project or not team_name:
        raise ValidationError("project and teamName are required")
    members = AzureDevOpsService(_get_config(), project).get_team_members(team_name)
    return jsonify(members)


@bp.route("/api/dev-team-members")
def api_dev_team_members():
    """Union of members across the configured developer teams."""
    config = _get_config()
    results = collect_for_teams(
        config.dev_teams,
        lambda team: AzureDevOpsService(config, team.project).get_team_members(team.team),
    )
    return jsonify(sorted({name for members in results for name in members}))


@bp.route("/api/epics/<epic_id>/children")
def api_epic_children(epic_id):
    item_id = _parse_id(epic_id, "epic ID")
    return jsonify(to_json_dict(_service(_get_config()).get_epic_children(item_id)))


@bp.route("/api/features/<feature_id>/children")
def api_feature_children(feature_id):
    item_id = _parse_id(feature_id, "feature ID")
    return jsonify(to_json_dict(_service(_get_config()).get_feature_children(item_id)))


@bp.route("/api/roadmap")
def api_roadmap():
    """Scheduled Epics/Features with health and completion. Query: types, view."""
    view = _param("view") or "monthly"
    if view not in ("monthly", "quarterly"):
        raise ValidationError("view must be monthly or quarterly")
    types_str = _param("types")
    include_types = None
    if types_str:
        include_types = [t.strip() for t in types_str.split(",") if t.strip()]

    config = _get_config()
    result = fetch_roadmap(
        _service(config),
        include_types=include_types,
        view=view,
        cache=roadmap_cache,
        batch_size=config.due_date_batch_size,
    )
    return jsonify(roadmap_result_to_dict(result))


@bp.route("/api/releases")
def api_release_versions():
    return jsonify(_service(_get_config()).get_release_versions())


@bp.route("/api/releases/epics")
def api_release_epics():
    return jsonify(to_json_dict(_service(_get_config()).get_release_epics()))


@bp.route("/api/releases/<version>/tag", methods=["POST"])
def api_create_release(version):
    """Create a release epic. Body: {targetDate?, startDate?, description?}."""
    body = _body()
    epic = _service(_get_config(), body).create_release(
        version,
        target_date=_param("targetDate", body),
        start_date=_param("startDate", body),
        description=_param("description", body),
    )
    return jsonify(to_json_dict(epic)), 201


@bp.route("/api/releases/<epic_id>", methods=["PATCH"])
def api_update_release(epic_id):
    item_id = _parse_id(epic_id, "epic ID")
    body = _body()
    _service(_get_config(), body).update_release_epic(
        item_id,
        title=body.get("title"),
        start_date=body.get("startDate"),
        target_date=body.get("targetDate"),
        description=body.get("description"),
    )
    return jsonify({"success": True})


@bp.route("/api/releases/<epic_id>", methods=["DELETE"])
def api_delete_release(epic_id):
    item_id = _parse_id(epic_id, "epic ID")
    _service(_get_config()).delete_work_item(item_id)
    roadmap_cache.invalidate(item_id)
    return jsonify({"success": True})


@bp.route("/api/releases/<epic_id>/link", methods=["POST"])
def api_link_release(epic_id):
    item_id = _parse_id(epic_id, "epic ID")
    body = _body()
    ids = _parse_id_list(body.get("workItemIds"))
    linked = _service(_get_config(), body).link_work_items_to_epic(item_id, ids)
    roadmap_cache.invalidate(item_id)
    return jsonify({"success": True, "linked": linked})


@bp.route("/api/releases/<version>/workitems")
def api_release_workitems(version):
    return jsonify(to_json_dict(_service(_get_config()).get_release_work_items(version)))


@bp.route("/api/releases/<version>/metrics")
def api_release_metrics(version):
    config = _get_config()
    items = _service(config).get_release_work_items(version)
    deployments = DeploymentStore(config.get_deployments_path()).by_release(version)
    return jsonify(to_json_dict(calculate_release_metrics(version, items, deployments)))


@bp.route("/api/releases/<version>/notes")
def api_release_notes(version):
    fmt = _param("format") or "json"
    if fmt not in NOTE_FORMATS:
        raise ValidationError("format must be json or markdown")
    items = _service(_get_config()).get_release_work_items(version)
    notes = render_release_notes(version, items, fmt)
    if fmt == "markdown":
        return Response(notes, mimetype="text/markdown")
    return jsonify(notes)


@bp.route("/api/deployments", methods=["POST"])
def api_create_deployment():
    """Record a deployment. Body: {releaseVersion, environment, workItemIds, deployedBy?, notes?}."""
    body = _body()
    ids = _parse_id_list(body.get("workItemIds"))
    store = DeploymentStore(_get_config().get_deployments_path())
    deployment = store.create(
        release_version=_param("releaseVersion", body),
        environment=_param("environment", body),
        work_item_ids=ids,
        deployed_by=_param("deployedBy", body),
        notes=_param("notes", body),
    )
    return jsonify(to_json_dict(deployment)), 201


@bp.route("/api/deployments")
def api_deployments():
    store = DeploymentStore(_get_config().get_deployments_path())
    environment = _param("environment")
    if environment:
        return jsonify(to_json_dict(store.by_environment(environment)))
    limit = _param("limit")
    return jsonify(to_json_dict(store.history(_parse_id(limit, "limit") if limit else 50)))


@bp.route("/api/deployments/<version>")
def api_release_deployments(version):
    store = DeploymentStore(_get_config().get_deployments_path())
    return jsonify(to_json_dict(store.by_release(version)))


@bp.route("/api/deployments/<version>/latest")
def api_latest_deployments(version):
    store = DeploymentStore(_get_config().get_deployments_path())
    return jsonify(to_json_dict(store.latest_by_release(version)))


@bp.route("/api/admin/trigger-feature-check", methods=["POST"])
def api_trigger_feature_check():
    completed = run_for_teams(_get_config(), auto_complete_features)
    roadmap_cache.invalidate()
    return jsonify({"success": True, "completed": completed})


@bp.route("/api/admin/trigger-uat-release", methods=["POST"])
def api_trigger_uat_release():
    promoted = run_for_teams(_get_config(), promote_uat_items)
    return jsonify({"success": True, "promoted": promoted})
