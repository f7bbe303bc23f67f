"""Configuration management for ADO Roadmap."""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import tomli_w


@dataclass
class Team:
    """A project/area path pair that scopes work item queries."""

    project: str
    area_path: str = ""


@dataclass
class DevTeam:
    """An Azure DevOps team whose members are listed as developers."""

    project: str
    team: str


@dataclass
class Config:
    """Configuration for the Azure DevOps connection and dashboard settings."""

    ado_org_url: str
    ado_pat: str
    project: str
    area_path: str = ""
    request_timeout: int = 120
    cycle_time_batch_size: int = 3
    due_date_batch_size: int = 5
    max_stats_items: int = 150
    stats_teams: list[Team] = field(default_factory=list)
    dev_teams: list[DevTeam] = field(default_factory=list)
    automation_teams: list[Team] = field(default_factory=list)
    feature_check_minutes: int = 15
    uat_check_minutes: int = 5
    deployments_file: str | None = None
    log_level: str = "INFO"
    log_json: bool = False

    def validate(self) -> list[str]:
        """Validate configuration values. Returns list of error messages."""
        errors: list[str] = []

        if not self.ado_org_url:
            errors.append("Azure DevOps organization URL is required")
        else:
            parsed = urlparse(self.ado_org_url)
            if parsed.scheme not in ("http", "https"):
                errors.append("Organization URL must start with http:// or https://")
            if not parsed.netloc:
                errors.append("Organization URL must include a domain")

        if not self.ado_pat:
            errors.append("Azure DevOps personal access token is required")

        if not self.project:
            errors.append("Azure DevOps project is required")

        if self.request_timeout <= 0:
            errors.append("request_timeout must be positive")

        for name in ("cycle_time_batch_size", "due_date_batch_size", "max_stats_items"):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be at least 1")

        return errors

    def get_stats_teams(self) -> list[Team]:
        """Teams used for developer statistics, defaulting to the whole project."""
        return self.stats_teams or [Team(project=self.project)]

    def get_deployments_path(self) -> Path:
        if self.deployments_file:
            return Path(self.deployments_file).expanduser()
        return get_config_dir() / "deployments.json"


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".ado-roadmap"


def get_config_path() -> Path:
    """Get the configuration file path."""
    return get_config_dir() / "config.toml"


def config_exists() -> bool:
    """Check if configuration file exists."""
    return get_config_path().exists()


def _parse_teams(entries: list) -> list[Team]:
    return [
        Team(project=entry.get("project", ""), area_path=entry.get("area_path", ""))
        for entry in entries
        if entry.get("project")
    ]


def load_config() -> Config:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration not found at {config_path}. "
            "Create ~/.ado-roadmap/config.toml to set up."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    ado_section = data.get("ado", {})
    stats_section = data.get("stats", {})
    automation_section = data.get("automation", {})
    deployments_section = data.get("deployments", {})
    logging_section = data.get("logging", {})

    config = Config(
        ado_org_url=ado_section.get("org_url", ""),
        ado_pat=ado_section.get("pat", ""),
        project=ado_section.get("project", ""),
        area_path=ado_section.get("area_path", ""),
        request_timeout=ado_section.get("request_timeout", 120),
        cycle_time_batch_size=stats_section.get("cycle_time_batch_size", 3),
        due_date_batch_size=stats_section.get("due_date_batch_size", 5),
        max_stats_items=stats_section.get("max_items", 150),
        stats_teams=_parse_teams(stats_section.get("teams", [])),
        dev_teams=[
            DevTeam(project=entry["project"], team=entry["team"])
            for entry in stats_section.get("dev_teams", [])
            if entry.get("project") and entry.get("team")
        ],
        automation_teams=_parse_teams(automation_section.get("teams", [])),
        feature_check_minutes=automation_section.get("feature_check_minutes", 15),
        uat_check_minutes=automation_section.get("uat_check_minutes", 5),
        deployments_file=deployments_section.get("file"),
        log_level=logging_section.get("level", "INFO"),
        log_json=logging_section.get("json", False),
    )

    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    return config


def save_config(config: Config) -> None:
    """Save configuration to TOML file."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = get_config_path()

    data: dict = {
        "ado": {
            "org_url": config.ado_org_url,
            "pat": config.ado_pat,
            "project": config.project,
            "area_path": config.area_path,
            "request_timeout": config.request_timeout,
        },
        "stats": {
            "cycle_time_batch_size": config.cycle_time_batch_size,
            "due_date_batch_size": config.due_date_batch_size,
            "max_items": config.max_stats_items,
            "teams": [{"project": t.project, "area_path": t.area_path} for t in config.stats_teams],
            "dev_teams": [{"project": t.project, "team": t.team} for t in config.dev_teams],
        },
        "automation": {
            "teams": [
                {"project": t.project, "area_path": t.area_path} for t in config.automation_teams
            ],
            "feature_check_minutes": config.feature_check_minutes,
            "uat_check_minutes": config.uat_check_minutes,
        },
        "logging": {
            "level": config.log_level,
            "json": config.log_json,
        },
    }

    if config.deployments_file:
        data["deployments"] = {"file": config.deployments_file}

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)
