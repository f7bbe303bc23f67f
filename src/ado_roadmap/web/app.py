"""Flask application factory for the ADO Roadmap API."""

import logging

from flask import Flask

from ado_roadmap.automation import PeriodicJob, auto_complete_features, promote_uat_items, run_for_teams
from ado_roadmap.config import Config, config_exists, load_config
from ado_roadmap.logging_config import setup_logging

logger = logging.getLogger(__name__)


def start_automation(config: Config) -> list[PeriodicJob]:
    """Start the feature auto-complete and UAT promotion jobs."""
    jobs = [
        PeriodicJob(
            "feature-auto-complete",
            lambda: run_for_teams(config, auto_complete_features),
            config.feature_check_minutes * 60,
        ),
        PeriodicJob(
            "uat-auto-release",
            lambda: run_for_teams(config, promote_uat_items),
            config.uat_check_minutes * 60,
        ),
    ]
    for job in jobs:
        job.start()
    return jobs


def create_app(start_jobs: bool = False) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    from ado_roadmap.web.routes import bp
    app.register_blueprint(bp)

    if start_jobs and config_exists():
        config = load_config()
        app.extensions["ado_roadmap_jobs"] = start_automation(config)

    return app


def main() -> None:
    """Run the API server with background automation enabled."""
    config = load_config() if config_exists() else None
    if config is not None:
        setup_logging(config.log_level, config.log_json)
    else:
        setup_logging()
        logger.warning("No configuration found; background jobs are disabled")

    app = create_app(start_jobs=config is not None)
    app.run(host="127.0.0.1", port=5000)
