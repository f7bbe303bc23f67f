"""Background state transitions: feature auto-completion and UAT promotion."""

import logging
import threading
from collections.abc import Callable

from ado_roadmap.azure_devops import AzureDevOpsService
from ado_roadmap.config import Config
from ado_roadmap.stats import collect_for_teams

logger = logging.getLogger(__name__)

FEATURE_DONE_STATES = ("Done", "Closed")
CHILD_COMPLETED_STATES = ("Ready For Release", "UAT - Test Done", "Done", "Closed")
REMOVED_STATE = "Removed"
DONE_STATE = "Done"

UAT_DONE_STATE = "UAT - Test Done"
READY_FOR_RELEASE_STATE = "Ready For Release"


def auto_complete_features(service: AzureDevOpsService) -> list[int]:
    """Move open Features whose active children are all complete to Done.

    Removed children are ignored; a Feature with no active children is left
    alone. A failure on one Feature is logged and the rest still run.

    Returns:
        Ids of the Features that were completed
    """
    features = [
        item
        for item in service.get_work_items()
        if item.work_item_type == "Feature" and item.state not in FEATURE_DONE_STATES
    ]
    logger.info("Checking %d open features in %s/%s", len(features), service.project, service.area_path)

    completed: list[int] = []
    for feature in features:
        try:
            children = [c for c in service.get_children(feature.id) if c.state != REMOVED_STATE]
            if not children:
                continue
            if all(child.state in CHILD_COMPLETED_STATES for child in children):
                service.update_work_item_field(feature.id, "state", DONE_STATE)
                completed.append(feature.id)
                logger.info("Feature %d (%s) auto-completed", feature.id, feature.title)
        except Exception as e:
            logger.error("Failed to check feature %d: %s", feature.id, e)
    return completed


def promote_uat_items(service: AzureDevOpsService) -> list[int]:
    """Move every item in "UAT - Test Done" to "Ready For Release".

    Returns:
        Ids of the items that were moved
    """
    items = [item for item in service.get_work_items() if item.state == UAT_DONE_STATE]
    logger.info("Found %d items in %r in %s/%s", len(items), UAT_DONE_STATE, service.project, service.area_path)

    promoted: list[int] = []
    for item in items:
        try:
            service.update_work_item_field(item.id, "state", READY_FOR_RELEASE_STATE)
            promoted.append(item.id)
        except Exception as e:
            logger.error("Failed to promote work item %d: %s", item.id, e)
    return promoted


def run_for_teams(
    config: Config,
    job: Callable[[AzureDevOpsService], list[int]],
    service_factory: Callable[..., AzureDevOpsService] = AzureDevOpsService,
) -> list[int]:
    """Run a job against every automation team and return all changed ids."""
    teams = config.automation_teams or config.get_stats_teams()
    results = collect_for_teams(
        teams, lambda team: job(service_factory(config, team.project, team.area_path))
    )
    return [work_item_id for ids in results for work_item_id in ids]


class PeriodicJob:
    """Run a callable on a fixed interval in a daemon thread.

    A run that is still in progress when the next one is due is not
    overlapped; run_once returns None instead.
    """

    def __init__(self, name: str, fn: Callable[[], object], interval_seconds: float) -> None:
        self.name = name
        self.fn = fn
        self.interval_seconds = interval_seconds
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self):
        if not self._running.acquire(blocking=False):
            logger.info("%s is still running, skipping this run", self.name)
            return None
        try:
            return self.fn()
        except Exception as e:
            logger.error("%s failed: %s", self.name, e)
            return None
        finally:
            self._running.release()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Started %s (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._running.locked()
