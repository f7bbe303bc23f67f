"""File-backed deployment log."""

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from ado_roadmap.exceptions import ValidationError
from ado_roadmap.models import Deployment

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("dev", "staging", "production")

# Shared by every store in the process so two stores on one file still serialise
_write_lock = threading.Lock()


class DeploymentStore:
    """Append-only deployment records kept in a JSON file.

    The file holds ``{"deployments": [...]}``. Records are never changed or
    removed once written. A missing file reads as an empty log.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _read(self) -> list[dict]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            data = json.load(f)
        return data.get("deployments", [])

    def _write(self, records: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".deployments-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"deployments": records}, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            os.unlink(tmp_name)
            raise

    def create(
        self,
        release_version: str,
        environment: str,
        work_item_ids: list[int],
        deployed_by: str,
        notes: str | None = None,
    ) -> Deployment:
        """Validate and append one deployment record.

        Raises:
            ValidationError: For a missing version or work items, or an unknown environment
        """
        if not release_version:
            raise ValidationError("releaseVersion is required")
        if environment not in ENVIRONMENTS:
            raise ValidationError(
                f"Invalid environment: {environment}. Must be one of {', '.join(ENVIRONMENTS)}"
            )
        if not work_item_ids:
            raise ValidationError("workItemIds must be a non-empty list")

        deployment = Deployment(
            id=str(uuid.uuid4()),
            release_version=release_version,
            environment=environment,
            work_item_ids=[int(i) for i in work_item_ids],
            deployed_by=deployed_by or "Unknown",
            deployed_at=datetime.now(timezone.utc).isoformat(),
            notes=notes,
        )

        with _write_lock:
            records = self._read()
            records.append(asdict(deployment))
            self._write(records)

        logger.info(
            "Recorded deployment of %s to %s (%d work items)",
            release_version,
            environment,
            len(deployment.work_item_ids),
        )
        return deployment

    def list_all(self) -> list[Deployment]:
        """All deployments, newest first."""
        # Records are appended under the lock, so file order is chronological
        return [Deployment(**record) for record in reversed(self._read())]

    def by_release(self, release_version: str) -> list[Deployment]:
        return [d for d in self.list_all() if d.release_version == release_version]

    def by_environment(self, environment: str) -> list[Deployment]:
        return [d for d in self.list_all() if d.environment == environment]

    def latest_by_release(self, release_version: str) -> dict[str, Deployment]:
        """Most recent deployment of a release to each environment it reached."""
        latest: dict[str, Deployment] = {}
        for deployment in self.by_release(release_version):
            latest.setdefault(deployment.environment, deployment)
        return latest

    def history(self, limit: int = 50) -> list[Deployment]:
        return self.list_all()[:limit]
