"""Tests for the file-backed deployment log."""

import json
import threading

import pytest

from ado_roadmap.deployments import DeploymentStore
from ado_roadmap.exceptions import ValidationError


class TestDeploymentStore:
    """Tests for DeploymentStore."""

    def test_missing_file_reads_as_empty(self, tmp_path):
        store = DeploymentStore(tmp_path / "deployments.json")

        assert store.list_all() == []

    def test_create_persists_record(self, tmp_path):
        path = tmp_path / "nested" / "deployments.json"
        store = DeploymentStore(path)

        deployment = store.create("2.1.0", "staging", [1, 2], "Dana", notes="smoke tested")

        data = json.loads(path.read_text())
        assert data["deployments"][0]["id"] == deployment.id
        assert data["deployments"][0]["environment"] == "staging"
        assert data["deployments"][0]["work_item_ids"] == [1, 2]
        assert deployment.deployed_by == "Dana"
        assert deployment.notes == "smoke tested"
        assert list(path.parent.glob(".deployments-*")) == []

    @pytest.mark.parametrize(
        "version,environment,ids",
        [("2.1.0", "qa", [1]), ("", "dev", [1]), ("2.1.0", "dev", [])],
    )
    def test_create_validates(self, tmp_path, version, environment, ids):
        store = DeploymentStore(tmp_path / "deployments.json")

        with pytest.raises(ValidationError):
            store.create(version, environment, ids, "Dana")
        assert not (tmp_path / "deployments.json").exists()

    def test_queries(self, tmp_path):
        store = DeploymentStore(tmp_path / "deployments.json")
        first = store.create("2.0.0", "dev", [1], "Dana")
        second = store.create("2.0.0", "production", [1], "Dana")
        third = store.create("2.1.0", "dev", [2], "Sam")
        fourth = store.create("2.0.0", "dev", [1, 3], "Sam")

        assert [d.id for d in store.list_all()] == [fourth.id, third.id, second.id, first.id]
        assert [d.id for d in store.by_release("2.0.0")] == [fourth.id, second.id, first.id]
        assert [d.id for d in store.by_environment("dev")] == [fourth.id, third.id, first.id]
        latest = store.latest_by_release("2.0.0")
        assert latest["dev"].id == fourth.id
        assert latest["production"].id == second.id
        assert [d.id for d in store.history(limit=2)] == [fourth.id, third.id]

    def test_concurrent_writers_do_not_lose_records(self, tmp_path):
        store = DeploymentStore(tmp_path / "deployments.json")

        threads = [
            threading.Thread(target=store.create, args=(f"1.0.{i}", "dev", [i + 1], "Dana"))
            for i in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.list_all()) == 10
