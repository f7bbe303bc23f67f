"""Tests for configuration loading and saving."""

from unittest.mock import patch

import pytest

from ado_roadmap.config import Config, DevTeam, Team, config_exists, load_config, save_config

CONFIG_TOML = """
[ado]
org_url = "https://dev.azure.com/contoso"
pat = "secret"
project = "Roadmap"
area_path = "Roadmap\\\\Web"

[stats]
max_items = 50
teams = [
    { project = "Roadmap", area_path = "" },
    { project = "Mobile", area_path = "Mobile\\\\App" },
]
dev_teams = [{ project = "Roadmap", team = "Web - Dev" }]

[automation]
uat_check_minutes = 2

[logging]
level = "DEBUG"
json = true
"""


class TestLoadConfig:
    """Tests for load_config and save_config."""

    def test_missing_file(self, tmp_path):
        with patch("ado_roadmap.config.get_config_dir", return_value=tmp_path):
            assert not config_exists()
            with pytest.raises(FileNotFoundError):
                load_config()

    def test_loads_sections(self, tmp_path):
        (tmp_path / "config.toml").write_text(CONFIG_TOML)

        with patch("ado_roadmap.config.get_config_dir", return_value=tmp_path):
            config = load_config()
            deployments_path = config.get_deployments_path()

        assert config.area_path == "Roadmap\\Web"
        assert config.max_stats_items == 50
        assert config.cycle_time_batch_size == 3
        assert config.stats_teams == [Team("Roadmap", ""), Team("Mobile", "Mobile\\App")]
        assert config.dev_teams == [DevTeam("Roadmap", "Web - Dev")]
        assert config.uat_check_minutes == 2
        assert config.feature_check_minutes == 15
        assert config.log_level == "DEBUG"
        assert config.log_json is True
        assert deployments_path == tmp_path / "deployments.json"

    def test_invalid_config(self, tmp_path):
        (tmp_path / "config.toml").write_text('[ado]\norg_url = "dev.azure.com"\n')

        with patch("ado_roadmap.config.get_config_dir", return_value=tmp_path):
            with pytest.raises(ValueError, match="Invalid configuration"):
                load_config()

    def test_round_trip(self, tmp_path):
        config = Config(
            ado_org_url="https://dev.azure.com/contoso",
            ado_pat="secret",
            project="Roadmap",
            automation_teams=[Team("Roadmap", "Roadmap\\Web")],
            deployments_file=str(tmp_path / "deploys.json"),
        )

        with patch("ado_roadmap.config.get_config_dir", return_value=tmp_path / "cfg"):
            save_config(config)
            assert load_config() == config


class TestConfigValidation:
    """Tests for Config.validate and defaults."""

    def test_reports_every_problem(self):
        config = Config(ado_org_url="ftp://", ado_pat="", project="", due_date_batch_size=0)

        errors = config.validate()

        assert len(errors) == 5

    def test_stats_teams_default_to_project(self):
        config = Config(ado_org_url="https://dev.azure.com/contoso", ado_pat="x", project="Roadmap")

        assert config.validate() == []
        assert config.get_stats_teams() == [Team("Roadmap", "")]
