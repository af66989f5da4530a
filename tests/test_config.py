"""
Tests for configuration loading — promotion.yml, validation, the environment registry.
"""

import copy
import textwrap
from pathlib import Path

import pytest
import yaml

from gitops_promoter.core.config.loader import (
    ConfigError,
    EnvironmentRegistry,
    PromotionConfig,
    find_config_file,
    load_config,
    load_registry,
)
from gitops_promoter.core.errors import UnknownEnvironment
from gitops_promoter.core.models.environment import ManualSync
from gitops_promoter.core.use_cases.config_check import check_config

from conftest import CONFIG, overlay_files


def _write(tmp_path: Path, data) -> Path:
    path = tmp_path / "promotion.yml"
    path.write_text(yaml.safe_dump(data, sort_keys=False) if not isinstance(data, str) else data)
    return path


class TestLoadConfig:
    def test_load_valid(self, tmp_path: Path):
        config = load_config(_write(tmp_path, CONFIG))
        assert config.project == "acme-ledger"
        assert [e.name for e in config.environments] == ["dev", "qa", "staging"]
        assert isinstance(config.environments[2].sync_policy, ManualSync)
        assert config.registry.max_attempts == 4

    def test_minimal(self, tmp_path: Path):
        path = _write(tmp_path, textwrap.dedent("""\
            project: tiny
            services:
              - name: api
                repository: ghcr.io/acme/api
            environments:
              - name: dev
        """))
        config = load_config(path)
        assert config.trunk == "main"
        assert config.environments[0].tag_prefix == "dev"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(_write(tmp_path, "project: [unclosed"))

    def test_not_a_mapping(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_missing_project(self, tmp_path: Path):
        data = copy.deepcopy(CONFIG)
        del data["project"]
        with pytest.raises(ConfigError, match="Invalid promotion configuration"):
            load_config(_write(tmp_path, data))

    @pytest.mark.parametrize(
        "mutate, message",
        [
            (lambda d: d["environments"].append({"name": "dev"}), "Duplicate environment"),
            (lambda d: d["environments"][1].update(tag_prefix="main"), "Duplicate tag prefix"),
            (lambda d: d["environments"][1].update(overlay_dir="dev"), "Duplicate overlay dir"),
            (lambda d: d["services"].append({"name": "ledger", "repository": "x"}), "Duplicate service"),
            (lambda d: d["environments"][0].update(services=["payments"]), "undeclared services"),
            (lambda d: d["approver_groups"].pop("qa-leads"), "undeclared approver groups"),
        ],
    )
    def test_consistency_errors(self, tmp_path: Path, mutate, message):
        data = copy.deepcopy(CONFIG)
        mutate(data)
        with pytest.raises(ConfigError, match=message):
            load_config(_write(tmp_path, data))


class TestFindConfigFile:
    def test_walks_up(self, tmp_path: Path):
        _write(tmp_path, CONFIG)
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == (tmp_path / "promotion.yml").resolve()

    def test_none_when_absent(self, tmp_path: Path):
        assert find_config_file(tmp_path) is None


class TestEnvironmentRegistry:
    def test_get(self, environments: EnvironmentRegistry):
        assert environments.get("dev").namespace == "ledger-dev"
        assert "qa" in environments
        assert "prod" not in environments
        assert environments.names == ["dev", "qa", "staging"]

    def test_unknown_environment(self, environments: EnvironmentRegistry):
        with pytest.raises(UnknownEnvironment) as exc:
            environments.get("prod")
        assert exc.value.kind == "unknown_environment"
        assert "dev" in exc.value.message

    def test_iteration_order(self, environments: EnvironmentRegistry):
        assert [e.name for e in environments] == ["dev", "qa", "staging"]

    def test_services_default_to_all(self, environments: EnvironmentRegistry):
        names = [s.name for s in environments.services_for(environments.get("qa"))]
        assert names == ["ledger", "ledger-backoffice"]

    def test_services_subset(self):
        data = copy.deepcopy(CONFIG)
        data["environments"][0]["services"] = ["ledger"]
        registry = EnvironmentRegistry(PromotionConfig.model_validate(data))
        assert [s.name for s in registry.services_for(registry.get("dev"))] == ["ledger"]

    def test_overlay_path(self, environments: EnvironmentRegistry):
        assert environments.overlay_path(environments.get("staging")) == "environments/staging/kustomization.yaml"

    def test_groups_of(self, environments: EnvironmentRegistry):
        assert environments.groups_of("alice") == frozenset({"platform"})
        assert environments.groups_of("mallory") == frozenset()
        assert environments.members_of("qa-leads") == {"bob"}

    def test_load_registry(self, tmp_path: Path):
        registry = load_registry(_write(tmp_path, CONFIG))
        assert registry.config.project == "acme-ledger"


class TestConfigCheck:
    def _project(self, tmp_path: Path, data=None) -> Path:
        path = _write(tmp_path, data or CONFIG)
        for rel, content in overlay_files().items():
            target = tmp_path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return path

    def test_valid(self, tmp_path: Path):
        result = check_config(self._project(tmp_path))
        assert result.valid, result.errors
        assert result.to_dict()["environment_count"] == 3

    def test_missing_overlay_is_warning(self, tmp_path: Path):
        path = self._project(tmp_path)
        (tmp_path / "environments" / "qa" / "kustomization.yaml").unlink()
        result = check_config(path)
        assert result.valid
        assert any("qa" in w for w in result.warnings)

    def test_overlay_missing_service_is_error(self, tmp_path: Path):
        path = self._project(tmp_path)
        (tmp_path / "environments" / "dev" / "kustomization.yaml").write_text(
            "images:\n  - name: ledger\n    newTag: main-0000000\n"
        )
        result = check_config(path)
        assert not result.valid
        assert any("ledger-backoffice" in e for e in result.errors)

    def test_empty_approver_group_is_error(self, tmp_path: Path):
        data = copy.deepcopy(CONFIG)
        data["approver_groups"]["qa-leads"] = []
        result = check_config(self._project(tmp_path, data))
        assert not result.valid
        assert any("qa-leads" in e for e in result.errors)

    def test_invalid_config(self, tmp_path: Path):
        result = check_config(_write(tmp_path, "project: [oops"))
        assert not result.valid
        assert result.errors
