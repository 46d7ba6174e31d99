"""Tests for YAML + environment configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from coderun.core.models import Language
from coderun.settings import Limits, Settings, load_settings


@pytest.fixture
def conf(tmp_path: Path) -> Path:
    path = tmp_path / "coderun.yaml"
    path.write_text(
        "worker_slots: 3\n"
        "isolation: none\n"
        "cpp:\n"
        "  run: {wall_timeout_s: 2}\n",
        encoding="utf-8",
    )
    return path


class TestLoadSettings:
    def test_yaml_overrides_defaults(self, conf: Path) -> None:
        s = load_settings(conf)
        assert s.worker_slots == 3
        assert s.isolation == "none"

    def test_partial_policy_keeps_other_phase(self, conf: Path) -> None:
        s = load_settings(conf)
        assert s.cpp.run.wall_timeout_s == 2
        assert s.cpp.run.nofile == Limits().nofile
        assert s.cpp.compile is not None
        assert s.cpp.compile.wall_timeout_s == 20.0

    def test_env_var_points_at_file(self, conf: Path, monkeypatch) -> None:
        monkeypatch.setenv("CODERUN_CONF", str(conf))
        assert load_settings().worker_slots == 3

    def test_yaml_wins_over_env(self, conf: Path, monkeypatch) -> None:
        monkeypatch.setenv("CODERUN_WORKER_SLOTS", "7")
        monkeypatch.setenv("CODERUN_MAX_QUEUE_DEPTH", "5")
        s = load_settings(conf)
        assert s.worker_slots == 3
        assert s.max_queue_depth == 5

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        s = load_settings(tmp_path / "absent.yaml")
        assert s.max_output_bytes == 64 * 1024
        assert s.isolation == "auto"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path).max_queue_depth == 32


class TestPolicies:
    def test_every_language_has_a_policy(self) -> None:
        s = Settings()
        for lang in Language:
            assert s.policy_for(lang).run.wall_timeout_s > 0

    def test_only_cpp_compiles(self) -> None:
        s = Settings()
        assert s.policy_for(Language.CPP).compile is not None
        assert s.policy_for(Language.PYTHON).compile is None

    def test_node_heap_not_capped_by_address_space(self) -> None:
        assert Settings().javascript.run.memory_bytes is None
