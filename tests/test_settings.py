from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from tripbrief.settings import PlannerSettings, RouteWeights, load_env_file


def test_load_env_file_sets_only_missing_keys(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("# comment\nFOO=new\nBAR='bar'\nnot a pair\n", encoding="utf-8")
    monkeypatch.setenv("FOO", "existing")
    monkeypatch.delenv("BAR", raising=False)

    load_env_file(str(env_file))

    assert os.environ["FOO"] == "existing"
    assert os.environ["BAR"] == "bar"


def test_missing_env_file_is_ignored(tmp_path) -> None:
    load_env_file(str(tmp_path / "absent.env"))


def test_defaults() -> None:
    settings = PlannerSettings()
    assert settings.min_confidence == 60
    assert settings.activity_radius_km == 8.0
    assert settings.route_weights == RouteWeights()
    assert settings.llm_fallback is False


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("TRIPBRIEF_MIN_CONFIDENCE", "75")
    monkeypatch.setenv("TRIPBRIEF_ACTIVITY_RADIUS_KM", "5.5")
    monkeypatch.setenv("TRIPBRIEF_PROVIDER_TIMEOUT_S", " 2 ")
    monkeypatch.setenv("TRIPBRIEF_ROUTE_WEIGHTS", "time=0.7,cost=0.1")
    monkeypatch.setenv("TRIPBRIEF_LLM_FALLBACK", "yes")
    monkeypatch.setenv("TRIPBRIEF_TIMEZONE", "Europe/Rome")

    settings = PlannerSettings.from_env()

    assert settings.min_confidence == 75
    assert settings.activity_radius_km == 5.5
    assert settings.provider_timeout_seconds == 2.0
    assert settings.route_weights.time == 0.7
    assert settings.route_weights.convenience == 0.20
    assert settings.llm_fallback is True
    assert settings.timezone == "Europe/Rome"


def test_from_env_rejects_invalid_values(monkeypatch) -> None:
    monkeypatch.setenv("TRIPBRIEF_MIN_CONFIDENCE", "150")
    with pytest.raises(ValidationError):
        PlannerSettings.from_env()
