from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from herd_mcp.config import HerdSettings, get_settings


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HERD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("HERD_POLL_INTERVAL_MS", "250")
    monkeypatch.setenv("HERD_COMPLETION_METHOD", "silence-3s")
    monkeypatch.setenv("HERD_LOG_LEVEL", "debug")

    settings = HerdSettings()

    assert settings.poll_interval_ms == 250
    assert settings.completion_method == "silence-3s"
    assert settings.log_level == "DEBUG"
    assert settings.workers_path == tmp_path / "state" / "workers.json"
    assert settings.batches_dir == tmp_path / "state" / "batches"
    assert settings.audit_log_path == tmp_path / "state" / "auto-approve-audit.jsonl"
    assert settings.events_dir == tmp_path / "state" / "events"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("HERD_LOG_LEVEL", "chatty"),
        ("HERD_POLL_INTERVAL_MS", "0"),
        ("HERD_APPROVAL_DEBOUNCE_MS", "-1"),
    ],
)
def test_settings_reject_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        HerdSettings()


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HERD_STATE_DIR", str(tmp_path / "state"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.state_dir == (tmp_path / "state").resolve()
        assert settings.global_config_dir.is_absolute()
        assert get_settings() is settings
    finally:
        get_settings.cache_clear()
