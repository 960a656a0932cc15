"""Tests for runtime configuration."""

from __future__ import annotations

from sidemon.config import (
    flow_url,
    kanban_url,
    load_off_hours_config,
    server_port,
    server_url,
)
from sidemon.off_hours import OffHoursWindow


def test_server_url_defaults_to_local_port(monkeypatch):
    monkeypatch.delenv("SIDE_SERVER_URL", raising=False)
    monkeypatch.delenv("SIDE_SERVER_PORT", raising=False)
    assert server_url() == "http://localhost:8855"


def test_server_url_uses_port_env(monkeypatch):
    monkeypatch.delenv("SIDE_SERVER_URL", raising=False)
    monkeypatch.setenv("SIDE_SERVER_PORT", "9000")
    assert server_url() == "http://localhost:9000"


def test_server_url_explicit_wins(monkeypatch):
    monkeypatch.setenv("SIDE_SERVER_URL", "https://side.example.com/")
    monkeypatch.setenv("SIDE_SERVER_PORT", "9000")
    assert server_url() == "https://side.example.com"


def test_invalid_port_falls_back(monkeypatch):
    monkeypatch.setenv("SIDE_SERVER_PORT", "eighty")
    assert server_port() == 8855
    monkeypatch.setenv("SIDE_SERVER_PORT", "-5")
    assert server_port() == 1


def test_links():
    base = "http://localhost:8855"
    assert kanban_url(base, "ws_1") == "http://localhost:8855/kanban?workspaceId=ws_1"
    assert flow_url(base, "flow_1") == "http://localhost:8855/flows/flow_1"


def test_load_off_hours_config(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[off_hours]
message = "Sleep"

[[off_hours.windows]]
start = "22:00"
end = "07:00"
days = ["monday", "tuesday"]
"""
    )
    config = load_off_hours_config(path)
    assert config.message == "Sleep"
    assert config.windows == (
        OffHoursWindow(start="22:00", end="07:00", days=("monday", "tuesday")),
    )


def test_load_off_hours_config_missing_or_invalid(tmp_path):
    assert load_off_hours_config(tmp_path / "missing.toml").windows == ()
    bad = tmp_path / "bad.toml"
    bad.write_text("[off_hours\n")
    assert load_off_hours_config(bad).windows == ()
    other = tmp_path / "other.toml"
    other.write_text('off_hours = "yes"\n')
    assert load_off_hours_config(other).windows == ()
