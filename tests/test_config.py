"""
Tests for tailbeacon.config

load_config() is fed explicit mappings; os.environ is never touched.
"""
import os

import pytest

from tailbeacon.config import BridgeConfig, ConfigurationError, load_config


def test_defaults():
    cfg = load_config({})
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 8123
    assert cfg.auto_port is True
    assert cfg.port_scan_limit == 20
    assert cfg.require_token is False
    assert cfg.token == ""
    assert cfg.snapshot_lines == 200
    assert cfg.poll_interval == 0.5
    assert cfg.keepalive_interval == 15.0
    assert cfg.events_path == os.path.join(os.path.expanduser("~"), ".tailbeacon", "events.jsonl")


def test_workspace_sets_events_path(tmp_path):
    cfg = load_config({"TAILBEACON_WORKSPACE": str(tmp_path)})
    assert cfg.events_path == str(tmp_path / "events.jsonl")


def test_lan_mode_requires_token_and_generates_one():
    cfg = load_config({"TAILBEACON_ALLOW_LAN": "1"})
    assert cfg.host == "0.0.0.0"
    assert cfg.require_token is True
    assert len(cfg.token) == 36
    assert cfg.cors_fail_closed is True


def test_configured_token_is_required_by_default():
    cfg = load_config({"TAILBEACON_TOKEN": "abc"})
    assert cfg.require_token is True
    assert cfg.token == "abc"


def test_require_token_override_both_ways():
    assert load_config({"TAILBEACON_REQUIRE_TOKEN": "1"}).require_token is True
    cfg = load_config({"TAILBEACON_ALLOW_LAN": "1", "TAILBEACON_REQUIRE_TOKEN": "0"})
    assert cfg.require_token is False


def test_non_loopback_host_without_lan_is_fatal():
    with pytest.raises(ConfigurationError, match="ALLOW_LAN"):
        load_config({"TAILBEACON_HOST": "0.0.0.0"})


def test_bad_integer_is_fatal():
    with pytest.raises(ConfigurationError, match="TAILBEACON_PORT"):
        load_config({"TAILBEACON_PORT": "eighty"})


def test_bad_log_level_is_fatal():
    with pytest.raises(ConfigurationError):
        load_config({"TAILBEACON_LOG_LEVEL": "loud"})


def test_snapshot_lines_clamped():
    assert load_config({"TAILBEACON_SNAPSHOT_LINES": "0"}).snapshot_lines == 1
    assert load_config({"TAILBEACON_SNAPSHOT_LINES": "50000"}).snapshot_lines == 2000


def test_allowed_origins_parsed():
    cfg = load_config({"TAILBEACON_ALLOW_LAN": "1", "TAILBEACON_ALLOWED_ORIGIN": " https://a , ,https://b"})
    assert cfg.allowed_origins == ("https://a", "https://b")
    assert cfg.cors_fail_closed is False


def test_config_is_immutable():
    cfg = BridgeConfig(events_path="x")
    with pytest.raises(Exception):
        cfg.port = 1
