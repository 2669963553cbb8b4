"""Unit tests for config file loading and environment overrides."""

import json
from pathlib import Path

import pytest

from bt_dns_manager import cli
from bt_dns_manager.cli import AppConfig, ConfigError, _parse_bool, apply_env_overrides, load_app_config

# =============================================================================
# Boolean Parsing Tests
# =============================================================================


def test_parse_bool_truthy_values() -> None:
    for value in ("1", "true", "TRUE", "yes", "y", "on", True):
        assert _parse_bool(value) is True


def test_parse_bool_falsy_values() -> None:
    for value in ("0", "false", "no", "off", False):
        assert _parse_bool(value) is False


def test_parse_bool_default_for_missing() -> None:
    assert _parse_bool(None, default=False) is False
    assert _parse_bool("", default=True) is True


# =============================================================================
# Config File Tests
# =============================================================================


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    config = load_app_config(str(tmp_path / "config.yaml"))

    assert config == AppConfig()
    assert config.records == ()


def test_yaml_config_is_parsed(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        """
records:
  - home.example.com
  - " nas.example.org "
server:
  port: 8080
  check_interval_seconds: 120
  poll_interval_seconds: 30
client:
  server_url: http://dns.lan:8080
  run_continuously: true
""",
        encoding="utf-8",
    )

    config = load_app_config(str(path))

    assert config.records == ("home.example.com", "nas.example.org")
    assert [t.zone_name for t in config.targets] == ["example.com", "example.org"]
    assert config.port == 8080
    assert config.check_interval_seconds == 120
    assert config.poll_interval_seconds == 30
    assert config.client_server_url == "http://dns.lan:8080"
    assert config.client_run_continuously is True
    assert config.client_check_interval_seconds == 600


def test_json_config_with_millisecond_intervals(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "records": ["home.example.com"],
                "server": {"port": 3000, "checkInterval": 900000},
                "client": {"serverUrl": "http://localhost:3000", "checkInterval": 600000},
            }
        ),
        encoding="utf-8",
    )

    config = load_app_config(str(path))

    assert config.records == ("home.example.com",)
    assert config.check_interval_seconds == 900
    assert config.client_check_interval_seconds == 600
    assert config.client_server_url == "http://localhost:3000"


def test_invalid_record_entries_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("records:\n  - home.example.com\n  - 42\n  - ''\n", encoding="utf-8")

    assert load_app_config(str(path)).records == ("home.example.com",)


@pytest.mark.parametrize(
    "content",
    [
        "records: [unclosed",
        "- just\n- a list\n",
        "records: home.example.com\n",
        "server: 3000\n",
        "server:\n  port: not-a-number\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_app_config(str(path))


# =============================================================================
# Environment Override Tests
# =============================================================================


def test_env_overrides_win_over_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "PORT", "4000")
    monkeypatch.setattr(cli, "CHECK_INTERVAL_SECONDS", "60")
    monkeypatch.setattr(cli, "CLIENT_CONTINUOUS", "yes")

    config = apply_env_overrides(AppConfig(records=("home.example.com",), port=3000))

    assert config.port == 4000
    assert config.check_interval_seconds == 60
    assert config.client_run_continuously is True
    assert config.records == ("home.example.com",)


def test_no_env_overrides_keeps_config(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PORT",
        "CHECK_INTERVAL_SECONDS",
        "POLL_INTERVAL_SECONDS",
        "CLIENT_SERVER_URL",
        "CLIENT_CHECK_INTERVAL_SECONDS",
        "CLIENT_CONTINUOUS",
    ):
        monkeypatch.setattr(cli, name, "")

    config = AppConfig(records=("home.example.com",), port=3000)

    assert apply_env_overrides(config) == config


# =============================================================================
# Validation Tests
# =============================================================================


def test_validate_config_requires_token_and_records(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "APP_MODE", "server")
    monkeypatch.setattr(cli, "SYNC_MODE", "watch")
    monkeypatch.setattr(cli, "DNS_PROVIDER", "cloudflare")
    monkeypatch.setattr(cli, "CLOUDFLARE_API_TOKEN", "")

    assert cli.validate_config(AppConfig(records=("home.example.com",))) is False

    monkeypatch.setattr(cli, "CLOUDFLARE_API_TOKEN", "token")
    assert cli.validate_config(AppConfig()) is False
    assert cli.validate_config(AppConfig(records=("home.example.com",))) is True


def test_validate_config_client_mode_needs_no_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "APP_MODE", "client")
    monkeypatch.setattr(cli, "CLOUDFLARE_API_TOKEN", "")

    assert cli.validate_config(AppConfig()) is True


def test_create_zone_directory_rejects_unknown_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "DNS_PROVIDER", "route53")

    with pytest.raises(ValueError, match="Unsupported DNS provider"):
        cli.create_zone_directory()
