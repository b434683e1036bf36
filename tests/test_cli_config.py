from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from stealthmax_services.cli import app as cli_app
from stealthmax_services.config import DEFAULT_TEXT_RECORDS, Settings
from stealthmax_services.errors import ConfigurationError
from stealthmax_services.keys import derive_address

from .conftest import SECRET

runner = CliRunner()


@pytest.fixture
def env(monkeypatch, tmp_path):
    # keep a developer's .env out of the way
    monkeypatch.chdir(tmp_path)
    for var in ("PRIVATE_KEY", "NAMESTONE_API_KEY", "ETH_WS_URL", "ALCHEMY_KEY", "TEXT_RECORDS"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


# ----------------------------
# Settings
# ----------------------------


def test_defaults(env):
    s = Settings()
    assert s.main_domain == "stealthmax.eth"
    assert s.text_records == DEFAULT_TEXT_RECORDS
    assert s.ws_url is None
    assert s.watch_max_restarts == 0


def test_required_values_raise_configuration_error(env):
    s = Settings()
    with pytest.raises(ConfigurationError):
        s.require_secret()
    with pytest.raises(ConfigurationError):
        s.require_namestone_key()
    with pytest.raises(ConfigurationError):
        s.require_ws_url()


def test_blank_secret_is_missing(env):
    env.setenv("PRIVATE_KEY", "   ")
    with pytest.raises(ConfigurationError):
        Settings().require_secret()


def test_ws_url_from_alchemy_key(env):
    env.setenv("ALCHEMY_KEY", "abc")
    assert Settings().ws_url == "wss://eth-sepolia.g.alchemy.com/v2/abc"
    env.setenv("ETH_WS_URL", "ws://localhost:8546")
    assert Settings().ws_url == "ws://localhost:8546"


def test_text_records_from_env(env):
    env.setenv("TEXT_RECORDS", json.dumps({"url": "https://example.org"}))
    assert Settings().text_records == {"url": "https://example.org"}


def test_explorer_address_link(env):
    s = Settings(explorer_url="https://sepolia.etherscan.io/")
    assert s.explorer_address_url("0xabc") == "https://sepolia.etherscan.io/address/0xabc"


# ----------------------------
# CLI
# ----------------------------


def test_cli_derive(env):
    env.setenv("PRIVATE_KEY", SECRET)
    result = runner.invoke(cli_app, ["derive", "alice"])
    assert result.exit_code == 0
    assert result.stdout.strip() == derive_address(SECRET, "alice")


def test_cli_derive_with_counter_json(env):
    env.setenv("PRIVATE_KEY", SECRET)
    result = runner.invoke(cli_app, ["derive", "alice", "--counter", "3", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {
        "name": "alice",
        "counter": 3,
        "address": derive_address(SECRET, "alice", 3),
    }


def test_cli_derive_without_secret_fails(env):
    result = runner.invoke(cli_app, ["derive", "alice"])
    assert result.exit_code == 1


def test_cli_derive_rejects_malformed_secret(env):
    env.setenv("PRIVATE_KEY", "0x1234")
    result = runner.invoke(cli_app, ["derive", "alice"])
    assert result.exit_code == 1


def test_cli_names_without_registry_key_fails(env):
    env.setenv("PRIVATE_KEY", SECRET)
    result = runner.invoke(cli_app, ["names"])
    assert result.exit_code == 1
