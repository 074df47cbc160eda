# shadowgate/tests/test_config.py
import os

import pytest
from pydantic import ValidationError

from shadowgate.config import DEFAULT_HONEYPOT_PATHS, GateSettings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in list(os.environ):
        if k.startswith("SHADOWGATE_"):
            monkeypatch.delenv(k)


def test_defaults():
    s = load_settings()
    assert s.admin_prefix == "/api/admin"
    assert s.token_header == "X-Admin-Token"
    assert s.rate_limit == 3
    assert s.rate_window_seconds == 900.0
    assert s.honeypot_paths == DEFAULT_HONEYPOT_PATHS
    assert s.ip_allowlist == ()
    assert s.reveal_credential_on_start is False
    assert s.config_origin == "defaults"


def test_env_overrides_with_bounds(monkeypatch):
    monkeypatch.setenv("SHADOWGATE_IP_ALLOWLIST", "127.0.0.1, 10.0.0.0/8")
    monkeypatch.setenv("SHADOWGATE_RATE_LIMIT", "5")
    monkeypatch.setenv("SHADOWGATE_RATE_WINDOW_SECONDS", "0.1")
    monkeypatch.setenv("SHADOWGATE_REVEAL_CREDENTIAL_ON_START", "yes")
    s = load_settings()
    assert s.ip_allowlist == ("127.0.0.1", "10.0.0.0/8")
    assert s.rate_limit == 5
    assert s.rate_window_seconds == 900.0
    assert s.reveal_credential_on_start is True
    assert s.config_origin == "env"


def test_yaml_then_env(tmp_path, monkeypatch):
    cfg = tmp_path / "gate.yaml"
    cfg.write_text(
        "admin_prefix: ops/\n"
        "rate_limit: 7\n"
        "ip_allowlist:\n"
        "  - 192.0.2.1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SHADOWGATE_CONFIG_PATH", str(cfg))
    monkeypatch.setenv("SHADOWGATE_RATE_LIMIT", "9")
    s = load_settings()
    assert s.admin_prefix == "/ops"
    assert s.ip_allowlist == ("192.0.2.1",)
    assert s.rate_limit == 9
    assert s.config_origin == "yaml"


def test_yaml_typo_is_rejected(tmp_path, monkeypatch):
    cfg = tmp_path / "gate.yaml"
    cfg.write_text("rate_limt: 7\n", encoding="utf-8")
    monkeypatch.setenv("SHADOWGATE_CONFIG_PATH", str(cfg))
    with pytest.raises(ValidationError):
        load_settings()


def test_root_prefix_is_rejected():
    with pytest.raises(ValidationError):
        GateSettings(admin_prefix="/")


def test_config_hash_tracks_content():
    a = GateSettings(ip_allowlist=("127.0.0.1",))
    b = GateSettings(ip_allowlist=("127.0.0.1",))
    c = GateSettings(ip_allowlist=("127.0.0.2",))
    assert a.config_hash() == b.config_hash()
    assert a.config_hash() != c.config_hash()
