from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from common import config
from common.config import Settings


_ALL_VARS = (
    "MONGODB_URL",
    "MONGODB_USERNAME",
    "MONGODB_PASSWORD",
    "MONGODB_DATABASE",
    "API_USERNAME",
    "API_PASSWORD",
    "PAGE_SIZE",
    "STORE_TIMEOUT",
    "STATE_FERNET_KEY",
    "LOG_LEVEL",
    "PARAM_PREFIX",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in _ALL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_missing_url_raises():
    with pytest.raises(RuntimeError, match="MONGODB_URL"):
        Settings.from_env()


def test_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MONGODB_URL", "mongodb://db:27017")
    s = Settings.from_env()
    assert s.mongodb_url == "mongodb://db:27017"
    assert s.mongodb_database == "terradb"
    assert s.page_size == 100
    assert s.store_timeout == 5.0
    assert s.log_level == "INFO"
    assert s.fernet_key is None
    assert not s.auth_enabled


def test_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MONGODB_URL", "mongodb://db")
    monkeypatch.setenv("MONGODB_DATABASE", "states")
    monkeypatch.setenv("PAGE_SIZE", "25")
    monkeypatch.setenv("STORE_TIMEOUT", "2.5")
    monkeypatch.setenv("API_USERNAME", "u")
    monkeypatch.setenv("API_PASSWORD", "p")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = Settings.from_env()
    assert s.mongodb_database == "states"
    assert s.page_size == 25
    assert s.store_timeout == 2.5
    assert s.auth_enabled
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize("name, value", [("PAGE_SIZE", "abc"), ("PAGE_SIZE", "0"), ("STORE_TIMEOUT", "-1")])
def test_invalid_numbers_raise(monkeypatch: pytest.MonkeyPatch, name: str, value: str):
    monkeypatch.setenv("MONGODB_URL", "mongodb://db")
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError, match=name):
        Settings.from_env()


def test_secrets_fall_back_to_ssm(monkeypatch: pytest.MonkeyPatch):
    requested: Dict[str, List[str]] = {}

    def fake_load_ssm_params(prefix: str, names) -> Dict[str, Optional[str]]:
        requested[prefix] = list(names)
        return {name: f"ssm-{name}" for name in names}

    monkeypatch.setattr(config, "_load_ssm_params", fake_load_ssm_params)
    monkeypatch.setenv("MONGODB_URL", "mongodb://db")
    monkeypatch.setenv("MONGODB_PASSWORD", "from-env")
    monkeypatch.setenv("PARAM_PREFIX", "/terradb/prod/")

    s = Settings.from_env()
    assert requested == {"/terradb/prod/": ["api_password", "fernet_key"]}
    assert s.mongodb_password == "from-env"
    assert s.api_password == "ssm-api_password"
    assert s.fernet_key == "ssm-fernet_key"


def test_no_ssm_lookup_without_prefix(monkeypatch: pytest.MonkeyPatch):
    def fail(*_args, **_kwargs):
        raise AssertionError("SSM must not be called")

    monkeypatch.setattr(config, "_load_ssm_params", fail)
    monkeypatch.setenv("MONGODB_URL", "mongodb://db")
    assert Settings.from_env().api_password is None
