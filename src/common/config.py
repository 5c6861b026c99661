from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional


# Environment variable names
ENV_MONGODB_URL = "MONGODB_URL"
ENV_MONGODB_USERNAME = "MONGODB_USERNAME"
ENV_MONGODB_PASSWORD = "MONGODB_PASSWORD"
ENV_MONGODB_DATABASE = "MONGODB_DATABASE"
ENV_API_USERNAME = "API_USERNAME"
ENV_API_PASSWORD = "API_PASSWORD"
ENV_PAGE_SIZE = "PAGE_SIZE"
ENV_STORE_TIMEOUT = "STORE_TIMEOUT"
ENV_FERNET_KEY = "STATE_FERNET_KEY"
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_PARAM_PREFIX = "PARAM_PREFIX"

# Secrets that may live in SSM under PARAM_PREFIX instead of the environment
SSM_SECRETS = ("mongodb_password", "api_password", "fernet_key")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _positive_int(raw: Optional[str], default: int, what: str) -> int:
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid configuration {what}: {raw!r} is not an integer") from ex
    if val <= 0:
        raise RuntimeError(f"Invalid configuration {what}: must be > 0")
    return val


def _positive_float(raw: Optional[str], default: float, what: str) -> float:
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid configuration {what}: {raw!r} is not a number") from ex
    if val <= 0:
        raise RuntimeError(f"Invalid configuration {what}: must be > 0")
    return val


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


@dataclass(frozen=True)
class Settings:
    """
    Process configuration, resolved once at startup.

    Environment variables
    - MONGODB_URL (required), MONGODB_USERNAME, MONGODB_PASSWORD
    - MONGODB_DATABASE (default: terradb)
    - API_USERNAME, API_PASSWORD: basic auth is enforced only when both are set
    - PAGE_SIZE (default: 100), STORE_TIMEOUT seconds (default: 5)
    - STATE_FERNET_KEY: encrypt module payloads at rest
    - LOG_LEVEL (default: INFO)
    - PARAM_PREFIX: when set, secrets missing from the environment are read
      from SSM as {prefix}mongodb_password, {prefix}api_password and
      {prefix}fernet_key
    """

    mongodb_url: str
    mongodb_username: Optional[str] = None
    mongodb_password: Optional[str] = None
    mongodb_database: str = "terradb"
    api_username: Optional[str] = None
    api_password: Optional[str] = None
    page_size: int = 100
    store_timeout: float = 5.0
    fernet_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        url = _require(_getenv(ENV_MONGODB_URL), ENV_MONGODB_URL)

        secrets: Dict[str, Optional[str]] = {
            "mongodb_password": _getenv(ENV_MONGODB_PASSWORD),
            "api_password": _getenv(ENV_API_PASSWORD),
            "fernet_key": _getenv(ENV_FERNET_KEY),
        }
        prefix = _getenv(ENV_PARAM_PREFIX)
        missing = [name for name in SSM_SECRETS if secrets.get(name) is None]
        if prefix and missing:
            for name, val in _load_ssm_params(prefix, missing).items():
                secrets[name] = val

        return cls(
            mongodb_url=url,
            mongodb_username=_getenv(ENV_MONGODB_USERNAME),
            mongodb_password=secrets["mongodb_password"],
            mongodb_database=_getenv(ENV_MONGODB_DATABASE, "terradb") or "terradb",
            api_username=_getenv(ENV_API_USERNAME),
            api_password=secrets["api_password"],
            page_size=_positive_int(_getenv(ENV_PAGE_SIZE), 100, ENV_PAGE_SIZE),
            store_timeout=_positive_float(_getenv(ENV_STORE_TIMEOUT), 5.0, ENV_STORE_TIMEOUT),
            fernet_key=secrets["fernet_key"],
            log_level=(_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
        )

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_username and self.api_password)
