from __future__ import annotations

import os
from typing import Any, Dict, Optional

from common.config import Settings
from common.logging_cfg import setup_logging
from importers.s3 import S3Importer
from state.mongo_store import MongoStorage


# Environment configuration (MongoDB settings come from common.config)
ENV_IMPORT_BUCKET = "IMPORT_BUCKET"
ENV_IMPORT_PREFIX = "IMPORT_PREFIX"
ENV_AWS_REGION = "AWS_REGION"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _build_storage(settings: Settings) -> MongoStorage:
    return MongoStorage.connect(
        settings.mongodb_url,
        username=settings.mongodb_username,
        password=settings.mongodb_password,
        database=settings.mongodb_database,
        timeout=settings.store_timeout,
        fernet_key=settings.fernet_key,
    )


def run_once(*, bucket: Optional[str] = None, prefix: Optional[str] = None, s3: Optional[object] = None) -> Dict[str, Any]:
    """
    Import every Terraform state file under an S3 prefix once.

    - Resolves bucket/prefix from the arguments, then IMPORT_BUCKET / IMPORT_PREFIX.
    - Connects to MongoDB with `Settings.from_env()` and closes it afterwards.
    - Store failures propagate so the invocation is reported as failed.

    Returns: {"ok": True, "imported": [names], "skipped": [{"key", "reason"}]}.
    """
    bucket = _require(bucket or _getenv(ENV_IMPORT_BUCKET), ENV_IMPORT_BUCKET)
    prefix = prefix if prefix is not None else _getenv(ENV_IMPORT_PREFIX, "") or ""

    settings = Settings.from_env()
    setup_logging(settings.log_level)

    with _build_storage(settings) as storage:
        importer = S3Importer(
            storage,
            bucket=bucket,
            prefix=prefix,
            s3=s3,
            region_name=_getenv(ENV_AWS_REGION),
        )
        report = importer.run()

    return {
        "ok": True,
        "imported": list(report.imported),
        "skipped": [{"key": key, "reason": reason} for key, reason in report.skipped],
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for importing state files from S3.

    Environment:
    - IMPORT_BUCKET, IMPORT_PREFIX (default: whole bucket)
    - MongoDB and secrets: see `common.config.Settings`
    Scheduled or manual events may override with {"bucket": ..., "prefix": ...}.
    """
    event = event if isinstance(event, dict) else {}
    return run_once(bucket=event.get("bucket"), prefix=event.get("prefix"))
