from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple, Union

import boto3
from botocore.exceptions import ClientError
from pydantic import ValidationError

from state.base import Storage
from state.engine import StateEngine
from state.errors import StoreError
from state.models import StateDocument, format_timestamp


log = logging.getLogger(__name__)

TFSTATE_SUFFIX = ".tfstate"
DEFAULT_STATE_FILE = "terraform.tfstate"


def state_name_from_key(key: str, prefix: str = "") -> Optional[str]:
    """Derive a state name from an S3 object key.

    - "env/app/terraform.tfstate" -> "env/app"
    - "env/app.tfstate"           -> "env/app"
    The prefix is stripped first. Returns None for keys that are not state files.
    """
    if not key.endswith(TFSTATE_SUFFIX):
        return None
    rel = key[len(prefix):] if prefix and key.startswith(prefix) else key
    rel = rel.lstrip("/")
    if rel == DEFAULT_STATE_FILE:
        return None
    if rel.endswith("/" + DEFAULT_STATE_FILE):
        name = rel[: -len("/" + DEFAULT_STATE_FILE)]
    else:
        name = rel[: -len(TFSTATE_SUFFIX)]
    return name or None


@dataclass
class ImportReport:
    imported: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (key, reason)


class S3Importer:
    """
    Imports Terraform state files stored in S3 (e.g. from the `s3` backend).

    Every `*.tfstate` object under `prefix` is parsed and stored as one version
    of the state named after its key, with `source = s3://bucket/key` and the
    object's LastModified as timestamp. Existing (name, serial) versions are
    overwritten, so re-running an import is harmless.

    `target` is either a `StateEngine` or a bare `Storage`; a storage is
    wrapped in an engine so timestamps are validated the same way.
    """

    def __init__(
        self,
        target: Union[StateEngine, Storage],
        *,
        bucket: str,
        prefix: str = "",
        s3: Optional[object] = None,
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._engine = target if isinstance(target, StateEngine) else StateEngine(target)
        self._bucket = bucket
        self._prefix = prefix
        self._s3 = s3 or boto3.client("s3", region_name=region_name)

    def get_name(self) -> str:
        return "s3"

    def _iter_objects(self) -> Iterator[dict]:
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
            for obj in page.get("Contents", []) or []:
                yield obj

    def _read_state(self, key: str) -> StateDocument:
        resp = self._s3.get_object(Bucket=self._bucket, Key=key)
        raw = json.loads(resp["Body"].read().decode("utf-8"))
        return StateDocument.model_validate(raw)

    def run(self) -> ImportReport:
        """Import all state files; raises ClientError if listing fails."""
        report = ImportReport()
        for obj in self._iter_objects():
            key = str(obj.get("Key", ""))
            name = state_name_from_key(key, self._prefix)
            if name is None:
                continue
            try:
                doc = self._read_state(key)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                report.skipped.append((key, f"read failed: {code}"))
                log.warning("skipping s3://%s/%s: read failed (%s)", self._bucket, key, code)
                continue
            except (ValueError, ValidationError) as ex:
                report.skipped.append((key, "invalid state file"))
                log.warning("skipping s3://%s/%s: invalid state file: %s", self._bucket, key, ex)
                continue

            modified: Any = obj.get("LastModified")
            timestamp = format_timestamp(modified) if isinstance(modified, datetime) else None
            try:
                self._engine.insert_state(
                    name, doc, timestamp=timestamp, source=f"s3://{self._bucket}/{key}"
                )
            except StoreError:
                log.error("import of s3://%s/%s aborted", self._bucket, key)
                raise
            report.imported.append(name)

        log.info(
            "imported %d state(s) from s3://%s/%s, skipped %d",
            len(report.imported),
            self._bucket,
            self._prefix,
            len(report.skipped),
        )
        return report
