from __future__ import annotations

import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from .errors import StoreError
from .models import StateDocument


ENCRYPTED_MODULES_KEY = "modules_enc"


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_json(value: Any) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


class StateCodec:
    """
    Converts `StateDocument` to and from its stored mapping.

    With a Fernet key, the module tree (where resource attributes and secrets
    live) is stored as an encrypted token under `modules_enc`. Serial, lineage
    and versions stay in clear so the store can still filter and sort on them.
    Plain records stay readable after a key is configured.
    """

    def __init__(self, fernet_key: Optional[str | bytes] = None) -> None:
        self._fernet = _to_fernet(fernet_key) if fernet_key else None

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def encode(self, doc: StateDocument) -> Dict[str, Any]:
        data = doc.model_dump(mode="json", exclude_unset=True)
        data["serial"] = doc.serial
        if self._fernet is None:
            return data
        modules = data.pop("modules", [])
        data[ENCRYPTED_MODULES_KEY] = self._fernet.encrypt(_dump_json(modules)).decode("ascii")
        return data

    def decode(self, raw: Dict[str, Any]) -> StateDocument:
        if not isinstance(raw, dict):
            raise StoreError(f"malformed state document: expected an object, got {type(raw).__name__}")
        data = dict(raw)
        token = data.pop(ENCRYPTED_MODULES_KEY, None)
        if token is not None:
            if self._fernet is None:
                raise StoreError("state modules are encrypted but no Fernet key is configured")
            try:
                plaintext = self._fernet.decrypt(str(token).encode("ascii"))
            except InvalidToken as ex:
                raise StoreError("failed to decrypt state modules: invalid Fernet token") from ex
            data["modules"] = json.loads(plaintext.decode("utf-8"))
        try:
            return StateDocument.model_validate(data)
        except ValidationError as ex:
            raise StoreError(f"malformed state document: {ex}") from ex


__all__ = ["StateCodec", "ENCRYPTED_MODULES_KEY"]
