from __future__ import annotations

import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from state.models import LockInfo, ResourceState, StateDocument, StatePage


DEFAULT_TIMEOUT = 15.0


class TerraDBError(RuntimeError):
    """Base error for the TerraDB API client."""


class TerraDBApiError(TerraDBError):
    """API returned an error status or an unexpected payload."""


class TerraDBNotFoundError(TerraDBApiError):
    """The requested state, serial, resource or lock does not exist."""


def _seg(value: str) -> str:
    # State names may contain "/" (e.g. "env/app"); keep them one path segment.
    return quote(value, safe="")


class TerraDBClient:
    """
    Minimal client for the TerraDB HTTP API.

    Notes
    - Retries transport errors, 429 and 5xx with exponential backoff; the
      server itself never retries.
    - Sends HTTP basic auth when `username` and `password` are given.
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = 4,
        backoff: float = 0.5,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff
        self._owns_client = client is None
        auth = (username, password) if username and password else None
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout, auth=auth)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TerraDBClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def list_states(self, *, page: Optional[int] = None, per_page: Optional[int] = None) -> StatePage:
        data = self._request("GET", "/v1/states", params=self._page_params(page, per_page))
        return self._parse(StatePage, data, "states")

    def get_state(self, name: str, serial: int = 0) -> StateDocument:
        """Fetch a state; serial 0 returns the latest version."""
        params = {"serial": str(serial)} if serial else None
        data = self._request("GET", f"/v1/states/{_seg(name)}", params=params)
        return self._parse(StateDocument, data, "state")

    def list_state_serials(
        self, name: str, *, page: Optional[int] = None, per_page: Optional[int] = None
    ) -> StatePage:
        data = self._request(
            "GET", f"/v1/states/{_seg(name)}/serials", params=self._page_params(page, per_page)
        )
        return self._parse(StatePage, data, "state serials")

    def get_resource(self, state: str, module: str, name: str) -> ResourceState:
        path = f"/v1/resources/{_seg(state)}/{_seg(module)}/{_seg(name)}"
        return self._parse(ResourceState, self._request("GET", path), "resource")

    def get_lock_status(self, name: str) -> Optional[LockInfo]:
        """Current lock holder, or None when the state is unlocked."""
        try:
            data = self._request("GET", f"/v1/states/{_seg(name)}/lock")
        except TerraDBNotFoundError:
            return None
        return self._parse(LockInfo, data, "lock")

    def insert_state(
        self,
        name: str,
        doc: StateDocument,
        *,
        timestamp: Optional[str] = None,
        source: Optional[str] = None,
    ) -> None:
        params: Dict[str, str] = {}
        if timestamp:
            params["timestamp"] = timestamp
        if source:
            params["source"] = source
        self._request(
            "POST",
            f"/v1/states/{_seg(name)}",
            params=params or None,
            json_body=doc.model_dump(mode="json", exclude_unset=True),
        )

    # --------------- Internal ---------------
    @staticmethod
    def _page_params(page: Optional[int], per_page: Optional[int]) -> Optional[Dict[str, str]]:
        params: Dict[str, str] = {}
        if page is not None:
            params["page"] = str(page)
        if per_page is not None:
            params["per_page"] = str(per_page)
        return params or None

    @staticmethod
    def _parse(model: Any, data: Any, what: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as ve:
            raise TerraDBApiError(f"Failed to parse {what} payload: {ve}") from ve

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        attempt = 0
        backoff = self._backoff
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.request(method, path, params=params, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if 200 <= resp.status_code < 300:
                    if not resp.content:
                        return None
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise TerraDBApiError(f"Failed to parse JSON from {method} {path}") from exc
                if resp.status_code == 404:
                    raise TerraDBNotFoundError(f"{method} {path}: not found")
                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = TerraDBApiError(f"HTTP {resp.status_code} from TerraDB")
                else:
                    raise TerraDBApiError(
                        f"HTTP {resp.status_code} from TerraDB: {resp.text[:200]}"
                    )

            # Retry path
            attempt += 1
            if attempt < self._max_attempts:
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise TerraDBError("Failed request after retries") from last_exc
        raise TerraDBError("Failed request after retries (unknown error)")


__all__ = [
    "TerraDBClient",
    "TerraDBError",
    "TerraDBApiError",
    "TerraDBNotFoundError",
]
