from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx

from core.config_loader import BackendConfig
from runtime.version import client_info
from services.backend.errors import BackendError, BackendUnavailable, NotFound, PermissionDenied
from shared.logging.logger import get_logger

log = get_logger("backend.client")


class _NotTrue:
    """Filter marker: matches rows where a boolean column is false or null."""

    def __repr__(self) -> str:
        return "NOT_TRUE"


NOT_TRUE = _NotTrue()


def _filter_value(value: Any) -> str:
    if value is NOT_TRUE:
        return "not.is.true"
    if isinstance(value, bool):
        return "eq.true" if value else "eq.false"
    if value is None:
        return "is.null"
    return f"eq.{value}"


class BackendClient:
    """
    Table + remote procedure client for the managed backend (PostgREST API).

    Rules:
    - Constructed explicitly and passed to every chat component
    - One httpx.AsyncClient per instance; callers may inject their own
    - Errors surface as BackendError subclasses, never as raw httpx errors
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.access_token = access_token

        headers = {
            "apikey": config.anon_key,
            "Authorization": f"Bearer {access_token or config.anon_key}",
            "Accept": "application/json",
            "Accept-Profile": config.schema,
            "Content-Profile": config.schema,
            "X-Client-Info": client_info(),
        }

        self._client = client or httpx.AsyncClient(
            base_url=config.rest_url,
            headers=headers,
            timeout=config.timeout_seconds,
        )
        if client is not None:
            self._client.headers.update(headers)

        self._client_owned = client is None

    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            resp = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            log.warning(f"{method} {path} failed: {e}")
            raise BackendUnavailable(f"{method} {path} failed: {e}") from e

        status = resp.status_code
        if status in (401, 403):
            log.warning(f"{method} {path} rejected [{status}]")
            raise PermissionDenied(self._error_message(resp), status_code=status)
        if status >= 500:
            log.error(f"{method} {path} backend error [{status}]")
            raise BackendUnavailable(self._error_message(resp), status_code=status)
        if status >= 400:
            log.error(f"{method} {path} request error [{status}]: {resp.text[:300]}")
            raise BackendError(self._error_message(resp), status_code=status)

        if status == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise BackendError(f"{method} {path} returned invalid JSON", status_code=status) from e

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}"
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or f"HTTP {resp.status_code}")
        return f"HTTP {resp.status_code}"

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        single: bool = False,
    ) -> Any:
        """
        Select rows. With ``single=True`` returns one row or raises NotFound.
        """
        params: Dict[str, str] = {"select": columns}
        for column, value in (eq or {}).items():
            params[column] = _filter_value(value)
        if order:
            params["order"] = f"{order}.{'desc' if desc else 'asc'}"
        if single:
            params["limit"] = "1"
        elif limit is not None:
            params["limit"] = str(int(limit))

        rows = await self._request("GET", f"/{table}", params=params)
        if not isinstance(rows, list):
            rows = []

        if single:
            if not rows:
                raise NotFound(f"No row in {table} matching {dict(eq or {})}", status_code=406)
            return rows[0]
        return rows

    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            f"/{table}",
            json=dict(row),
            headers={"Prefer": "return=representation"},
        )
        if isinstance(rows, list) and rows:
            return rows[0]
        return dict(row)

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        eq: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        if not eq:
            raise ValueError("update requires at least one eq filter")
        params = {column: _filter_value(value) for column, value in eq.items()}
        rows = await self._request(
            "PATCH",
            f"/{table}",
            params=params,
            json=dict(values),
            headers={"Prefer": "return=representation"},
        )
        return rows if isinstance(rows, list) else []

    # ------------------------------------------------------------------
    # Remote procedures
    # ------------------------------------------------------------------

    async def rpc(self, function: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._request("POST", f"/rpc/{function}", json=dict(args or {}))

    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        if self._client_owned:
            await self._client.aclose()


__all__ = ["BackendClient", "BackendError", "NOT_TRUE"]
