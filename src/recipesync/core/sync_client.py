"""HTTP client for the remote sync API.

    POST {server}/api/sync/push/   {"user", "table", "records"}
        -> {"results": [{"sync_id", "accepted", "remote_id", "error"}]}
    POST {server}/api/sync/pull/   {"user", "since", "limit"}
        -> {"records": [...], "server_time", "has_more"}

Every failure (network error, timeout, non-2xx status, malformed body) is
raised as TransportError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class PushResult:
    """Outcome of pushing one record."""

    sync_id: str
    accepted: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PullPage:
    """One page of remote changes."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    server_time: Optional[str] = None
    has_more: bool = False


def build_session(auth_token: Optional[str] = None) -> requests.Session:
    """Create a requests session with JSON and optional bearer auth headers."""
    session = requests.Session()
    session.headers["Accept"] = "application/json"
    if auth_token:
        session.headers["Authorization"] = f"Bearer {auth_token}"
    return session


def request_or_raise(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> requests.Response:
    """Perform a request, turning every failure into TransportError."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise TransportError(f"{method} {url} failed: {e}") from e
    if not response.ok:
        detail = response.text[:200] if response.text else response.reason
        raise TransportError(
            f"{method} {url} returned {response.status_code}: {detail}",
            status_code=response.status_code,
        )
    return response


class HttpSyncApi:
    """Push/pull client for the remote sync service."""

    def __init__(
        self,
        server_url: str,
        auth_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize the client.

        Args:
            server_url: Base URL of the sync service (no trailing slash)
            auth_token: Optional bearer token sent with every request
            timeout: Per-request timeout in seconds
            session: requests session to use (a new one by default)
        """
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.session = session or build_session(auth_token)

    def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.server_url}{path}"
        response = request_or_raise(self.session, "POST", url, self.timeout, json=body)
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response from {url}: {type(data).__name__}")
        return data

    def push(self, user: str, table: str, records: List[Dict[str, Any]]) -> List[PushResult]:
        """Submit a batch of wire records.

        Returns:
            One PushResult per submitted record, in server order

        Raises:
            TransportError: If the call fails
        """
        data = self._post_json(
            "/api/sync/push/", {"user": user, "table": table, "records": records}
        )
        results = []
        for item in data.get("results", []):
            remote_id = item.get("remote_id")
            results.append(
                PushResult(
                    sync_id=item.get("sync_id", ""),
                    accepted=bool(item.get("accepted")),
                    remote_id=str(remote_id) if remote_id is not None else None,
                    error=item.get("error"),
                )
            )
        logger.debug(f"Pushed {len(records)} {table} record(s), got {len(results)} result(s)")
        return results

    def pull(self, user: str, since: str, limit: int) -> PullPage:
        """Fetch remote records changed after `since`.

        Raises:
            TransportError: If the call fails
        """
        data = self._post_json("/api/sync/pull/", {"user": user, "since": since, "limit": limit})
        records = data.get("records", [])
        if not isinstance(records, list):
            raise TransportError("Pull response 'records' is not a list")
        return PullPage(
            records=records,
            server_time=data.get("server_time"),
            has_more=bool(data.get("has_more", False)),
        )
