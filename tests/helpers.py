"""Test helpers for recipesync tests.

In-memory stand-ins for the remote sync and image APIs, and a Pillow-based
JPEG generator.
"""

from __future__ import annotations

import io
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from recipesync.core.errors import TransportError
from recipesync.core.sync_client import PullPage, PushResult
from recipesync.core.sync_server import RemoteState
from recipesync.core.timestamp_utils import to_epoch_ms


def make_jpeg(width: int = 640, height: int = 480, color: str = "red") -> bytes:
    """Create JPEG bytes of a solid-color image."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def image_size(path: str) -> tuple:
    with Image.open(path) as img:
        return img.size


class FakeSyncApi:
    """SyncApi backed by RemoteState, with failure and hook injection.

    Attributes:
        state: The remote state records are pushed to and pulled from
        fail_push: Tables whose push raises TransportError
        fail_pull: If True, pull raises TransportError
        reject: sync_ids the remote rejects, with the error message
        on_push / on_pull: Called before the call is served
        extra_pull_records: Wire records prepended to the first pull page
    """

    def __init__(self, state: Optional[RemoteState] = None) -> None:
        self.state = state or RemoteState()
        self.fail_push: set = set()
        self.fail_pull = False
        self.reject: Dict[str, str] = {}
        self.on_push: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None
        self.on_pull: Optional[Callable[[], None]] = None
        self.push_calls: List[tuple] = []
        self.pull_calls: List[tuple] = []
        self.extra_pull_records: List[Dict[str, Any]] = []
        self.server_time: Optional[str] = None

    def push(self, user: str, table: str, records: List[Dict[str, Any]]) -> List[PushResult]:
        self.push_calls.append((user, table, [dict(r) for r in records]))
        if self.on_push is not None:
            self.on_push(table, records)
        if table in self.fail_push:
            raise TransportError(f"push of {table} failed")

        rejected = [r for r in records if r["sync_id"] in self.reject]
        accepted = [r for r in records if r["sync_id"] not in self.reject]
        results = [PushResult(**r) for r in self.state.push(user, table, accepted)]
        for record in rejected:
            results.append(
                PushResult(record["sync_id"], False, None, self.reject[record["sync_id"]])
            )
        return results

    def pull(self, user: str, since: str, limit: int) -> PullPage:
        self.pull_calls.append((user, since, limit))
        if self.on_pull is not None:
            self.on_pull()
        if self.fail_pull:
            raise TransportError("pull failed")

        since_ms = to_epoch_ms(since)
        body = self.state.pull(user, since_ms, limit)
        records = body["records"]
        if self.extra_pull_records:
            records = self.extra_pull_records + records
            self.extra_pull_records = []
        return PullPage(
            records=records,
            server_time=self.server_time or body["server_time"],
            has_more=body["has_more"],
        )


class FakeImageClient:
    """ImageTransfer backed by RemoteState."""

    def __init__(self, state: RemoteState) -> None:
        self.state = state
        self.fail_upload = False
        self.fail_retrieve = False
        self.uploads: List[str] = []
        self.retrievals: List[str] = []

    def upload(self, logical_id: str, data: bytes) -> None:
        if self.fail_upload:
            raise TransportError("upload failed")
        self.uploads.append(logical_id)
        self.state.put_image(logical_id, data)

    def retrieve(self, logical_id: str) -> Optional[bytes]:
        self.retrievals.append(logical_id)
        if self.fail_retrieve:
            raise TransportError("retrieve failed", status_code=503)
        return self.state.get_image(logical_id)
