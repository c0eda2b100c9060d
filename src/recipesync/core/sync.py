"""Background sync orchestration for recipesync.

A sync cycle runs two phases for the active user:

Push: pending records of every syncable table, in dependency order
(Recipe, Tag, RecipeTag, Ingredient, Notification, UserSettings,
ShoppingItem, RecipeImage), are serialized and submitted in batches. Accepted records become synced; rejected records are
parked as conflicts; a failed batch stays pending for the next cycle.
Recipe images upload their binary before their record is pushed.

Pull: remote changes since the user's cursor are applied page by page,
tags first, then recipes, then everything else. A local record with
unpushed edits is never overwritten; it is parked as a conflict with the
remote version stored next to it, unless the remote version is the one
this cycle just pushed. Recipe images fetch their binary before
the record is written. The cursor only advances when the pull completed.

The orchestrator runs cycles on a daemon thread (start/stop/request_sync)
or on the calling thread (sync_once). Only one cycle runs at a time.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type

from .conflicts import ConflictManager
from .cursor_store import CursorStore
from .errors import PersistenceError, TransportError, UnresolvedReferenceError
from .image_pipeline import ImagePipeline
from .models import SYNC_MODELS, RecipeImage, SyncRecord
from .records import RecordStore
from .serialization import RecordSerializer
from .sync_client import PullPage, PushResult
from .timestamp_utils import parse_timestamp, to_iso, utc_now
from .validation import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0
DEFAULT_BATCH_SIZE = 20

# Pull apply order: lower first
PULL_PRIORITY = {"tag": 0, "recipe": 1}

# Wire keys the remote assigns; ignored when recognizing our own pushed version
REMOTE_ASSIGNED_KEYS = ("id", "owner", "last_update")


class SyncApi(Protocol):
    def push(self, user: str, table: str, records: List[Dict[str, Any]]) -> List[PushResult]: ...

    def pull(self, user: str, since: str, limit: int) -> PullPage: ...


class ImageTransfer(Protocol):
    def upload(self, logical_id: str, data: bytes) -> None: ...

    def retrieve(self, logical_id: str) -> Optional[bytes]: ...


class SyncState(Enum):
    """State of the orchestrator."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    success: bool
    pulled: int = 0  # Remote records applied
    pushed: int = 0  # Local records accepted by the remote
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)


class SyncStopped(Exception):
    """Raised inside a cycle when stop() was requested."""


class SyncOrchestrator:
    """Runs push/pull cycles against the remote service.

    Collaborators are injected: the record store, the cursor store, the
    remote sync and image clients, the image pipeline, and a callable that
    returns the currently logged-in user (or None).
    """

    def __init__(
        self,
        store: RecordStore,
        cursors: CursorStore,
        api: SyncApi,
        images: ImageTransfer,
        pipeline: ImagePipeline,
        active_user_provider: Callable[[], Optional[str]],
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.cursors = cursors
        self.api = api
        self.images = images
        self.pipeline = pipeline
        self.active_user_provider = active_user_provider
        self.interval = interval
        self.batch_size = batch_size
        self.serializer = RecordSerializer(store)
        self.conflicts = ConflictManager(store)

        self._state = SyncState.IDLE
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._session_user: Optional[str] = None
        self.last_result: Optional[SyncResult] = None
        self._pushed: Dict[Tuple[str, str], Dict[str, Any]] = {}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def state(self) -> SyncState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SyncState) -> None:
        with self._state_lock:
            if self._state != state:
                logger.debug(f"Sync state {self._state.value} -> {state.value}")
            self._state = state

    @property
    def session_user(self) -> Optional[str]:
        return self._session_user

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, user: str) -> None:
        """Start background syncing for a user.

        Runs a cycle immediately, then every `interval` seconds or when
        request_sync() is called.
        """
        if self.is_running:
            if user == self._session_user and not self._stop_event.is_set():
                logger.debug(f"Background sync already running for {user}")
                return
            self.stop()

        self._session_user = user
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name=f"recipesync-{user}", daemon=True
        )
        self._thread.start()
        logger.info(f"Background sync started for {user} (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop background syncing.

        Safe to call mid-cycle: the record being processed is finished, no
        further record is touched and the cursor is not advanced.
        """
        self._stop_event.set()
        self._wake_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Background sync thread still finishing its cycle")
                return
        self._thread = None
        logger.info("Background sync stopped")

    def request_sync(self) -> None:
        """Wake the background thread to run a cycle now."""
        self._wake_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            user = self._session_user
            try:
                self.sync_once(user)
            except Exception as e:
                # The background thread must survive any single cycle
                logger.error(f"Unexpected sync error: {e}")
                self._set_state(SyncState.FAILED)
            self._wake_event.wait(self.interval)
            self._wake_event.clear()

    def _check_stop(self) -> None:
        if self._stop_event.is_set():
            raise SyncStopped()

    # ========================================================================
    # Cycle
    # ========================================================================

    def sync_once(self, user: Optional[str] = None) -> SyncResult:
        """Run one push/pull cycle on the calling thread.

        Args:
            user: Session user; defaults to the background session user or,
                without one, the active user

        Returns:
            SyncResult describing the cycle
        """
        if not self._cycle_lock.acquire(blocking=False):
            return SyncResult(success=False, errors=["Sync already in progress"])
        if not self.is_running and threading.current_thread() is not self._thread:
            # A foreground cycle is not affected by an earlier stop()
            self._stop_event.clear()
        try:
            result = self._run_cycle(user)
            self.last_result = result
            return result
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, user: Optional[str]) -> SyncResult:
        result = SyncResult(success=True)
        self._pushed = {}

        try:
            active_user = self.active_user_provider()
            if user is None:
                user = self._session_user or active_user
            if not user or active_user != user:
                return self._fail(result, f"No active session for {user or 'anonymous user'}")
            cursor = self.cursors.get_cursor(user)
        except (PersistenceError, ValidationError) as e:
            return self._fail(result, f"Cannot establish sync session: {e}")

        logger.info(f"Sync cycle for {user} (cursor {to_iso(cursor)})")
        try:
            self._set_state(SyncState.PUSHING)
            self._push(user, result)

            self._set_state(SyncState.PULLING)
            new_cursor = self._pull(user, cursor, result)
            if new_cursor is not None:
                self.cursors.set_cursor(user, new_cursor)
            else:
                result.success = False
                self._set_state(SyncState.FAILED)
        except SyncStopped:
            logger.info("Sync cycle interrupted by stop")
            result.success = False
            result.errors.append("Sync stopped")
            self._set_state(SyncState.FAILED)
        except PersistenceError as e:
            return self._fail(result, f"Local store error: {e}")

        self._set_state(SyncState.IDLE)
        logger.info(
            f"Sync for {user}: pushed {result.pushed}, pulled {result.pulled}, "
            f"conflicts {result.conflicts}, errors {len(result.errors)}"
        )
        return result

    def _fail(self, result: SyncResult, message: str) -> SyncResult:
        logger.error(f"Sync failed: {message}")
        result.success = False
        result.errors.append(message)
        self._set_state(SyncState.FAILED)
        return result

    # ========================================================================
    # Push
    # ========================================================================

    def _push(self, user: str, result: SyncResult) -> None:
        for model in SYNC_MODELS:
            pending = self.store.pending(model, user)
            if not pending:
                continue
            logger.debug(f"Pushing {len(pending)} pending {model.TABLE}")
            for start in range(0, len(pending), self.batch_size):
                self._check_stop()
                self._push_batch(user, model, pending[start:start + self.batch_size], result)

    def _push_batch(
        self,
        user: str,
        model: Type[SyncRecord],
        records: List[SyncRecord],
        result: SyncResult,
    ) -> None:
        payloads: List[Dict[str, Any]] = []
        by_sync_id: Dict[str, Tuple[SyncRecord, Dict[str, Any]]] = {}
        for record in records:
            try:
                payload = self.serializer.to_wire(record)
            except UnresolvedReferenceError as e:
                self._record_error(result, f"Cannot push {model.OBJECT_TYPE} {record.sync_id}: {e}")
                continue
            if isinstance(record, RecipeImage) and not self._upload_image(record, result):
                continue
            payloads.append(payload)
            by_sync_id[record.sync_id] = (record, payload)

        if not payloads:
            return

        try:
            outcomes = self.api.push(user, model.TABLE, payloads)
        except TransportError as e:
            self._record_error(result, f"Push of {len(payloads)} {model.TABLE} failed: {e}")
            return

        for outcome in outcomes:
            pushed = by_sync_id.pop(outcome.sync_id, None)
            if pushed is None:
                logger.warning(f"Push result for unknown {model.OBJECT_TYPE} {outcome.sync_id}")
                continue
            record, payload = pushed
            if outcome.accepted:
                self.store.mark_as_synced(record, outcome.remote_id)
                self._pushed[(model.TABLE, record.sync_id)] = self._content(payload)
                result.pushed += 1
            else:
                reason = outcome.error or "Rejected by server"
                self.conflicts.park(record, reason)
                result.conflicts += 1
                result.errors.append(f"{model.OBJECT_TYPE} {record.sync_id} rejected: {reason}")

        for sync_id in by_sync_id:
            logger.warning(f"No push result for {model.OBJECT_TYPE} {sync_id}, keeping it pending")

    def _upload_image(self, record: RecipeImage, result: SyncResult) -> bool:
        """Upload the binary of a pending recipe image.

        Returns:
            False if the record must stay pending
        """
        if record.is_deleted or not record.has_image:
            return True
        data = self.pipeline.read_image(record.sync_id)
        if data is None:
            logger.warning(f"Image file for {record.sync_id} is missing, pushing record only")
            return True
        try:
            self.images.upload(record.sync_id, data)
        except TransportError as e:
            self._record_error(result, f"Upload of image {record.sync_id} failed: {e}")
            return False
        return True

    # ========================================================================
    # Pull
    # ========================================================================

    def _pull(self, user: str, cursor: datetime, result: SyncResult) -> Optional[datetime]:
        """Apply remote changes since the cursor.

        Returns:
            The new cursor, or None if the pull did not complete
        """
        pull_started = utc_now()
        since = to_iso(cursor)
        server_time: Optional[str] = None
        deferred: List[Dict[str, Any]] = []

        while True:
            self._check_stop()
            try:
                page = self.api.pull(user, since, self.batch_size)
            except TransportError as e:
                self._record_error(result, f"Pull failed: {e}")
                return None
            server_time = page.server_time or server_time

            ordered = sorted(
                page.records,
                key=lambda p: PULL_PRIORITY.get(p.get("object_type"), 2),
            )
            for payload in ordered:
                self._check_stop()
                try:
                    self._apply_remote_record(user, payload, result)
                except UnresolvedReferenceError:
                    deferred.append(payload)
                except ValidationError as e:
                    self._record_error(result, f"Skipping malformed remote record: {e}")

            if not page.has_more or not page.records:
                break
            since = self._page_boundary(page, since)

        for payload in deferred:
            self._check_stop()
            try:
                self._apply_remote_record(user, payload, result)
            except (UnresolvedReferenceError, ValidationError) as e:
                self._record_error(
                    result, f"Cannot apply {payload.get('object_type')} {payload.get('sync_id')}: {e}"
                )

        self._retry_downloads(user, result)

        if server_time:
            try:
                return parse_timestamp(server_time)
            except ValueError:
                logger.warning(f"Ignoring invalid server_time {server_time!r}")
        return pull_started

    @staticmethod
    def _page_boundary(page: PullPage, since: str) -> str:
        stamps = [p.get("last_update") for p in page.records if p.get("last_update") is not None]
        if not stamps:
            return since
        return to_iso(parse_timestamp(max(stamps)))

    def _apply_remote_record(self, user: str, payload: Dict[str, Any], result: SyncResult) -> None:
        model, values = self.serializer.from_wire(payload, user)

        existing = None
        if values["remote_id"]:
            existing = self.store.find_by_remote_id(model, values["remote_id"], user)
        if existing is None:
            existing = self.store.find_by_sync_id(model, values["sync_id"], user)

        if existing is not None and existing.needs_sync and not self._agreed_deletion(existing, values):
            if existing.is_pending and self._is_own_echo(model, payload):
                logger.debug(f"{model.OBJECT_TYPE} {existing.sync_id} edited since push, keeping it pending")
                return
            self.conflicts.park(existing, "Local edits conflict with a remote change", payload)
            result.conflicts += 1
            return

        if model is RecipeImage:
            values.update(self._fetch_image(existing, payload))

        self.store.apply_remote(model, existing, values, user)
        result.pulled += 1

    @staticmethod
    def _agreed_deletion(existing: SyncRecord, values: Dict[str, Any]) -> bool:
        """True if a pending local tombstone meets a remote tombstone."""
        return existing.is_pending and existing.is_deleted and values["is_deleted"]

    @staticmethod
    def _content(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in REMOTE_ASSIGNED_KEYS}

    def _is_own_echo(self, model: Type[SyncRecord], payload: Dict[str, Any]) -> bool:
        """True if a pulled record is exactly what this cycle pushed."""
        pushed = self._pushed.get((model.TABLE, payload.get("sync_id")))
        return pushed is not None and self._content(payload) == pushed

    def _fetch_image(self, existing: Optional[RecipeImage], payload: Dict[str, Any]) -> Dict[str, Any]:
        """Get the image fields for a pulled recipe image.

        A failed retrieval keeps the current image and flags the record for
        another attempt; "no image" on the remote clears it for good.
        """
        logical_id = payload["sync_id"]
        cleared = {
            "image_path": None,
            "thumbnail_path": None,
            "source_digest": None,
            "needs_download": False,
        }

        if not RecordSerializer.has_remote_image(payload):
            if existing is not None and existing.has_image:
                self.pipeline.remove_artifacts(logical_id)
            return cleared

        try:
            data = self.images.retrieve(logical_id)
        except TransportError as e:
            logger.warning(f"Image {logical_id} not retrieved, will retry: {e}")
            return {"needs_download": True}

        if data is None:
            if existing is not None and existing.has_image:
                self.pipeline.remove_artifacts(logical_id)
            return cleared

        # The remote holds either the processed image this device uploaded or
        # the source another device processed
        if (
            existing is not None
            and existing.has_image
            and not self.pipeline.needs_processing_for(data, logical_id, existing.source_digest)
        ):
            logger.debug(f"Image {logical_id} unchanged, skipping processing")
            return {"needs_download": False}

        artifacts = self.pipeline.process(data, logical_id)
        return {
            "image_path": artifacts.image_path,
            "thumbnail_path": artifacts.thumbnail_path,
            "source_digest": self.pipeline.source_digest(data) if artifacts.ok else None,
            "needs_download": False,
        }

    def _retry_downloads(self, user: str, result: SyncResult) -> None:
        waiting = self.store.find(RecipeImage, user_id=user, needs_download=1)
        for image in waiting:
            self._check_stop()
            if image.needs_sync:
                continue
            payload = {"sync_id": image.sync_id, "image": image.sync_id}
            fields = self._fetch_image(image, payload)
            if fields.get("needs_download"):
                result.errors.append(f"Image {image.sync_id} still not downloaded")
                continue
            self.store.apply_remote(RecipeImage, image, fields, user)
            logger.info(f"Downloaded previously failed image {image.sync_id}")

    @staticmethod
    def _record_error(result: SyncResult, message: str) -> None:
        logger.warning(message)
        result.errors.append(message)
