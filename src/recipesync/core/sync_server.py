"""Reference remote service for recipesync.

An in-memory Flask implementation of the remote sync and image APIs. It is
used by the `serve` CLI command for local development and by the
integration tests. Nothing is persisted; restarting the server forgets
everything.

Endpoints:
    POST /api/sync/push/
    POST /api/sync/pull/
    PUT  /api/recipes/images/<logical_id>/
    GET  /api/recipes/images/<logical_id>/
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, Flask, Response, jsonify, request
from uuid6 import uuid7

from .models import MODELS_BY_TABLE
from .timestamp_utils import parse_timestamp, to_epoch_ms, to_iso
from .validation import (
    ValidationError,
    validate_item_name,
    validate_language,
    validate_notification,
    validate_rating,
    validate_recipe_name,
    validate_tag_name,
    validate_user_id,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)

MAX_PULL_LIMIT = 1000


class RemoteState:
    """Thread-safe in-memory store of remote records and image binaries.

    Every accepted write gets a strictly increasing last_update (epoch ms),
    so paging by last_update never skips a record.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._images: Dict[str, bytes] = {}
        self._last_tick = 0

    def _tick(self) -> int:
        self._last_tick = max(int(time.time() * 1000), self._last_tick + 1)
        return self._last_tick

    @staticmethod
    def validate_record(object_type: str, record: Dict[str, Any]) -> None:
        """Check the fields the service enforces.

        Raises:
            ValidationError: If the record is not acceptable
        """
        if not record.get("sync_id") or not isinstance(record.get("sync_id"), str):
            raise ValidationError("sync_id", "is required")
        if record.get("object_type") != object_type:
            raise ValidationError(
                "object_type", f"expected {object_type}, got {record.get('object_type')!r}"
            )
        if record.get("is_deleted"):
            return
        if object_type == "recipe":
            validate_recipe_name(record.get("name"))
            validate_rating(record.get("rating"))
        elif object_type == "tag":
            validate_tag_name(record.get("name"))
        elif object_type in ("ingredient", "recipe_tag"):
            if not record.get("recipe"):
                raise ValidationError("recipe", "is required")
            if object_type == "recipe_tag" and not record.get("tag"):
                raise ValidationError("tag", "is required")
        elif object_type == "shopping_item":
            validate_item_name(record.get("name"))
        elif object_type == "notification":
            validate_notification(record.get("content"), record.get("type"))
        elif object_type == "user_settings":
            validate_language(record.get("language"))

    def push(self, user: str, table: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        model = MODELS_BY_TABLE.get(table)
        if model is None:
            raise ValidationError("table", f"unknown table: {table}")

        results = []
        with self._lock:
            for record in records:
                sync_id = record.get("sync_id")
                try:
                    self.validate_record(model.OBJECT_TYPE, record)
                except ValidationError as e:
                    logger.info(f"Rejected {model.OBJECT_TYPE} {sync_id} from {user}: {e}")
                    results.append(
                        {"sync_id": sync_id, "accepted": False, "remote_id": None, "error": str(e)}
                    )
                    continue

                key = (user, model.OBJECT_TYPE, sync_id)
                existing = self._records.get(key)
                remote_id = existing["id"] if existing else uuid7().hex
                stored = dict(record)
                stored.update(id=remote_id, owner=user, last_update=self._tick())
                self._records[key] = stored
                results.append(
                    {"sync_id": sync_id, "accepted": True, "remote_id": remote_id, "error": None}
                )
        return results

    def pull(self, user: str, since_ms: int, limit: int) -> Dict[str, Any]:
        with self._lock:
            changed = sorted(
                (
                    r
                    for (owner, _, _), r in self._records.items()
                    if owner == user and r["last_update"] > since_ms
                ),
                key=lambda r: r["last_update"],
            )
            page = [dict(r) for r in changed[:limit]]
            return {
                "records": page,
                "server_time": to_iso(parse_timestamp(self._tick())),
                "has_more": len(changed) > limit,
            }

    def put_image(self, logical_id: str, data: bytes) -> None:
        with self._lock:
            self._images[logical_id] = data

    def get_image(self, logical_id: str) -> Optional[bytes]:
        with self._lock:
            return self._images.get(logical_id)

    def delete_image(self, logical_id: str) -> bool:
        with self._lock:
            return self._images.pop(logical_id, None) is not None

    def records(self, user: str) -> List[Dict[str, Any]]:
        """All records of a user (for inspection and tests)."""
        with self._lock:
            return [dict(r) for (owner, _, _), r in self._records.items() if owner == user]


def create_sync_blueprint(state: RemoteState, auth_token: Optional[str] = None) -> Blueprint:
    """Create Flask blueprint for the sync and image endpoints.

    Args:
        state: Remote state backing the endpoints
        auth_token: If set, every request must carry "Authorization: Bearer <token>"

    Returns:
        Flask Blueprint with sync routes
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/api")

    @sync_bp.before_request
    def check_auth() -> Optional[Tuple[Any, int]]:
        if auth_token and request.headers.get("Authorization") != f"Bearer {auth_token}":
            logger.warning(f"Unauthorized request to {request.path}")
            return jsonify({"error": "Unauthorized"}), 401
        return None

    @sync_bp.route("/sync/push/", methods=["POST"])
    def push() -> Tuple[Any, int]:
        """Accept a batch of records for one table.

        Request body:
            {"user": "...", "table": "recipes", "records": [...]}

        Response:
            {"results": [{"sync_id", "accepted", "remote_id", "error"}]}
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Missing JSON request body"}), 400
        records = data.get("records")
        if not isinstance(records, list):
            return jsonify({"error": "'records' must be a list"}), 400
        try:
            user = validate_user_id(data.get("user"))
            results = state.push(user, data.get("table", ""), records)
        except ValidationError as e:
            logger.warning(f"Push rejected: {e}")
            return jsonify({"error": str(e)}), 400

        accepted = sum(1 for r in results if r["accepted"])
        logger.info(f"Push from {user}: {accepted}/{len(results)} {data.get('table')} accepted")
        return jsonify({"results": results}), 200

    @sync_bp.route("/sync/pull/", methods=["POST"])
    def pull() -> Tuple[Any, int]:
        """Return records changed after `since`, oldest first.

        Request body:
            {"user": "...", "since": "<ISO timestamp or epoch ms>", "limit": 20}

        Response:
            {"records": [...], "server_time": "...", "has_more": false}
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Missing JSON request body"}), 400
        try:
            user = validate_user_id(data.get("user"))
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400

        since = data.get("since") or 0
        try:
            since_ms = to_epoch_ms(since)
        except (ValueError, OverflowError):
            return jsonify({"error": f"Invalid since parameter: {since!r}"}), 400

        limit = data.get("limit", 100)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            return jsonify({"error": f"Invalid limit parameter: {limit!r}"}), 400

        body = state.pull(user, since_ms, min(limit, MAX_PULL_LIMIT))
        logger.debug(f"Pull for {user} since {since}: {len(body['records'])} record(s)")
        return jsonify(body), 200

    @sync_bp.route("/recipes/images/<logical_id>/", methods=["PUT"])
    def upload_image(logical_id: str) -> Tuple[Any, int]:
        try:
            validate_uuid_hex(logical_id, "logical_id")
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400
        if not request.data:
            return jsonify({"error": "Empty image body"}), 400
        state.put_image(logical_id, request.data)
        logger.info(f"Stored image {logical_id} ({len(request.data)} bytes)")
        return jsonify({"status": "ok"}), 200

    @sync_bp.route("/recipes/images/<logical_id>/", methods=["GET"])
    def download_image(logical_id: str) -> Any:
        data = state.get_image(logical_id)
        if data is None:
            return jsonify({"error": f"No image for {logical_id}"}), 404
        return Response(data, status=200, mimetype="image/jpeg")

    return sync_bp


def create_sync_server(
    state: Optional[RemoteState] = None, auth_token: Optional[str] = None
) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        state: Remote state (a fresh empty one by default)
        auth_token: Optional bearer token required on every request

    Returns:
        Flask application instance; the state is available as app.config["REMOTE_STATE"]
    """
    app = Flask(__name__)
    app.json.sort_keys = False
    state = state or RemoteState()
    app.config["REMOTE_STATE"] = state
    app.register_blueprint(create_sync_blueprint(state, auth_token))
    return app
