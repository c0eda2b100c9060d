"""HTTP client for remote image binaries.

Images are addressed by their logical id (the owning recipe's sync_id):

    PUT {server}/api/recipes/images/<logical_id>/   binary body
    GET {server}/api/recipes/images/<logical_id>/   200 bytes, 404 no image
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from .errors import TransportError
from .sync_client import DEFAULT_TIMEOUT, build_session, request_or_raise

logger = logging.getLogger(__name__)


class RemoteImageClient:
    """Uploads and retrieves image binaries."""

    def __init__(
        self,
        server_url: str,
        auth_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.session = session or build_session(auth_token)

    def _url(self, logical_id: str) -> str:
        return f"{self.server_url}/api/recipes/images/{logical_id}/"

    def upload(self, logical_id: str, data: bytes) -> None:
        """Upload the processed image of a logical id.

        Raises:
            TransportError: If the upload fails
        """
        request_or_raise(
            self.session,
            "PUT",
            self._url(logical_id),
            self.timeout,
            data=data,
            headers={"Content-Type": "image/jpeg"},
        )
        logger.info(f"Uploaded image {logical_id} ({len(data)} bytes)")

    def retrieve(self, logical_id: str) -> Optional[bytes]:
        """Download the image of a logical id.

        Returns:
            The image bytes, or None if the remote has no image for it

        Raises:
            TransportError: If the download fails for any other reason
        """
        try:
            response = request_or_raise(self.session, "GET", self._url(logical_id), self.timeout)
        except TransportError as e:
            if e.status_code == 404:
                logger.debug(f"No remote image for {logical_id}")
                return None
            raise
        logger.info(f"Retrieved image {logical_id} ({len(response.content)} bytes)")
        return response.content
