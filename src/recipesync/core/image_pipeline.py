"""Image asset pipeline for recipesync.

Turns raw image data (bytes, base64 text, data URIs or a file path) into two
JPEG artifacts named after the logical image id:

    processed_<id>.jpg   1024x633, quality 85
    thumbnail_<id>.jpg   80x80, quality 75

Raw data is staged to a unique temporary file that is removed on every exit
path. Outputs are written to a temporary name and renamed into place, so a
reader never sees a partially written artifact. Processing failures never
propagate: the caller gets ImageArtifacts(None, None).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import TransformError

logger = logging.getLogger(__name__)

RawImage = Union[bytes, bytearray, str, Path]

IMAGE_SIZE: Tuple[int, int] = (1024, 633)
THUMBNAIL_SIZE: Tuple[int, int] = (80, 80)
IMAGE_QUALITY = 85
THUMBNAIL_QUALITY = 75
STAGING_PREFIX = "staging_"


@dataclass(frozen=True)
class ImageArtifacts:
    """Paths of the processed image and its thumbnail (None on failure)."""

    image_path: Optional[str]
    thumbnail_path: Optional[str]

    @property
    def ok(self) -> bool:
        return self.image_path is not None and self.thumbnail_path is not None


NULL_ARTIFACTS = ImageArtifacts(None, None)

MAX_PATH_LENGTH = 4096


def _existing_file(text: str) -> Optional[Path]:
    """The path named by text if it is an existing file, else None."""
    if not text or len(text) > MAX_PATH_LENGTH or text.lstrip().startswith("data:"):
        return None
    try:
        path = Path(text).expanduser()
        return path if path.is_file() else None
    except (OSError, ValueError):
        return None


class ImagePipeline:
    """Normalizes, processes and stores recipe images.

    Attributes:
        images_directory: Where processed artifacts are written
        staging_directory: Where raw input is staged during processing
    """

    def __init__(self, images_directory: Union[Path, str]) -> None:
        self.images_directory = Path(images_directory)
        self.staging_directory = self.images_directory / "staging"
        self.images_directory.mkdir(parents=True, exist_ok=True)
        self.staging_directory.mkdir(parents=True, exist_ok=True)

    # ========================================================================
    # Input handling
    # ========================================================================

    @staticmethod
    def normalize(raw: RawImage) -> bytes:
        """Decode raw image data to bytes.

        Accepts binary data, base64 text, data URIs (text or bytes) and paths
        (a Path, or a str naming an existing file).
        Data-URI headers and whitespace are stripped before decoding.

        Raises:
            TransformError: If the data cannot be decoded or read
        """
        if isinstance(raw, Path):
            try:
                return raw.read_bytes()
            except OSError as e:
                raise TransformError(f"Cannot read image file {raw}: {e}") from e

        if isinstance(raw, (bytes, bytearray)):
            data = bytes(raw)
            if not data.startswith(b"data:"):
                return data
            try:
                text = data.decode("ascii")
            except UnicodeDecodeError as e:
                raise TransformError(f"Malformed data URI: {e}") from e
        elif isinstance(raw, str):
            path = _existing_file(raw)
            if path is not None:
                return ImagePipeline.normalize(path)
            text = raw
        else:
            raise TransformError(f"Unsupported image data type: {type(raw).__name__}")

        text = text.strip()
        if text.startswith("data:"):
            header, sep, text = text.partition(",")
            if not sep:
                raise TransformError("Data URI has no payload")
            if ";base64" not in header:
                raise TransformError("Only base64 data URIs are supported")
        text = "".join(text.split())
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransformError(f"Invalid base64 image data: {e}") from e

    def source_digest(self, data: RawImage) -> str:
        """SHA-256 hex digest of the normalized image bytes."""
        return hashlib.sha256(self.normalize(data)).hexdigest()

    def needs_processing(
        self, new: Optional[RawImage], existing: Optional[RawImage]
    ) -> bool:
        """Decide whether new image data should be (re)processed.

        Returns:
            False if there is no new data; True if there is no existing data;
            otherwise True iff the normalized bytes differ
        """
        if not new:
            return False
        if not existing:
            return True
        if new == existing:
            return False
        try:
            return self.normalize(new) != self.normalize(existing)
        except TransformError:
            # Undecodable input is left to process(), which turns it into
            # null artifacts.
            return True

    def needs_processing_for(
        self,
        new: Optional[RawImage],
        logical_id: str,
        source_digest: Optional[str] = None,
    ) -> bool:
        """Decide whether new data must be processed for a logical image id.

        The new data is compared with the processed image already stored for
        the id (via needs_processing) and, when given, with the digest of the
        source that image was produced from. A missing processed image always
        needs processing.

        Args:
            new: Raw image data about to be processed
            logical_id: Logical image id
            source_digest: Digest of the source of the stored artifacts
        """
        current = self.read_image(logical_id)
        if not self.needs_processing(new, current):
            return False
        if current is None or source_digest is None:
            return True
        try:
            return self.source_digest(new) != source_digest
        except TransformError:
            return True

    # ========================================================================
    # Processing
    # ========================================================================

    def image_path_for(self, logical_id: str) -> Path:
        return self.images_directory / f"processed_{logical_id}.jpg"

    def thumbnail_path_for(self, logical_id: str) -> Path:
        return self.images_directory / f"thumbnail_{logical_id}.jpg"

    def process(self, image_data: RawImage, logical_id: str) -> ImageArtifacts:
        """Produce the full image and thumbnail for a logical image id.

        Args:
            image_data: Raw image data in any form normalize() accepts
            logical_id: Logical image id (the owning recipe's sync_id)

        Returns:
            ImageArtifacts with both paths, or both None on any failure
        """
        staging_path: Optional[Path] = None
        try:
            data = self.normalize(image_data)
            if not data:
                raise TransformError("Image data is empty")

            fd, staged = tempfile.mkstemp(
                prefix=f"{STAGING_PREFIX}{logical_id}_{time.time_ns()}_",
                dir=self.staging_directory,
            )
            staging_path = Path(staged)
            with os.fdopen(fd, "wb") as f:
                f.write(data)

            image_path = self.image_path_for(logical_id)
            thumbnail_path = self.thumbnail_path_for(logical_id)
            with Image.open(staging_path) as source:
                source.load()
                picture = ImageOps.exif_transpose(source).convert("RGB")
            self._write_jpeg(picture, IMAGE_SIZE, IMAGE_QUALITY, image_path)
            self._write_jpeg(picture, THUMBNAIL_SIZE, THUMBNAIL_QUALITY, thumbnail_path)

            logger.info(f"Processed image {logical_id} ({len(data)} bytes)")
            return ImageArtifacts(str(image_path), str(thumbnail_path))
        except TransformError as e:
            logger.warning(f"Image {logical_id} not processed: {e}")
            return NULL_ARTIFACTS
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning(f"Image {logical_id} not processed: {TransformError(str(e))}")
            return NULL_ARTIFACTS
        finally:
            if staging_path is not None:
                staging_path.unlink(missing_ok=True)

    def _write_jpeg(
        self, picture: Image.Image, size: Tuple[int, int], quality: int, target: Path
    ) -> None:
        fitted = ImageOps.fit(picture, size, Image.Resampling.LANCZOS)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".tmp", dir=self.images_directory
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                fitted.save(f, format="JPEG", quality=quality, optimize=True)
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    # ========================================================================
    # Artifact management
    # ========================================================================

    def read_image(self, logical_id: str) -> Optional[bytes]:
        """Get the processed image bytes, or None if there is none."""
        path = self.image_path_for(logical_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def remove_artifacts(self, logical_id: str) -> int:
        """Delete the processed image and thumbnail of a logical id.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in (self.image_path_for(logical_id), self.thumbnail_path_for(logical_id)):
            if path.exists():
                path.unlink()
                removed += 1
        if removed:
            logger.info(f"Removed {removed} artifact(s) for image {logical_id}")
        return removed

    def cleanup_staging(self, max_age: float = 3600.0) -> int:
        """Delete staging files older than max_age seconds.

        Staging files outlive a call only when the process was killed
        mid-processing.

        Returns:
            Number of files removed
        """
        cutoff = time.time() - max_age
        removed = 0
        for path in self.staging_directory.glob(f"{STAGING_PREFIX}*"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info(f"Removed {removed} stale staging file(s)")
        return removed
