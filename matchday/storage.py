"""Profile image persistence.

Images live in the ``GCS_IMAGE_BUCKET`` bucket when one is configured and in
``static/uploads`` otherwise. Players store an identifier, not a URL: bucket
objects are prefixed with ``gcs:`` and local files are stored as their path
relative to the upload directory.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

GCS_IMAGE_BUCKET = os.getenv("GCS_IMAGE_BUCKET")
GCS_IMAGE_BASE_URL = os.getenv("GCS_IMAGE_BASE_URL")
GCS_IMAGE_CACHE_CONTROL = os.getenv("GCS_IMAGE_CACHE_CONTROL", "public, max-age=86400")

GCS_PREFIX = "gcs:"
LOCAL_URL_PREFIX = "/static/uploads"


class ImageStorageError(RuntimeError):
    """Saving or removing a profile image failed."""


def profile_image_name(organization_id: str, player_id: str, suffix: str) -> str:
    return f"{organization_id}/players/{player_id}/{uuid4().hex}{suffix.lower()}"


def image_url(identifier: str) -> str:
    if not identifier.startswith(GCS_PREFIX):
        return f"{LOCAL_URL_PREFIX}/{identifier.lstrip('/')}"
    if not GCS_IMAGE_BUCKET:
        raise ImageStorageError("GCS_IMAGE_BUCKET is not configured.")
    base_url = (GCS_IMAGE_BASE_URL or f"https://storage.googleapis.com/{GCS_IMAGE_BUCKET}").rstrip("/")
    return f"{base_url}/{identifier[len(GCS_PREFIX):]}"


def save_profile_image(data: bytes, *, object_name: str, content_type: str, upload_dir: Path) -> str:
    """Store ``data`` and return the identifier to keep on the player."""
    if GCS_IMAGE_BUCKET:
        from google.api_core.exceptions import GoogleAPIError

        blob = _bucket().blob(object_name)
        blob.cache_control = GCS_IMAGE_CACHE_CONTROL
        try:
            blob.upload_from_string(data, content_type=content_type)
        except GoogleAPIError as exc:
            raise ImageStorageError(f"Could not upload {object_name}: {exc}") from exc
        return f"{GCS_PREFIX}{object_name}"

    destination = _local_path(upload_dir, object_name)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
    except OSError as exc:
        raise ImageStorageError(f"Could not write {object_name}: {exc}") from exc
    return object_name


def delete_profile_image(identifier: str, *, upload_dir: Path) -> bool:
    """Remove a stored image. Returns False when it was already gone."""
    if identifier.startswith(GCS_PREFIX):
        from google.api_core.exceptions import GoogleAPIError, NotFound

        try:
            _bucket().blob(identifier[len(GCS_PREFIX):]).delete()
        except NotFound:
            return False
        except GoogleAPIError as exc:
            raise ImageStorageError(f"Could not delete {identifier}: {exc}") from exc
        return True

    path = _local_path(upload_dir, identifier)
    if not path.exists():
        return False
    try:
        path.unlink()
    except OSError as exc:
        raise ImageStorageError(f"Could not delete {identifier}: {exc}") from exc
    logger.debug("Removed profile image %s", identifier)
    return True


def _bucket():
    if not GCS_IMAGE_BUCKET:
        raise ImageStorageError("GCS_IMAGE_BUCKET is not configured.")
    from google.cloud import storage

    return storage.Client().bucket(GCS_IMAGE_BUCKET)


def _local_path(upload_dir: Path, identifier: str) -> Path:
    root = upload_dir.resolve()
    path = (root / identifier.lstrip("/")).resolve()
    if root not in path.parents:
        raise ImageStorageError(f"{identifier} is outside the upload directory.")
    return path
