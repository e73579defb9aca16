"""Upload collaborator boundary: turns an uploaded file into a MediaInput."""
import logging
import os
from pathlib import Path
from typing import Optional

from cutline.config import Settings
from cutline.errors import InvalidRequest
from cutline.models.job import MediaInput

logger = logging.getLogger(__name__)


def normalize_mime_type(declared_type: str) -> str:
    """Lowercased type without parameters (`video/mp4; codecs=...` -> `video/mp4`)."""
    return declared_type.split(";", 1)[0].strip().lower()


def accept_upload(
    local_path: str | Path,
    declared_type: str,
    size_bytes: int,
    settings: Settings,
    duration: Optional[float] = None
) -> MediaInput:
    """
    Validate an uploaded file handed over by the transport layer.

    Args:
        local_path: Where the upload landed
        declared_type: MIME type declared by the client
        size_bytes: Byte size reported by the transport
        settings: Accepted types and size limit
        duration: Source duration in seconds, when the caller knows it

    Returns:
        MediaInput for a job request

    Raises:
        InvalidRequest: If the file or its declared metadata is unacceptable
    """
    path = Path(local_path)

    if not path.is_file():
        raise InvalidRequest(f"File not found: {path}")
    if not os.access(path, os.R_OK):
        raise InvalidRequest(f"File is not readable: {path}")

    mime_type = normalize_mime_type(declared_type or "")
    accepted = {normalize_mime_type(t) for t in settings.accepted_mime_types}
    if mime_type not in accepted:
        raise InvalidRequest(f"Unsupported media type: {declared_type!r}")

    actual_size = path.stat().st_size
    if size_bytes is None or size_bytes <= 0 or actual_size == 0:
        raise InvalidRequest("Upload is empty")
    if actual_size != size_bytes:
        raise InvalidRequest(f"Size mismatch: declared {size_bytes} bytes, found {actual_size}")
    if settings.max_upload_bytes is not None and actual_size > settings.max_upload_bytes:
        raise InvalidRequest(f"Upload exceeds {settings.max_upload_bytes} bytes")

    if duration is not None and not duration > 0:
        raise InvalidRequest(f"Invalid duration: {duration}")

    return MediaInput(
        path=str(path.resolve()),
        size_bytes=actual_size,
        mime_type=mime_type,
        duration=duration,
    )
