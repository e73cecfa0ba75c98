# FILE: nima/services/storage_service.py
import logging
import uuid
from pathlib import Path
from typing import Optional

from nima.core import config

logger = logging.getLogger("nima.storage")


def _media_root() -> Path:
    return Path(config.MEDIA_DIR)


def save_image(data: bytes, folder: str = "looks", ext: str = "png") -> str:
    """Write image bytes under MEDIA_DIR and return the storage ref (relative path)."""
    if not data:
        raise ValueError("Empty image")
    ref = f"{folder}/{uuid.uuid4().hex}.{ext}"
    path = _media_root() / ref
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info("Stored %s bytes at %s", len(data), ref)
    return ref


def resolve_url(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    if ref.startswith(("http://", "https://")):
        return ref
    return f"{config.MEDIA_URL_PREFIX}/{ref.lstrip('/')}"


def local_path(url_or_ref: str) -> Optional[Path]:
    """Map a media URL or ref back to its file, or None for remote URLs."""
    if url_or_ref.startswith(("http://", "https://")):
        return None
    ref = url_or_ref
    prefix = config.MEDIA_URL_PREFIX + "/"
    if ref.startswith(prefix):
        ref = ref[len(prefix):]
    root = _media_root().resolve()
    path = (root / ref.lstrip("/")).resolve()
    if root not in path.parents:
        raise ValueError(f"Path escapes media dir: {url_or_ref}")
    return path
