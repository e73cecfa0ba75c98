# /nima/models/base.py
import secrets
import string
import uuid
from datetime import datetime, timezone

_PUBLIC_ID_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def generate_public_id(prefix: str, length: int = 12) -> str:
    return f"{prefix}_" + "".join(secrets.choice(_PUBLIC_ID_ALPHABET) for _ in range(length))
