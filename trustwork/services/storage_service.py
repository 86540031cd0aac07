# trustwork/services/storage_service.py
"""Keyed object store on a local root: ``<bucket>/<path...>`` keys.

Buckets come from OBJECT_STORE_BUCKETS; anything outside them is refused.
"""
import re
import secrets
from pathlib import Path

from flask import current_app

from ..utils import utcnow

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _root() -> Path:
    base = current_app.config.get("OBJECT_STORE_ROOT")
    base = Path(base) if base else Path(current_app.instance_path) / "objects"
    base.mkdir(parents=True, exist_ok=True)
    return base


def sanitize_filename(name: str) -> str:
    """Replace everything outside [A-Za-z0-9_.-] with an underscore."""
    name = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE.sub("_", name)
    if not safe.strip("._"):
        raise ValueError("Empty filename")
    return safe


def allowed_ext(filename: str) -> bool:
    exts = current_app.config.get("ALLOWED_EXTENSIONS") or set()
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return bool(suffix) and suffix in exts


def _stamp(now=None) -> int:
    return int((now or utcnow()).timestamp() * 1000)


# -----------------
# Path builders
# -----------------

def resume_path(user_id, filename, now=None) -> str:
    return f"resumes/{user_id}/{_stamp(now)}-{sanitize_filename(filename)}"


def attachment_path(assignment_id, filename, now=None) -> str:
    return f"attachments/{assignment_id}/{_stamp(now)}-{sanitize_filename(filename)}"


def message_attachment_path(conversation_id, filename) -> str:
    safe = sanitize_filename(filename)
    stem, dot, ext = safe.rpartition(".")
    if not stem:
        stem, dot, ext = safe, "", ""
    return f"message-attachments/{conversation_id}/{stem}-{secrets.token_hex(6)}{dot}{ext}"


# -----------------
# get / put / remove
# -----------------

def _resolve(key: str) -> Path:
    bucket = (key or "").split("/", 1)[0]
    if bucket not in (current_app.config.get("OBJECT_STORE_BUCKETS") or ()):
        raise ValueError(f"Unknown bucket: {bucket!r}")
    root = _root().resolve()
    path = (root / key).resolve()
    if root not in path.parents:
        raise ValueError(f"Key escapes the store: {key!r}")
    return path


def put(key: str, data) -> str:
    """Write bytes or a werkzeug FileStorage under ``key``; returns the key."""
    path = _resolve(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, (bytes, bytearray)):
        path.write_bytes(bytes(data))
    else:
        data.save(path)
    return key


def get(key: str) -> bytes:
    path = _resolve(key)
    if not path.is_file():
        raise FileNotFoundError(key)
    return path.read_bytes()


def remove(key: str) -> bool:
    path = _resolve(key)
    if not path.exists():
        return False
    path.unlink()
    return True
