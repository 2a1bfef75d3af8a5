"""
Collaborators the loan engine calls after a transaction commits.

The engine only depends on the Protocols; the classes below are the
defaults wired up by ``main.py``.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import secrets
import time
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from crud import utcnow
from errors import ValidationError
from orm import AuditLogORM

logger = logging.getLogger("app.ports")

SENSITIVE_FIELDS = {"password", "password_hash", "token", "refresh_token", "secret", "access_token"}
SIGNATURE_URL_PREFIX = "/uploads/signatures/"
MAX_SIGNATURE_BYTES = 5 * 1024 * 1024

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


class CacheInvalidator(Protocol):
    def invalidate(self, namespace: str) -> None: ...


class AuditRecorder(Protocol):
    def log_create(self, table: str, record_id: str, actor: str, before: Optional[dict], after: Optional[dict]) -> None: ...

    def log_update(self, table: str, record_id: str, actor: str, before: Optional[dict], after: Optional[dict]) -> None: ...

    def log_delete(self, table: str, record_id: str, actor: str, before: Optional[dict], after: Optional[dict]) -> None: ...


class SignatureStore(Protocol):
    def store(self, image: Union[str, bytes]) -> str: ...

    def discard(self, url: str) -> None: ...


# ---------- cache ----------
class LoggingCacheInvalidator:
    """No cache backend is configured; invalidations are only logged."""

    def invalidate(self, namespace: str) -> None:
        logger.debug("cache invalidate namespace=%s", namespace)


# ---------- audit ----------
def sanitize(values: Optional[dict]) -> Optional[dict]:
    if values is None:
        return None
    return {k: ("[REDACTED]" if k in SENSITIVE_FIELDS else v) for k, v in values.items()}


class SqlAuditRecorder:
    """Writes one ``audit_logs`` row per call, in a session of its own."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def log_create(self, table, record_id, actor, before=None, after=None) -> None:
        self._write("CREATE", table, record_id, actor, before, after)

    def log_update(self, table, record_id, actor, before=None, after=None) -> None:
        self._write("UPDATE", table, record_id, actor, before, after)

    def log_delete(self, table, record_id, actor, before=None, after=None) -> None:
        self._write("DELETE", table, record_id, actor, before, after)

    def _write(self, action: str, table: str, record_id: str, actor: str, before: Any, after: Any) -> None:
        db = self.session_factory()
        try:
            db.add(
                AuditLogORM(
                    id=str(uuid4()),
                    user_id=actor,
                    action=action,
                    table_name=table,
                    record_id=record_id,
                    old_values=_dump(sanitize(before)),
                    new_values=_dump(sanitize(after)),
                    created_at=utcnow(),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _dump(values: Optional[dict]) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(values, default=str, ensure_ascii=False)


# ---------- signatures ----------
class FileSignatureStore:
    """
    Saves signature images under ``directory`` and returns their public URL.

    Accepts raw bytes (an uploaded file) or a base64 string, with or
    without a ``data:image/png;base64,`` prefix.
    """

    def __init__(self, directory: Path, *, url_prefix: str = SIGNATURE_URL_PREFIX):
        self.directory = Path(directory)
        self.url_prefix = url_prefix

    def store(self, image: Union[str, bytes]) -> str:
        data = self._decode(image)
        if not data:
            raise ValidationError("signature image is empty")
        if len(data) > MAX_SIGNATURE_BYTES:
            raise ValidationError("signature image is too large", size=len(data), max_size=MAX_SIGNATURE_BYTES)

        self.directory.mkdir(parents=True, exist_ok=True)
        filename = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}-signature.png"
        (self.directory / filename).write_bytes(data)
        logger.info("signature stored filename=%s size=%s", filename, len(data))
        return f"{self.url_prefix}{filename}"

    def discard(self, url: str) -> None:
        """Remove a file written by ``store`` whose loan update did not commit."""
        if not url.startswith(self.url_prefix):
            return
        path = self.directory / url[len(self.url_prefix):]
        path.unlink(missing_ok=True)
        logger.info("signature discarded filename=%s", path.name)

    @staticmethod
    def _decode(image: Union[str, bytes]) -> bytes:
        if isinstance(image, bytes):
            return image
        payload = _DATA_URL_PREFIX.sub("", (image or "").strip())
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("signature image is not valid base64") from exc
