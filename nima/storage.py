"""
nima/storage.py
───────────────
Blob storage for user photos and generated images.

Blobs live under STORAGE_DIR keyed by an opaque storage id. URLs are never
persisted: get_url() mints a signed, expiring link on every read, and the
/files route checks the signature before serving bytes.
"""

import hashlib
import hmac
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from nima.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_STORAGE_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class FileStorage:
    def __init__(self, root: Path, secret: str, base_url: str, ttl_seconds: int) -> None:
        self.root = root
        self._secret = secret.encode()
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    def _path(self, storage_id: str) -> Path:
        if not _STORAGE_ID_RE.match(storage_id):
            raise ValueError(f"Invalid storage id '{storage_id}'.")
        return self.root / storage_id[:2] / storage_id

    def store(self, data: bytes) -> str:
        """Persist bytes and return their new storage id."""
        storage_id = uuid.uuid4().hex
        path = self._path(storage_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Stored blob %s (%d bytes)", storage_id, len(data))
        return storage_id

    def exists(self, storage_id: str) -> bool:
        try:
            return self._path(storage_id).is_file()
        except ValueError:
            return False

    def read(self, storage_id: str) -> bytes:
        return self._path(storage_id).read_bytes()

    def _sign(self, storage_id: str, expires: int) -> str:
        message = f"{storage_id}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def get_url(self, storage_id: Optional[str], now: Optional[float] = None) -> Optional[str]:
        """Signed URL for a stored blob, or None when there is nothing to serve."""
        if not storage_id or not self.exists(storage_id):
            return None
        expires = int((now if now is not None else time.time()) + self.ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._sign(storage_id, expires)})
        return f"{self.base_url}/api/v1/files/{storage_id}?{query}"

    def verify(self, storage_id: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        if expires < (now if now is not None else time.time()):
            return False
        return hmac.compare_digest(self._sign(storage_id, expires), signature)


storage = FileStorage(
    root=settings.storage_path,
    secret=settings.APP_SECRET_KEY,
    base_url=settings.PUBLIC_BASE_URL,
    ttl_seconds=settings.FILE_URL_TTL_SECONDS,
)
