"""Data Reference Store: keeps oversized payloads out of handshake packets.

Small payloads travel inline. Anything above the inline threshold is
serialised, optionally gzipped, and parked in the KV tier (the TTL cache)
or the blob tier (files, or memory when no directory is configured); only
the reference travels.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import BaseModel

from aifactory.cache import TTLCache
from aifactory.errors import NotFoundError, ValidationError
from aifactory.models import generate_id

logger = logging.getLogger(__name__)

DEFAULT_INLINE_THRESHOLD = 10 * 1024
DEFAULT_KV_MAX_BYTES = 1024 * 1024
DEFAULT_COMPRESSION_THRESHOLD = 64 * 1024
BLOB_TTL_SECONDS = 7 * 86400


class DataReference(BaseModel):
    ref_id: str
    storage_type: Literal["inline", "kv", "blob"]
    storage_key: str | None = None
    inline_data: Any = None
    size_bytes: int
    content_type: str = "application/json"
    checksum: str
    compression: Literal["none", "gzip"] = "none"
    encryption: Literal["none", "aes-256"] = "none"
    expires_at: float
    created_at: float


def serialize(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class DataReferenceStore:
    """Wraps payloads into references and resolves them back."""

    def __init__(
        self,
        cache: TTLCache,
        blob_dir: Path | None = None,
        inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
        kv_max_bytes: int = DEFAULT_KV_MAX_BYTES,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._blob_dir = blob_dir
        self._blobs: dict[str, tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self.inline_threshold = inline_threshold
        self.kv_max_bytes = kv_max_bytes
        self.compression_threshold = compression_threshold
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        if blob_dir:
            blob_dir.mkdir(parents=True, exist_ok=True)

    def put(
        self,
        payload: Any,
        execution_id: str,
        stage_id: str,
        kind: str = "input",
        durable: bool = False,
    ) -> DataReference:
        """Store a payload and return its reference.

        ``durable`` references never land in the KV tier, so they survive a
        cache flush or a restart (checkpoints and deliverables).
        """
        raw = serialize(payload)
        size = len(raw)
        digest = checksum(raw)
        now = self._clock()
        ref_id = f"ref_{generate_id()}"

        if size <= self.inline_threshold:
            return DataReference(
                ref_id=ref_id,
                storage_type="inline",
                inline_data=payload,
                size_bytes=size,
                checksum=digest,
                expires_at=now + self.ttl_seconds,
                created_at=now,
            )

        compression = "none"
        body = raw
        if size > self.compression_threshold:
            body = gzip.compress(raw)
            compression = "gzip"

        key = f"{kind}/{execution_id}/{stage_id}/{ref_id}"
        if not durable and size <= self.kv_max_bytes:
            self._cache.set(f"dataref:{key}", (body, digest), ttl=self.ttl_seconds)
            storage_type = "kv"
            expires_at = now + self.ttl_seconds
        else:
            expires_at = now + BLOB_TTL_SECONDS
            self._write_blob(key, body, expires_at)
            storage_type = "blob"

        logger.debug(f"Stored {size}B {kind} payload for {execution_id}/{stage_id} in {storage_type}")
        return DataReference(
            ref_id=ref_id,
            storage_type=storage_type,
            storage_key=key,
            size_bytes=size,
            checksum=digest,
            compression=compression,
            expires_at=expires_at,
            created_at=now,
        )

    def resolve(self, ref: DataReference | dict) -> Any:
        """Return the payload behind a reference, verifying its checksum."""
        if isinstance(ref, dict):
            ref = DataReference.model_validate(ref)

        if ref.storage_type == "inline":
            return ref.inline_data

        body = self._read(ref)
        raw = gzip.decompress(body) if ref.compression == "gzip" else body
        if checksum(raw) != ref.checksum:
            raise ValidationError(f"Checksum mismatch for data reference {ref.ref_id}")
        return json.loads(raw)

    def stored_checksum(self, ref: DataReference) -> str | None:
        """Checksum of the entry as stored, or None when absent/expired."""
        if ref.storage_type == "inline":
            return ref.checksum
        try:
            body = self._read(ref)
        except NotFoundError:
            return None
        raw = gzip.decompress(body) if ref.compression == "gzip" else body
        return checksum(raw)

    def delete(self, ref: DataReference):
        if ref.storage_type == "kv":
            self._cache.delete(f"dataref:{ref.storage_key}")
        elif ref.storage_type == "blob" and ref.storage_key:
            with self._lock:
                self._blobs.pop(ref.storage_key, None)
            if self._blob_dir:
                path = self._blob_path(ref.storage_key)
                if path.exists():
                    path.unlink()

    # -- internals ---------------------------------------------------------

    def _read(self, ref: DataReference) -> bytes:
        if ref.storage_type == "kv":
            entry = self._cache.get(f"dataref:{ref.storage_key}")
            if entry is None:
                raise NotFoundError(f"Data reference {ref.ref_id} expired or missing")
            return entry[0]

        if ref.expires_at <= self._clock():
            with self._lock:
                self._blobs.pop(ref.storage_key or "", None)
            raise NotFoundError(f"Data reference {ref.ref_id} expired")
        if self._blob_dir:
            path = self._blob_path(ref.storage_key or "")
            if not path.exists():
                raise NotFoundError(f"Data reference {ref.ref_id} missing")
            return path.read_bytes()
        with self._lock:
            entry = self._blobs.get(ref.storage_key or "")
        if entry is None:
            raise NotFoundError(f"Data reference {ref.ref_id} missing")
        return entry[0]

    def purge_expired(self) -> int:
        """Evict in-memory blobs past their expiry. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, expires_at) in self._blobs.items() if expires_at <= now]
            for key in stale:
                del self._blobs[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} expired blobs")
        return len(stale)

    @property
    def blob_count(self) -> int:
        return len(self._blobs)

    def _write_blob(self, key: str, body: bytes, expires_at: float):
        if self._blob_dir:
            path = self._blob_path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        else:
            self.purge_expired()
            with self._lock:
                self._blobs[key] = (body, expires_at)

    def _blob_path(self, key: str) -> Path:
        resolved = (self._blob_dir / key).resolve()
        if not str(resolved).startswith(str(self._blob_dir.resolve())):
            raise ValidationError(f"Storage key escapes blob directory: {key}")
        return resolved
