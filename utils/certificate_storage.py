"""
utils/certificate_storage.py
----------------------------
Upload certificate PDFs to Supabase Storage and hand back the public URL.

Path convention: ``{ticket_number}-{ticket_id}.pdf`` inside the configured
bucket (default ``certificates``).  Uploads upsert, so re-running a ticket
after a failed attempt overwrites the partial file.

The supabase client is synchronous; calls run in a worker thread so the
event loop is not blocked.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time

from supabase import Client

from utils.settings import _get_int

log = logging.getLogger("utils.certificate_storage")

SLOW_STORAGE_MS: int = _get_int("SLOW_STORAGE_MS", 5000)


class StorageErrorCode(str, enum.Enum):
    UPLOAD_FAILED = "UPLOAD_FAILED"
    URL_GENERATION_FAILED = "URL_GENERATION_FAILED"


class CertificateStorageError(Exception):
    def __init__(self, code: StorageErrorCode, message: str, bucket: str, path: str) -> None:
        super().__init__(message)
        self.code = code
        self.bucket = bucket
        self.path = path


def certificate_path(ticket_number: int, ticket_id: str) -> str:
    return f"{ticket_number}-{ticket_id}.pdf"


class CertificateStorage:
    def __init__(self, client: Client, bucket: str = "certificates") -> None:
        self._client = client
        self.bucket = bucket

    async def save_certificate_pdf(self, ticket_id: str, ticket_number: int, pdf: bytes) -> str:
        path = certificate_path(ticket_number, ticket_id)
        t0 = time.perf_counter()
        store = self._client.storage.from_(self.bucket)

        try:
            await asyncio.to_thread(
                store.upload,
                path=path,
                file=pdf,
                file_options={"content-type": "application/pdf", "upsert": "true"},
            )
        except Exception as e:
            log.error("certificate_upload_failed", extra={"kv": {
                "bucket": self.bucket, "path": path, "error": str(e),
            }})
            raise CertificateStorageError(StorageErrorCode.UPLOAD_FAILED,
                                          f"Failed to upload certificate PDF to bucket {self.bucket}",
                                          self.bucket, path) from e

        try:
            url = await asyncio.to_thread(store.get_public_url, path)
        except Exception as e:
            raise CertificateStorageError(StorageErrorCode.URL_GENERATION_FAILED,
                                          f"Failed to get public URL for {path}",
                                          self.bucket, path) from e
        if not url:
            raise CertificateStorageError(StorageErrorCode.URL_GENERATION_FAILED,
                                          f"Empty public URL for {path}", self.bucket, path)

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        if elapsed_ms > SLOW_STORAGE_MS:
            log.warning("slow_certificate_upload", extra={"kv": {"path": path, "elapsed_ms": elapsed_ms}})
        log.info("certificate_uploaded", extra={"kv": {
            "bucket": self.bucket, "path": path, "bytes": len(pdf), "elapsed_ms": elapsed_ms,
        }})
        return url
