"""Document byte source backed by MinIO."""

from __future__ import annotations

import asyncio
from typing import Any

from minio import Minio
from minio.error import S3Error

from datashare.core.config import get_settings


_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NoSuchBucket"})


class DocumentObjectNotFoundError(FileNotFoundError):
    """Document metadata exists but the stored object does not."""


class DocumentStream:
    """Chunked reader over an open object response.

    ``aclose`` releases the connection whether or not reading has started,
    so a stream that is opened and then refused never leaks a connection.
    """

    def __init__(self, response: Any, chunk_size: int) -> None:
        self._response = response
        self._chunk_size = chunk_size
        self._closed = False

    def __aiter__(self) -> DocumentStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await asyncio.to_thread(self._response.read, self._chunk_size)
        except BaseException:
            await self.aclose()
            raise
        if not chunk:
            await self.aclose()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        self._response.release_conn()


class DocumentStorage:
    """Open and stream stored document objects without buffering them whole."""

    def __init__(self, client: Minio | None = None, *, bucket: str | None = None) -> None:
        settings = get_settings()
        self._client = client or Minio(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        self._bucket = bucket or settings.minio_bucket_documents
        self._chunk_size = settings.document_stream_chunk_bytes

    async def open(self, object_key: str) -> DocumentStream:
        """Open *object_key* for streaming.

        The object is opened eagerly so a missing object surfaces before any
        response headers are sent.
        """
        try:
            response = await asyncio.to_thread(self._client.get_object, self._bucket, object_key)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                raise DocumentObjectNotFoundError("document object not found") from exc
            raise
        return DocumentStream(response, self._chunk_size)
