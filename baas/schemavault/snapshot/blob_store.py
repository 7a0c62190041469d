"""
Blob stores for snapshot payloads.

A snapshot optionally carries two payloads next to its metadata row:

    <prefix>/<snapshot_id>/data.json    per-table row dumps
    <prefix>/<snapshot_id>/schema.json  serialized TableSchema list

The metadata row is authoritative. Payloads are an optional enrichment, so
every blob operation is best-effort from the snapshot manager's point of view.

Backends:
    - S3BlobStore: S3-compatible object storage via aiobotocore
    - InMemoryBlobStore: dict-backed store for tests and local development

How to change safely:
    - Keep key layout stable, restores read payloads written by old versions
    - New backends must return None (not raise) for missing keys
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from aiobotocore.session import get_session
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "snapshots"


def data_key(snapshot_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}/{snapshot_id}/data.json"


def schema_key(snapshot_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}/{snapshot_id}/schema.json"


@runtime_checkable
class BlobStore(Protocol):
    """Key/value text storage used for snapshot payloads."""

    prefix: str

    async def put(self, key: str, text: str) -> None:
        """Store text under key, replacing any existing value."""
        ...

    async def get(self, key: str) -> Optional[str]:
        """Return the text stored under key, or None if absent."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if something was deleted."""
        ...


class InMemoryBlobStore:
    """In-memory implementation of BlobStore.

    All data is lost on process exit. Useful for unit tests and for running
    the engine locally without object storage.

    Attributes:
        fail_writes: When True, put() raises (simulates an outage)
        fail_reads: When True, get() raises (simulates an outage)
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX) -> None:
        self.prefix = prefix
        self.fail_writes = False
        self.fail_reads = False
        self._objects: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, text: str) -> None:
        if self.fail_writes:
            raise ConnectionError("In-memory blob store is unavailable for writes")
        async with self._lock:
            self._objects[key] = text
        logger.debug("Blob stored in memory", extra={"key": key, "size": len(text)})

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise ConnectionError("In-memory blob store is unavailable for reads")
        async with self._lock:
            return self._objects.get(key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._objects.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._objects)


class S3BlobStore:
    """S3-compatible blob store.

    The client is created lazily on first use and kept open until close().

    Example:
        >>> blobs = S3BlobStore(S3Config.from_env())
        >>> await blobs.put("snapshots/abc/data.json", "{}")
        >>> await blobs.close()
    """

    def __init__(self, s3_config: Any) -> None:
        """Initialize the blob store.

        Args:
            s3_config: S3Config instance
        """
        self.s3_config = s3_config
        self.prefix = s3_config.snapshot_prefix
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        """Initialize the S3 client on first use."""
        async with self._client_lock:
            if self._s3_client is not None:
                return self._s3_client

            self._session = get_session()

            client_kwargs = {
                "region_name": self.s3_config.region,
            }

            if self.s3_config.endpoint_url:
                client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

            if self.s3_config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
            return self._s3_client

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def put(self, key: str, text: str) -> None:
        client = await self._get_client()
        body = text.encode("utf-8")
        await client.put_object(
            Bucket=self.s3_config.bucket,
            Key=key,
            Body=body,
            ContentType="application/json",
        )
        logger.debug("Blob uploaded", extra={"bucket": self.s3_config.bucket, "key": key, "size": len(body)})

    async def get(self, key: str) -> Optional[str]:
        client = await self._get_client()
        try:
            response = await client.get_object(Bucket=self.s3_config.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise

        async with response["Body"] as stream:
            content = await stream.read()
        return content.decode("utf-8")

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        await client.delete_object(Bucket=self.s3_config.bucket, Key=key)
        return True


def create_blob_store(config: Any) -> Optional[BlobStore]:
    """Factory function to create a blob store from configuration.

    Args:
        config: Engine configuration

    Returns:
        BlobStore implementation, or None for schema-only snapshots

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BlobBackend

    backend = config.snapshot.blob_backend
    if backend == BlobBackend.NONE:
        return None
    elif backend == BlobBackend.MEMORY:
        return InMemoryBlobStore(prefix=config.s3.snapshot_prefix)
    elif backend == BlobBackend.S3:
        return S3BlobStore(config.s3)
    else:
        raise ValueError(f"Unsupported blob backend: {backend}")
