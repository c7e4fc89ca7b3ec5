"""
Object Store Access

Listing and streaming of videos kept in an S3 (or S3-compatible) bucket.
boto3 is synchronous, so every network call and every body read is pushed
to a worker thread with asyncio.to_thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from errors import CatalogUnavailableError, StreamOpenError

logger = logging.getLogger(__name__)


@dataclass
class ObjectListing:
    """One page of a bucket listing."""
    keys: List[str] = field(default_factory=list)
    next_token: Optional[str] = None
    is_truncated: bool = False


class StreamHandle:
    """
    An open read channel into one object.

    The handle must be closed exactly once by whoever consumes it; calling
    close() again is a no-op so a cleanup path can never close twice.
    """

    def __init__(self, key: str, body: Any):
        self.key = key
        self._body = body
        self._closed = False
        self.bytes_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, size: int) -> bytes:
        """Read up to size bytes. Returns b'' at end of stream."""
        chunk = await asyncio.to_thread(self._body.read, size)
        self.bytes_read += len(chunk)
        return chunk

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._body.close)


class ObjectStore(Protocol):
    """What the catalog needs from a bucket."""

    async def list_objects(self, continuation_token: Optional[str] = None) -> ObjectListing:
        ...

    async def open_object_stream(self, key: str) -> StreamHandle:
        ...


class S3ObjectStore:
    """ObjectStore backed by boto3's S3 client."""

    def __init__(self, bucket: str, endpoint_url: Optional[str] = None,
                 region_name: Optional[str] = None, client: Optional[Any] = None):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.client = client or boto3.client(
            "s3", endpoint_url=endpoint_url, region_name=region_name)

    async def list_objects(self, continuation_token: Optional[str] = None) -> ObjectListing:
        params = {"Bucket": self.bucket}
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        logger.debug(
            f"Sending ListObjectsV2 for bucket {self.bucket} (continuation token: {continuation_token})")
        try:
            response = await asyncio.to_thread(self.client.list_objects_v2, **params)
        except (BotoCoreError, ClientError) as e:
            raise CatalogUnavailableError(
                f"Could not list bucket {self.bucket}: {e}") from e

        return ObjectListing(
            keys=[item["Key"] for item in response.get("Contents", [])],
            next_token=response.get("NextContinuationToken"),
            is_truncated=response.get("IsTruncated", False),
        )

    async def open_object_stream(self, key: str) -> StreamHandle:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StreamOpenError(
                key, f"Could not open s3://{self.bucket}/{key}: {e}") from e

        logger.debug(
            f"Opened s3://{self.bucket}/{key} ({response.get('ContentLength', 'unknown')} bytes)")
        return StreamHandle(key, response["Body"])
