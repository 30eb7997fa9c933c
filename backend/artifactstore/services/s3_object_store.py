"""S3 / MinIO object store adapter.

boto3 is sync, so every SDK call runs in a worker thread via
asyncio.to_thread and is bounded by the adapter timeout.
"""
import asyncio
import io
import logging
from typing import Any, BinaryIO, Optional
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from artifactstore.errors import BackendUnavailable, InvalidArgument, NotFound
from artifactstore.schemas.object import ObjectStat
from artifactstore.services.object_store import (
    DEFAULT_PRESIGN_EXPIRY,
    ObjectStoreAdapter,
    validate_bucket_name,
    validate_object_key,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}
_BUCKET_EXISTS_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3ObjectStore(ObjectStoreAdapter):
    """Object store backed by any S3-compatible endpoint.

    Header values are percent-encoded into user metadata because S3 only
    accepts ASCII there; ``stat`` decodes them again.
    """

    backend_name = "s3"

    def __init__(
        self,
        endpoint_url: str = "",
        access_key: str = "",
        secret_key: str = "",
        region: str = "us-east-1",
        timeout: Optional[float] = None,
        client: Any = None,
    ):
        super().__init__(timeout=timeout)
        self.region = region
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        self._client = client

    def _classify_error(self, error: Exception, operation: str, bucket: str, key: str = "") -> Exception:
        """Map an SDK error onto NotFound or BackendUnavailable."""
        if isinstance(error, ClientError) and _error_code(error) in _NOT_FOUND_CODES:
            return NotFound(f"Object {bucket}/{key} not found")
        return BackendUnavailable(
            f"S3 {operation} failed for {bucket}/{key}: {error}", backend=self.backend_name
        )

    async def _call(self, operation: str, bucket: str, key: str, fn, *args, **kwargs):
        try:
            return await self._bounded(asyncio.to_thread(fn, *args, **kwargs), operation, bucket, key)
        except (ClientError, BotoCoreError) as e:
            raise self._classify_error(e, operation, bucket, key) from e

    def _create_bucket_args(self, name: str) -> dict[str, Any]:
        # us-east-1 is the only region that rejects an explicit LocationConstraint
        if not self.region or self.region == "us-east-1":
            return {"Bucket": name}
        return {"Bucket": name, "CreateBucketConfiguration": {"LocationConstraint": self.region}}

    async def ensure_bucket(self, name: str) -> None:
        validate_bucket_name(name)
        try:
            await self._bounded(asyncio.to_thread(self._client.head_bucket, Bucket=name), "head_bucket", name)
            return
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES:
                raise self._classify_error(e, "head_bucket", name) from e
        except BotoCoreError as e:
            raise self._classify_error(e, "head_bucket", name) from e

        try:
            await self._bounded(
                asyncio.to_thread(self._client.create_bucket, **self._create_bucket_args(name)), "create_bucket", name
            )
        except ClientError as e:
            # Lost a race with another process creating the same bucket
            if _error_code(e) in _BUCKET_EXISTS_CODES:
                return
            raise BackendUnavailable(f"Cannot create bucket {name}: {e}", backend=self.backend_name) from e
        except BotoCoreError as e:
            raise BackendUnavailable(f"Cannot create bucket {name}: {e}", backend=self.backend_name) from e
        logger.info(f"Created bucket {name}")

    async def put(self, bucket, key, stream, size, content_type, headers=None) -> None:
        validate_bucket_name(bucket)
        validate_object_key(key)
        if size is None or size < 0:
            raise InvalidArgument(f"Invalid object size: {size}")
        metadata = {name: quote(value, safe="") for name, value in (headers or {}).items()}
        try:
            await self._call(
                "put", bucket, key, self._client.put_object,
                Bucket=bucket, Key=key, Body=stream, ContentLength=size,
                ContentType=content_type, Metadata=metadata,
            )
        except NotFound as e:
            raise InvalidArgument(f"Bucket {bucket} does not exist; call ensure_bucket first") from e

    async def get(self, bucket: str, key: str) -> BinaryIO:
        validate_object_key(key)

        def _download() -> bytes:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()

        data = await self._call("get", bucket, key, _download)
        return io.BytesIO(data)

    async def delete(self, bucket: str, key: str) -> None:
        validate_object_key(key)
        try:
            await self._call("delete", bucket, key, self._client.delete_object, Bucket=bucket, Key=key)
        except NotFound:
            # Missing bucket or key: nothing left to delete
            pass

    async def stat(self, bucket: str, key: str) -> ObjectStat:
        validate_object_key(key)
        try:
            response = await self._call("stat", bucket, key, self._client.head_object, Bucket=bucket, Key=key)
        except NotFound:
            return ObjectStat(bucket=bucket, key=key, exists=False)
        return ObjectStat(
            bucket=bucket,
            key=key,
            exists=True,
            size_bytes=response.get("ContentLength"),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
            headers={name: unquote(value) for name, value in response.get("Metadata", {}).items()},
        )

    async def presign(self, bucket: str, key: str, ttl: int = DEFAULT_PRESIGN_EXPIRY) -> str:
        if ttl is None or ttl <= 0:
            raise InvalidArgument(f"Presign expiry must be positive, got {ttl}")
        if not await self.exists(bucket, key):
            raise NotFound(f"Object {bucket}/{key} not found")
        return await self._call(
            "presign", bucket, key, self._client.generate_presigned_url,
            ClientMethod="get_object", Params={"Bucket": bucket, "Key": key}, ExpiresIn=int(ttl),
        )
