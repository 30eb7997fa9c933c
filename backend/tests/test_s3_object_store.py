"""Tests for S3ObjectStore against an in-memory stand-in for the boto3 client."""
import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from artifactstore.errors import BackendUnavailable, InvalidArgument, NotFound
from artifactstore.services.s3_object_store import S3ObjectStore


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """Implements the handful of boto3 S3 calls the adapter uses."""

    def __init__(self):
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], dict] = {}
        self.create_calls = 0
        self.create_configs: list[dict | None] = []
        self.region = "us-east-1"
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://minio:9000")

    def head_bucket(self, Bucket):
        self._check()
        if Bucket not in self.buckets:
            raise _client_error("404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket, CreateBucketConfiguration=None):
        self._check()
        constraint = (CreateBucketConfiguration or {}).get("LocationConstraint")
        if self.region != "us-east-1" and constraint != self.region:
            raise _client_error("IllegalLocationConstraintException", "CreateBucket")
        if self.region == "us-east-1" and constraint is not None:
            raise _client_error("InvalidLocationConstraint", "CreateBucket")
        self.create_calls += 1
        self.create_configs.append(CreateBucketConfiguration)
        self.buckets.add(Bucket)
        return {}

    def put_object(self, Bucket, Key, Body, ContentLength, ContentType, Metadata):
        self._check()
        if Bucket not in self.buckets:
            raise _client_error("NoSuchBucket", "PutObject")
        self.objects[(Bucket, Key)] = {
            "data": Body.read(),
            "content_type": ContentType,
            "metadata": dict(Metadata),
        }
        return {}

    def get_object(self, Bucket, Key):
        self._check()
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)]["data"])}

    def delete_object(self, Bucket, Key):
        self._check()
        self.objects.pop((Bucket, Key), None)
        return {}

    def head_object(self, Bucket, Key):
        self._check()
        obj = self.objects.get((Bucket, Key))
        if obj is None:
            raise _client_error("404", "HeadObject")
        return {
            "ContentLength": len(obj["data"]),
            "ContentType": obj["content_type"],
            "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "Metadata": obj["metadata"],
        }

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://minio.local/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


@pytest.fixture
def fake_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def s3_store(fake_client: FakeS3Client) -> S3ObjectStore:
    return S3ObjectStore(client=fake_client)


class TestS3ObjectStore:
    async def test_ensure_bucket_creates_once(self, s3_store, fake_client):
        await s3_store.ensure_bucket("driveops-files")
        await s3_store.ensure_bucket("driveops-files")
        assert fake_client.create_calls == 1
        assert fake_client.create_configs == [None]

    async def test_ensure_bucket_outside_us_east_1(self, fake_client):
        fake_client.region = "eu-west-1"
        store = S3ObjectStore(region="eu-west-1", client=fake_client)
        await store.ensure_bucket("driveops-files")
        assert "driveops-files" in fake_client.buckets
        assert fake_client.create_configs == [{"LocationConstraint": "eu-west-1"}]

    async def test_put_into_missing_bucket(self, s3_store):
        with pytest.raises(InvalidArgument):
            await s3_store.put("driveops-files", "k.txt", io.BytesIO(b"x"), 1, "text/plain")

    async def test_put_get_with_non_ascii_headers(self, s3_store, fake_client):
        await s3_store.ensure_bucket("driveops-files")
        data = b"binary"
        await s3_store.put(
            "driveops-files", "2024/01/01/r_00000000.pdf", io.BytesIO(data), len(data),
            "application/pdf", {"original-filename": "résumé.pdf"},
        )
        assert (await s3_store.get("driveops-files", "2024/01/01/r_00000000.pdf")).read() == data
        stat = await s3_store.stat("driveops-files", "2024/01/01/r_00000000.pdf")
        assert stat.exists and stat.size_bytes == len(data)
        assert stat.headers == {"original-filename": "résumé.pdf"}
        stored_meta = fake_client.objects[("driveops-files", "2024/01/01/r_00000000.pdf")]["metadata"]
        assert stored_meta["original-filename"].isascii()

    async def test_get_missing_is_not_found(self, s3_store):
        with pytest.raises(NotFound):
            await s3_store.get("driveops-files", "nope.txt")

    async def test_delete_missing_is_noop(self, s3_store):
        await s3_store.delete("driveops-files", "nope.txt")

    async def test_stat_missing(self, s3_store):
        assert (await s3_store.stat("driveops-files", "nope.txt")).exists is False

    async def test_presign(self, s3_store):
        await s3_store.ensure_bucket("driveops-files")
        await s3_store.put("driveops-files", "k.txt", io.BytesIO(b"x"), 1, "text/plain")
        url = await s3_store.presign("driveops-files", "k.txt", ttl=120)
        assert "X-Amz-Expires=120" in url

    async def test_presign_missing(self, s3_store):
        with pytest.raises(NotFound):
            await s3_store.presign("driveops-files", "k.txt")

    async def test_connectivity_errors_are_backend_unavailable(self, s3_store, fake_client):
        fake_client.unreachable = True
        with pytest.raises(BackendUnavailable):
            await s3_store.ensure_bucket("driveops-files")
        with pytest.raises(BackendUnavailable):
            await s3_store.get("driveops-files", "k.txt")
        with pytest.raises(BackendUnavailable):
            await s3_store.delete("driveops-files", "k.txt")
