"""Tests for LocalObjectStore: bucket provisioning, object lifecycle, presigned links."""
import asyncio
import io
import time

import pytest

from artifactstore.errors import BackendUnavailable, InvalidArgument, NotFound
from artifactstore.services.object_store import LocalObjectStore, validate_bucket_name, validate_object_key

BUCKET = "unit-bucket"
KEY = "2024/01/01/hello_0000abcd.txt"


async def _put(store: LocalObjectStore, data: bytes, key: str = KEY, headers=None):
    await store.ensure_bucket(BUCKET)
    await store.put(BUCKET, key, io.BytesIO(data), len(data), "text/plain", headers or {})


class TestBuckets:
    async def test_ensure_bucket_is_idempotent(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        await _put(object_store, b"keep me")
        await object_store.ensure_bucket(BUCKET)
        assert (await object_store.get(BUCKET, KEY)).read() == b"keep me"

    @pytest.mark.parametrize("name", ["", "ab", "UPPER", "has_underscore", "-lead", "a..b"])
    def test_invalid_bucket_names(self, name):
        with pytest.raises(InvalidArgument):
            validate_bucket_name(name)

    async def test_put_into_missing_bucket(self, object_store: LocalObjectStore):
        with pytest.raises(InvalidArgument, match="ensure_bucket"):
            await object_store.put("missing-bucket", KEY, io.BytesIO(b"x"), 1, "text/plain")


class TestObjects:
    async def test_put_get_roundtrip(self, object_store: LocalObjectStore):
        await _put(object_store, b"hello objects")
        stream = await object_store.get(BUCKET, KEY)
        assert stream.read() == b"hello objects"

    async def test_get_missing(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        with pytest.raises(NotFound):
            await object_store.get(BUCKET, "2024/01/01/nothing.txt")

    async def test_size_mismatch_rejected_and_nothing_stored(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        with pytest.raises(InvalidArgument):
            await object_store.put(BUCKET, KEY, io.BytesIO(b"short"), 99, "text/plain")
        assert not await object_store.exists(BUCKET, KEY)
        leftovers = [p for p in (object_store.root / BUCKET).rglob("*") if p.is_file()]
        assert leftovers == []

    async def test_negative_size_rejected(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        with pytest.raises(InvalidArgument):
            await object_store.put(BUCKET, KEY, io.BytesIO(b""), -1, "text/plain")

    async def test_stat_reports_size_and_headers(self, object_store: LocalObjectStore):
        await _put(object_store, b"12345", headers={"uploaded-by": "alice"})
        stat = await object_store.stat(BUCKET, KEY)
        assert stat.exists
        assert stat.size_bytes == 5
        assert stat.content_type == "text/plain"
        assert stat.headers == {"uploaded-by": "alice"}

    async def test_stat_with_corrupt_sidecar(self, object_store: LocalObjectStore):
        await _put(object_store, b"hello")
        object_store._meta_path(BUCKET, KEY).write_text("{not json", encoding="utf-8")
        with pytest.raises(BackendUnavailable, match="Corrupt metadata sidecar"):
            await object_store.stat(BUCKET, KEY)

    async def test_stat_missing(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        stat = await object_store.stat(BUCKET, KEY)
        assert stat.exists is False
        assert stat.size_bytes is None

    async def test_delete_is_idempotent(self, object_store: LocalObjectStore):
        await _put(object_store, b"bye")
        await object_store.delete(BUCKET, KEY)
        await object_store.delete(BUCKET, KEY)
        assert not await object_store.exists(BUCKET, KEY)
        with pytest.raises(NotFound):
            await object_store.get(BUCKET, KEY)

    @pytest.mark.parametrize("key", ["", "/abs/key", "a/../b", "a//b", "a\\b"])
    def test_invalid_keys(self, key):
        with pytest.raises(InvalidArgument):
            validate_object_key(key)

    async def test_timeout_surfaces_as_backend_unavailable(self, object_store: LocalObjectStore):
        object_store.timeout = 0.01

        async def _slow():
            await asyncio.sleep(1)

        with pytest.raises(BackendUnavailable):
            await object_store._bounded(_slow(), "get", BUCKET, KEY)


class TestPresign:
    async def test_presign_and_resolve(self, object_store: LocalObjectStore):
        await _put(object_store, b"share me")
        url = await object_store.presign(BUCKET, KEY, ttl=60)
        assert url.startswith(f"http://testserver/objects/{BUCKET}/")
        assert object_store.resolve_presigned(url) == (BUCKET, KEY)

    async def test_presign_missing_object(self, object_store: LocalObjectStore):
        await object_store.ensure_bucket(BUCKET)
        with pytest.raises(NotFound):
            await object_store.presign(BUCKET, KEY)

    async def test_presign_rejects_non_positive_ttl(self, object_store: LocalObjectStore):
        await _put(object_store, b"x")
        with pytest.raises(InvalidArgument):
            await object_store.presign(BUCKET, KEY, ttl=0)

    async def test_expired_link(self, object_store: LocalObjectStore):
        await _put(object_store, b"x")
        url = await object_store.presign(BUCKET, KEY, ttl=10)
        with pytest.raises(InvalidArgument, match="expired"):
            object_store.resolve_presigned(url, now=time.time() + 3600)

    async def test_tampered_link(self, object_store: LocalObjectStore):
        await _put(object_store, b"x")
        url = await object_store.presign(BUCKET, KEY, ttl=60)
        tampered = url.replace("hello_0000abcd", "hello_ffffffff")
        with pytest.raises(InvalidArgument, match="signature"):
            object_store.resolve_presigned(tampered)

    async def test_link_from_other_secret_rejected(self, object_store: LocalObjectStore, tmp_path):
        await _put(object_store, b"x")
        url = await object_store.presign(BUCKET, KEY, ttl=60)
        other = LocalObjectStore(tmp_path / "other", presign_secret="other", base_url=object_store.base_url)
        with pytest.raises(InvalidArgument):
            other.resolve_presigned(url)
