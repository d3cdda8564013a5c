import os
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from minio.error import S3Error

from droproom.errors import BlobNotFound, StorageFailure
from droproom.storage import LocalBlobStore, MinioBlobStore, build_blob_key, get_blob_store, room_prefix


def test_build_blob_key_is_namespaced_and_sanitized():
    key = build_blob_key("abcd2345", "../../my report (final).pdf")
    assert key.startswith(room_prefix("abcd2345"))
    name = key.split("/", 1)[1]
    assert "/" not in name
    assert name.endswith("_my_report__final_.pdf")
    assert build_blob_key("abcd2345", "same.txt") != build_blob_key("abcd2345", "same.txt")


def test_local_put_get_exists_delete(blob_store):
    blob_store.put("room1234/a.txt", b"hello")
    assert blob_store.exists("room1234/a.txt")
    assert blob_store.get("room1234/a.txt") == b"hello"
    assert blob_store.modified_at("room1234/a.txt").tzinfo == timezone.utc

    blob_store.put("room1234/a.txt", b"replaced")
    assert blob_store.get("room1234/a.txt") == b"replaced"

    blob_store.delete("room1234/a.txt")
    blob_store.delete("room1234/a.txt")
    assert not blob_store.exists("room1234/a.txt")
    with pytest.raises(BlobNotFound):
        blob_store.get("room1234/a.txt")
    with pytest.raises(BlobNotFound):
        blob_store.modified_at("room1234/a.txt")
    assert not os.path.exists(os.path.join(blob_store.root, "room1234"))


def test_local_list_keys_respects_prefix(blob_store):
    blob_store.put("roomA234/one", b"1")
    blob_store.put("roomA234/two", b"2")
    blob_store.put("roomA2345/other", b"3")
    blob_store.put("roomB234/three", b"4")
    assert blob_store.list_keys("roomA234/") == ["roomA234/one", "roomA234/two"]
    assert blob_store.list_keys("roomA") == ["roomA234/one", "roomA234/two", "roomA2345/other"]
    assert len(blob_store.list_keys()) == 4
    assert blob_store.list_keys("missing/") == []


def test_local_list_keys_skips_partial_writes(blob_store):
    blob_store.put("roomA234/done", b"1")
    with open(os.path.join(blob_store.root, "roomA234", ".tmp-inflight"), "wb") as handle:
        handle.write(b"partial")
    assert blob_store.list_keys("roomA234/") == ["roomA234/done"]


def test_delete_prefix(blob_store):
    blob_store.put("roomA234/one", b"1")
    blob_store.put("roomA234/nested/two", b"2")
    blob_store.put("roomB234/keep", b"3")
    assert blob_store.delete_prefix("roomA234/") == 2
    assert blob_store.delete_prefix("roomA234/") == 0
    assert blob_store.list_keys() == ["roomB234/keep"]
    with pytest.raises(ValueError):
        blob_store.delete_prefix("")


@pytest.mark.parametrize("key", ["", "/abs", "room/../escape", "room/./x"])
def test_local_rejects_unsafe_keys(blob_store, key):
    with pytest.raises(ValueError):
        blob_store.put(key, b"x")


def test_get_blob_store_defaults_to_local(upload_dir, monkeypatch):
    monkeypatch.delenv("MINIO_ENDPOINT", raising=False)
    store = get_blob_store()
    assert isinstance(store, LocalBlobStore)
    assert store.root == os.path.abspath(str(upload_dir))


def _s3_error(code, bucket, key):
    return S3Error(
        code=code,
        message=f"{code} for {key}",
        resource=f"/{bucket}/{key}",
        request_id="req",
        host_id="host",
        response=None,
        bucket_name=bucket,
        object_name=key,
    )


class FakeMinio:
    def __init__(self, denied=()):
        self.objects = {}
        self.denied = set(denied)

    def _check(self, bucket, key):
        if key in self.denied:
            raise _s3_error("AccessDenied", bucket, key)
        if key not in self.objects:
            raise _s3_error("NoSuchKey", bucket, key)

    def put_object(self, bucket, key, data, length, content_type):
        self.objects[key] = data.read(length)

    def get_object(self, bucket, key):
        self._check(bucket, key)
        body = self.objects[key]
        return SimpleNamespace(read=lambda: body, close=lambda: None, release_conn=lambda: None)

    def remove_object(self, bucket, key):
        self._check(bucket, key)
        del self.objects[key]

    def stat_object(self, bucket, key):
        self._check(bucket, key)
        return SimpleNamespace(last_modified=datetime(2026, 1, 1))

    def list_objects(self, bucket, prefix=None, recursive=False):
        return [
            SimpleNamespace(object_name=key, is_dir=False)
            for key in self.objects
            if prefix is None or key.startswith(prefix)
        ]


def test_minio_store_happy_path():
    client = FakeMinio()
    store = MinioBlobStore(client, "uploads")
    store.put("roomA234/one", b"payload", "text/plain")
    store.put("roomB234/two", b"other")
    assert store.get("roomA234/one") == b"payload"
    assert store.list_keys("roomA234/") == ["roomA234/one"]
    assert store.modified_at("roomA234/one") == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert store.delete_prefix("roomA234/") == 1
    assert store.list_keys() == ["roomB234/two"]


def test_minio_store_missing_keys():
    store = MinioBlobStore(FakeMinio(), "uploads")
    store.delete("roomA234/absent")
    assert not store.exists("roomA234/absent")
    with pytest.raises(BlobNotFound):
        store.get("roomA234/absent")
    with pytest.raises(BlobNotFound):
        store.modified_at("roomA234/absent")


def test_minio_store_other_errors_are_storage_failures():
    client = FakeMinio(denied={"roomA234/locked"})
    client.objects["roomA234/locked"] = b"x"
    store = MinioBlobStore(client, "uploads")
    with pytest.raises(StorageFailure):
        store.get("roomA234/locked")
    with pytest.raises(StorageFailure):
        store.delete("roomA234/locked")
    with pytest.raises(StorageFailure):
        store.exists("roomA234/locked")


def test_storage_failure_is_retryable():
    assert StorageFailure("down").retryable
    assert not BlobNotFound("gone").retryable
