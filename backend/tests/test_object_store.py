"""Tests for the local object store and signed URL tokens."""

import io
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from socialvault.services.object_store import (
    LocalObjectStore,
    ObjectStoreError,
    S3ObjectStore,
    build_object_store,
    verify_signed_token,
)


def _token(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


@pytest.mark.asyncio
async def test_local_put_get_head_delete(object_store: LocalObjectStore):
    await object_store.put_object("u/media/a.jpg", b"hello", content_type="image/jpeg")

    assert await object_store.get_object("u/media/a.jpg") == b"hello"
    info = await object_store.head_object("u/media/a.jpg")
    assert info.size == 5
    assert info.content_type == "image/jpeg"

    assert await object_store.delete_objects(["u/media/a.jpg", "u/media/missing.jpg"]) == []
    assert await object_store.head_object("u/media/a.jpg") is None


@pytest.mark.asyncio
async def test_local_rejects_path_escape(object_store: LocalObjectStore):
    with pytest.raises(ObjectStoreError):
        await object_store.put_object("../outside.txt", b"x")


@pytest.mark.asyncio
async def test_local_get_missing_raises(object_store: LocalObjectStore):
    with pytest.raises(ObjectStoreError):
        await object_store.get_object("nope/missing.bin")


@pytest.mark.asyncio
async def test_signed_urls_verify_with_same_secret(object_store: LocalObjectStore):
    url = await object_store.create_signed_get_url("u/media/a.jpg", expires_in=60)
    token = verify_signed_token(_token(url), secret_key="dev-test-secret")

    assert url.startswith("/storage/u/media/a.jpg?token=")
    assert token.key == "u/media/a.jpg"
    assert token.method == "GET"

    put_url = await object_store.create_signed_put_url("u/uploads/x.zip", expires_in=60)
    assert verify_signed_token(_token(put_url), secret_key="dev-test-secret").method == "PUT"


@pytest.mark.asyncio
async def test_signed_tokens_reject_forgery_and_expiry(object_store: LocalObjectStore):
    url = await object_store.create_signed_get_url("u/media/a.jpg", expires_in=60)
    token = _token(url)

    assert verify_signed_token(token, secret_key="other-secret") is None
    assert verify_signed_token(token + "x", secret_key="dev-test-secret") is None
    assert verify_signed_token("garbage", secret_key="dev-test-secret") is None
    assert verify_signed_token(token, secret_key=None) is None

    expired = await object_store.create_signed_get_url("u/media/a.jpg", expires_in=-10)
    assert verify_signed_token(_token(expired), secret_key="dev-test-secret") is None


@pytest.mark.asyncio
async def test_signing_requires_secret(tmp_path):
    store = LocalObjectStore(tmp_path, secret_key=None)
    with pytest.raises(ObjectStoreError, match="SECRET_KEY"):
        await store.create_signed_get_url("a", expires_in=60)


@pytest.mark.asyncio
async def test_s3_delete_reports_failed_keys():
    client = MagicMock()
    client.delete_objects.return_value = {"Errors": [{"Key": "b", "Code": "AccessDenied"}]}
    store = S3ObjectStore(bucket="backups", client=client)

    failed = await store.delete_objects(["a", "b", ""])

    assert failed == ["b"]
    kwargs = client.delete_objects.call_args.kwargs
    assert kwargs["Bucket"] == "backups"
    assert kwargs["Delete"]["Objects"] == [{"Key": "a"}, {"Key": "b"}]


@pytest.mark.asyncio
async def test_local_download_and_copy(object_store: LocalObjectStore):
    await object_store.put_object("u/uploads/a.zip", b"zip-bytes")

    buffer = io.BytesIO()
    await object_store.download_to_file("u/uploads/a.zip", buffer)
    assert buffer.getvalue() == b"zip-bytes"

    await object_store.copy_object("u/uploads/a.zip", "u/archives/b.zip")
    assert await object_store.get_object("u/archives/b.zip") == b"zip-bytes"
    assert await object_store.get_object("u/uploads/a.zip") == b"zip-bytes"

    with pytest.raises(ObjectStoreError):
        await object_store.copy_object("u/uploads/missing.zip", "u/archives/c.zip")


@pytest.mark.asyncio
async def test_s3_download_and_copy_use_managed_transfers():
    client = MagicMock()
    store = S3ObjectStore(bucket="backups", client=client)
    buffer = io.BytesIO()

    await store.download_to_file("u/uploads/a.zip", buffer)
    await store.copy_object("u/uploads/a.zip", "u/archives/b.zip")

    client.download_fileobj.assert_called_once_with("backups", "u/uploads/a.zip", buffer)
    client.copy.assert_called_once_with({"Bucket": "backups", "Key": "u/uploads/a.zip"}, "backups", "u/archives/b.zip")


def test_build_object_store_rejects_unknown_backend():
    settings = MagicMock(OBJECT_STORE_BACKEND="ftp")
    with pytest.raises(ValueError, match="Unsupported"):
        build_object_store(settings)
