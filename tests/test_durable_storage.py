"""Tests for the durable storage backends."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from print_lifecycle.services.durable_storage import (
    DurableStorageError,
    LocalDurableStorage,
    S3DurableStorage,
    build_durable_storage,
)


@pytest.fixture
def src(tmp_path: Path) -> Path:
    f = tmp_path / "staged.PDF"
    f.write_bytes(b"%PDF-1.4 content")
    return f


# ---------------------------------------------------------------------------
# Local backend
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_local_upload_is_idempotent_per_object_id(tmp_path: Path, src: Path):
    storage = LocalDurableStorage(str(tmp_path / "durable"))

    first = await storage.upload(src, "print-requests", "print_abc")
    second = await storage.upload(src, "print-requests", "print_abc")

    assert first == second
    assert first.bytes == len(b"%PDF-1.4 content")
    files = list((tmp_path / "durable" / "print-requests").iterdir())
    assert [f.name for f in files] == ["print_abc.pdf"]


@pytest.mark.asyncio
async def test_local_upload_missing_source_raises(tmp_path: Path):
    storage = LocalDurableStorage(str(tmp_path / "durable"))
    with pytest.raises(DurableStorageError):
        await storage.upload(tmp_path / "gone.pdf", "f", "print_x")


@pytest.mark.asyncio
async def test_local_delete(tmp_path: Path, src: Path):
    storage = LocalDurableStorage(str(tmp_path / "durable"))
    await storage.upload(src, "f", "print_abc")
    # a longer id sharing the prefix must survive
    await storage.upload(src, "f", "print_abcd")

    assert await storage.delete("print_abc") is True
    assert await storage.delete("print_abc") is False
    assert storage.resolve("print_abcd") is not None


# ---------------------------------------------------------------------------
# S3 backend
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_s3_upload_uses_folder_key_and_https_url(src: Path):
    client = MagicMock()
    storage = S3DurableStorage(bucket="prints", region="ap-south-1", client=client)

    stored = await storage.upload(src, "print-requests", "print_abc")

    client.upload_file.assert_called_once_with(str(src), "prints", "print-requests/print_abc.pdf")
    assert stored.url == "https://prints.s3.ap-south-1.amazonaws.com/print-requests/print_abc.pdf"
    assert stored.object_id == "print_abc"


@pytest.mark.asyncio
async def test_s3_client_error_becomes_storage_error(src: Path):
    client = MagicMock()
    client.upload_file.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
    )
    storage = S3DurableStorage(bucket="prints", region="us-east-1", client=client)

    with pytest.raises(DurableStorageError):
        await storage.upload(src, "f", "print_abc")


@pytest.mark.asyncio
async def test_s3_delete_looks_up_unknown_keys(src: Path):
    """delete() falls back to a prefix listing for objects uploaded by another process."""
    client = MagicMock()
    client.list_objects_v2.return_value = {"Contents": [{"Key": "print-requests/print_abc.pdf"}]}
    storage = S3DurableStorage(bucket="prints", region="us-east-1", client=client)

    assert await storage.delete("print_abc") is True
    client.delete_object.assert_called_once_with(
        Bucket="prints", Key="print-requests/print_abc.pdf"
    )

    client.list_objects_v2.return_value = {}
    assert await storage.delete("print_missing") is False


def test_build_durable_storage_rejects_unknown_backend():
    assert isinstance(build_durable_storage("local"), LocalDurableStorage)
    with pytest.raises(ValueError):
        build_durable_storage("ftp")
    with pytest.raises(ValueError):
        build_durable_storage("s3")
