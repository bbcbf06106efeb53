import sys
import types
from pathlib import Path

import pytest

from tusvault.storage import BlobNotFound, S3BlobStorage


class _MissingKey(Exception):
    def __init__(self) -> None:
        super().__init__("not found")
        self.response = {"Error": {"Code": "404"}}


class _FakeS3Client:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.objects: dict[str, int] = {}

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        self.calls.append(("upload_file", {"Filename": filename, "Bucket": bucket, "Key": key, "ExtraArgs": ExtraArgs}))
        self.objects[key] = Path(filename).stat().st_size

    def get_object(self, **kwargs):
        self.calls.append(("get_object", kwargs))
        if kwargs["Key"] not in self.objects:
            raise _MissingKey()
        return {"Body": types.SimpleNamespace(read=lambda size=-1: b"abc", close=lambda: None)}

    def head_object(self, **kwargs):
        self.calls.append(("head_object", kwargs))
        if kwargs["Key"] not in self.objects:
            raise _MissingKey()
        return {"ContentLength": self.objects[kwargs["Key"]]}

    def list_objects_v2(self, **kwargs):
        self.calls.append(("list_objects_v2", kwargs))
        return {"Contents": [{"Key": key} for key in self.objects if key.startswith(kwargs["Prefix"])]}

    def delete_object(self, **kwargs):
        self.calls.append(("delete_object", kwargs))
        self.objects.pop(kwargs["Key"], None)


def test_s3_storage_attach_and_ranged_read(monkeypatch, tmp_path: Path) -> None:
    fake_client = _FakeS3Client()
    fake_boto3 = types.SimpleNamespace(client=lambda service_name, region_name=None: fake_client)
    monkeypatch.setitem(sys.modules, "boto3", fake_boto3)
    source = tmp_path / "u1.part"
    source.write_bytes(b"0123456789")

    storage = S3BlobStorage(bucket="bucket-1", region="us-east-1")
    key = storage.attach_file("u1", "clip.mp4", source, mime_type="video/mp4")
    assert key == "uploads/u1/clip.mp4"
    assert storage.size(key) == 10
    assert storage.list_keys("uploads/") == [key]

    storage.open_for_read(key, start=2, length=3)
    whole = storage.open_for_read(key)

    assert whole.read() == b"abc"
    assert fake_client.calls[0][1]["ExtraArgs"] == {"ContentType": "video/mp4"}
    ranged = [kwargs for name, kwargs in fake_client.calls if name == "get_object"]
    assert ranged[0]["Range"] == "bytes=2-4"
    assert "Range" not in ranged[1]

    storage.delete_key(key)
    with pytest.raises(BlobNotFound):
        storage.size(key)
    with pytest.raises(BlobNotFound):
        storage.open_for_read(key)


def test_s3_storage_requires_bucket() -> None:
    with pytest.raises(ValueError):
        S3BlobStorage(bucket="", region="us-east-1")
