import os
import re
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from tusvault.config import settings

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class BlobNotFound(LookupError):
    pass


def blob_key(upload_id: str, file_name: str) -> str:
    safe_name = _UNSAFE_NAME_CHARS.sub("_", file_name).strip("._") or "file"
    return f"uploads/{upload_id}/{safe_name[:100]}"


class BlobStorage:
    def attach_file(self, upload_id: str, file_name: str, local_path: Path, mime_type: str | None = None) -> str:
        raise NotImplementedError

    def open_for_read(self, key: str, start: int = 0, length: int | None = None) -> BinaryIO:
        raise NotImplementedError

    def size(self, key: str) -> int:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def attach_file(self, upload_id: str, file_name: str, local_path: Path, mime_type: str | None = None) -> str:
        key = blob_key(upload_id, file_name)
        target = self.root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        staged = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            shutil.copyfile(local_path, staged)
            os.replace(staged, target)
        finally:
            staged.unlink(missing_ok=True)
        return key

    def open_for_read(self, key: str, start: int = 0, length: int | None = None) -> BinaryIO:
        try:
            handle = (self.root / key).open("rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise BlobNotFound(key) from exc
        handle.seek(start)
        return handle

    def size(self, key: str) -> int:
        try:
            return (self.root / key).stat().st_size
        except FileNotFoundError as exc:
            raise BlobNotFound(key) from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [str(path.relative_to(root)).replace("\\", "/") for path in base.rglob("*") if path.is_file()]

    def delete_key(self, key: str) -> None:
        target = self.root / key
        if target.exists():
            target.unlink()


class S3BlobStorage(BlobStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    @staticmethod
    def _is_missing(exc: Exception) -> bool:
        response = getattr(exc, "response", None) or {}
        code = str(response.get("Error", {}).get("Code", ""))
        return code in ("NoSuchKey", "404", "NotFound")

    def attach_file(self, upload_id: str, file_name: str, local_path: Path, mime_type: str | None = None) -> str:
        key = blob_key(upload_id, file_name)
        extra_args = {"ContentType": mime_type} if mime_type else None
        self.client.upload_file(str(local_path), self.bucket, key, ExtraArgs=extra_args)
        return key

    def open_for_read(self, key: str, start: int = 0, length: int | None = None) -> BinaryIO:
        params = {"Bucket": self.bucket, "Key": key}
        if start or length is not None:
            end = "" if length is None else str(start + length - 1)
            params["Range"] = f"bytes={start}-{end}"
        try:
            return self.client.get_object(**params)["Body"]
        except Exception as exc:
            if self._is_missing(exc):
                raise BlobNotFound(key) from exc
            raise

    def size(self, key: str) -> int:
        try:
            return int(self.client.head_object(Bucket=self.bucket, Key=key)["ContentLength"])
        except Exception as exc:
            if self._is_missing(exc):
                raise BlobNotFound(key) from exc
            raise

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_storage() -> BlobStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalBlobStorage(settings.storage_root)
    if backend == "s3":
        return S3BlobStorage(settings.s3_bucket, settings.aws_region)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3BlobStorage(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")


storage = build_storage()
