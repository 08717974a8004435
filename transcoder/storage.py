"""Blob storage for derived artifacts.

Only four operations are needed by the pipeline (put, head/get, delete, list),
so both backends stay small. Keys follow ``{owner}/transcoded/{upload}/{name}``.
"""

import json
import logging
import mimetypes
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config
from errors import StorageError
from models import ArtifactKeys

logger = logging.getLogger(__name__)

AUDIO_128 = "audio_128.mp3"
AUDIO_320 = "audio_320.mp3"
WAVEFORM = "waveform.json"
COVER = "cover.jpg"

CONTENT_TYPES = {
    AUDIO_128: "audio/mpeg",
    AUDIO_320: "audio/mpeg",
    WAVEFORM: "application/json",
    COVER: "image/jpeg",
}


@dataclass
class StoredObject:
    key: str
    size: int
    content_type: str
    last_modified: datetime | None = None


class StorageBackend(Protocol):
    def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject: ...

    def head_object(self, key: str) -> StoredObject | None: ...

    def get_object(self, key: str) -> bytes: ...

    def delete_object(self, key: str) -> bool: ...

    def list_objects(self, prefix: str = "") -> list[StoredObject]: ...


def assert_safe_key(key: str) -> None:
    if not key or key.startswith("/") or "\\" in key or "\x00" in key:
        raise StorageError(f"Unsafe storage key: {key!r}", stage="upload")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise StorageError(f"Unsafe storage key: {key!r}", stage="upload")


class LocalDiskStorage:
    def __init__(self, base_path: str):
        self.base_path = os.path.abspath(base_path)

    def _path(self, key: str) -> str:
        assert_safe_key(key)
        return os.path.join(self.base_path, *key.split("/"))

    def _stat(self, key: str, path: str) -> StoredObject:
        st = os.stat(path)
        return StoredObject(
            key=key,
            size=st.st_size,
            content_type=mimetypes.guess_type(path)[0] or "application/octet-stream",
            last_modified=datetime.fromtimestamp(st.st_mtime, timezone.utc),
        )

    def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._path(key)
        tmp = f"{path}.part"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to store object {key}: {e}", stage="upload") from e
        obj = self._stat(key, path)
        obj.content_type = content_type
        return obj

    def head_object(self, key: str) -> StoredObject | None:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        return self._stat(key, path)

    def get_object(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Object not found: {key}") from e

    def delete_object(self, key: str) -> bool:
        try:
            os.unlink(self._path(key))
            return True
        except FileNotFoundError:
            return False

    def list_objects(self, prefix: str = "") -> list[StoredObject]:
        root = self._path(prefix.rstrip("/")) if prefix else self.base_path
        objects = []
        for dirpath, _, filenames in os.walk(root):
            for name in sorted(filenames):
                if name.endswith(".part"):
                    continue
                path = os.path.join(dirpath, name)
                key = os.path.relpath(path, self.base_path).replace(os.sep, "/")
                objects.append(self._stat(key, path))
        return objects


class S3Storage:
    def __init__(self, bucket: str, region: str = "us-east-1", endpoint_url: str | None = None, client=None):
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        assert_safe_key(key)
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key} to S3: {e}", stage="upload") from e
        return StoredObject(key=key, size=len(data), content_type=content_type)

    def head_object(self, key: str) -> StoredObject | None:
        try:
            resp = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(f"Failed to stat {key} in S3: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat {key} in S3: {e}") from e
        return StoredObject(
            key=key,
            size=resp.get("ContentLength", 0),
            content_type=resp.get("ContentType", "application/octet-stream"),
            last_modified=resp.get("LastModified"),
        )

    def get_object(self, key: str) -> bytes:
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read {key} from S3: {e}") from e

    def delete_object(self, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to delete {key} from S3: {e}")
            return False

    def list_objects(self, prefix: str = "") -> list[StoredObject]:
        objects = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects.append(
                        StoredObject(
                            key=obj["Key"],
                            size=obj.get("Size", 0),
                            content_type=mimetypes.guess_type(obj["Key"])[0] or "application/octet-stream",
                            last_modified=obj.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to list {prefix!r} in S3: {e}") from e
        return objects


def create_storage() -> StorageBackend:
    provider = config.STORAGE_PROVIDER.lower()
    if provider == "s3":
        if not config.S3_BUCKET:
            raise RuntimeError("STORAGE_PROVIDER=s3 requires S3_BUCKET")
        logger.info(f"Storage: S3 bucket {config.S3_BUCKET}")
        return S3Storage(config.S3_BUCKET, region=config.S3_REGION, endpoint_url=config.S3_ENDPOINT)
    if provider != "local":
        raise RuntimeError(f"Unknown STORAGE_PROVIDER: {provider}")
    logger.info(f"Storage: local disk at {config.STORAGE_DIR}")
    return LocalDiskStorage(config.STORAGE_DIR)


def artifact_key(owner_id: str, upload_id: str, name: str) -> str:
    return f"{owner_id}/transcoded/{upload_id}/{name}"


def publish_artifacts(
    storage: StorageBackend,
    owner_id: str,
    upload_id: str,
    audio_128: bytes,
    audio_320: bytes,
    waveform_doc: dict,
    cover: bytes | None = None,
) -> ArtifactKeys:
    """Upload every artifact of one transcode; raises StorageError on the first failure."""
    payloads = {
        AUDIO_128: audio_128,
        AUDIO_320: audio_320,
        WAVEFORM: json.dumps(waveform_doc).encode("utf-8"),
    }
    if cover:
        payloads[COVER] = cover

    keys = {}
    for name, data in payloads.items():
        key = artifact_key(owner_id, upload_id, name)
        storage.put_object(key, data, CONTENT_TYPES[name])
        keys[name] = key
        logger.info(f"Stored {key} ({len(data)} bytes)")

    return ArtifactKeys(
        audio_128=keys[AUDIO_128],
        audio_320=keys[AUDIO_320],
        waveform=keys[WAVEFORM],
        cover=keys.get(COVER),
    )
