"""Object storage gateway. Local filesystem for dev, S3 for production.

Keys are namespaced per user:
    files/<user_id>/<timestamp_ms>-<sanitized_name>             originals
    thumbnails/<user_id>/thumb-<timestamp_ms>-<sanitized_name>  derived thumbnails
"""
import asyncio
import hashlib
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from urllib.parse import quote

import aiofiles
import boto3
from botocore.exceptions import ClientError
from jose import JWTError, jwt

from app.config import Settings
from app.models.base import utcnow

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class ObjectNotFound(Exception):
    """Raised when a key has no stored object."""


@dataclass
class StoredObject:
    key: str
    location: str
    etag: str
    size: int


@dataclass
class ObjectMetadata:
    size: int
    content_type: str
    etag: str
    metadata: dict = field(default_factory=dict)


def sanitize_name(file_name: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", file_name)


def generate_storage_key(user_id, file_name: str, kind: str = "file", timestamp: int | None = None) -> str:
    """Build a time-derived key; re-uploading the same name yields a new key."""
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    prefix = "thumbnails" if kind == "thumbnail" else "files"
    return f"{prefix}/{user_id}/{timestamp}-{sanitize_name(file_name)}"


def get_thumbnail_key(original_key: str) -> str:
    """Derive the thumbnail key from an original's key."""
    parts = original_key.split("/")
    user_id, file_name = parts[1], parts[-1]
    return f"thumbnails/{user_id}/thumb-{file_name}"


class ObjectStorage(ABC):
    """Durable binary storage. Every call is an I/O boundary."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str, metadata: dict | None = None) -> StoredObject:
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        ...

    @abstractmethod
    async def get_signed_download_url(self, key: str, ttl_seconds: int = 3600) -> str:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def head_metadata(self, key: str) -> ObjectMetadata:
        ...


class LocalObjectStorage(ObjectStorage):
    """Stores objects under a base directory with a JSON sidecar for metadata.

    Signed URLs point at the /api/files/serve route and carry a short-lived
    JWT bound to the key.
    """

    def __init__(self, base_path: str | Path, signing_secret: str, algorithm: str = "HS256", public_base_url: str = ""):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.signing_secret = signing_secret
        self.algorithm = algorithm
        self.public_base_url = public_base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    async def put(self, key, data, content_type, metadata=None):
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        etag = hashlib.md5(data).hexdigest()
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        sidecar = {"content_type": content_type, "etag": etag, "metadata": metadata or {}}
        async with aiofiles.open(self._meta_path(path), "w") as f:
            await f.write(json.dumps(sidecar))
        return StoredObject(key=key, location=str(path), etag=etag, size=len(data))

    async def get(self, key):
        path = self._path_for(key)
        if not path.exists():
            raise ObjectNotFound(key)
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def get_signed_download_url(self, key, ttl_seconds=3600):
        token = jwt.encode(
            {"sub": key, "purpose": "download", "exp": utcnow() + timedelta(seconds=ttl_seconds)},
            self.signing_secret,
            algorithm=self.algorithm,
        )
        return f"{self.public_base_url}/api/files/serve/{quote(key)}?token={token}"

    def verify_download_token(self, key: str, token: str) -> bool:
        try:
            claims = jwt.decode(token, self.signing_secret, algorithms=[self.algorithm])
        except JWTError:
            return False
        return claims.get("purpose") == "download" and claims.get("sub") == key

    def local_path(self, key: str) -> Path:
        return self._path_for(key)

    async def delete(self, key):
        path = self._path_for(key)
        existed = path.exists()
        if existed:
            os.remove(path)
        meta = self._meta_path(path)
        if meta.exists():
            os.remove(meta)
        return existed

    async def exists(self, key):
        return self._path_for(key).exists()

    async def head_metadata(self, key):
        path = self._path_for(key)
        if not path.exists():
            raise ObjectNotFound(key)
        sidecar = {}
        meta = self._meta_path(path)
        if meta.exists():
            async with aiofiles.open(meta, "r") as f:
                sidecar = json.loads(await f.read())
        return ObjectMetadata(
            size=path.stat().st_size,
            content_type=sidecar.get("content_type", "application/octet-stream"),
            etag=sidecar.get("etag", ""),
            metadata=sidecar.get("metadata", {}),
        )


class S3ObjectStorage(ObjectStorage):
    """S3 bucket storage. boto3 is blocking, so calls run in a worker thread."""

    def __init__(self, bucket: str, region: str, access_key_id: str = "", secret_access_key: str = "", encrypt: bool = True, client=None):
        self.bucket = bucket
        self.region = region
        self.encrypt = encrypt
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    def _location(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def put(self, key, data, content_type, metadata=None):
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if metadata:
            params["Metadata"] = {k: str(v) for k, v in metadata.items()}
        if self.encrypt:
            params["ServerSideEncryption"] = "AES256"
        response = await asyncio.to_thread(self.client.put_object, **params)
        return StoredObject(
            key=key,
            location=self._location(key),
            etag=response.get("ETag", "").strip('"'),
            size=len(data),
        )

    async def get(self, key):
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise ObjectNotFound(key) from e
            raise
        return await asyncio.to_thread(response["Body"].read)

    async def get_signed_download_url(self, key, ttl_seconds=3600):
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )

    async def delete(self, key):
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        return True

    async def exists(self, key):
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    async def head_metadata(self, key):
        try:
            response = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise ObjectNotFound(key) from e
        return ObjectMetadata(
            size=response.get("ContentLength", 0),
            content_type=response.get("ContentType", "application/octet-stream"),
            etag=response.get("ETag", "").strip('"'),
            metadata=response.get("Metadata", {}),
        )


def build_storage(config: Settings) -> ObjectStorage:
    """Construct the storage backend named by FILE_STORAGE_TYPE."""
    if config.FILE_STORAGE_TYPE == "local":
        return LocalObjectStorage(
            base_path=config.FILE_STORAGE_PATH,
            signing_secret=config.JWT_SECRET,
            algorithm=config.JWT_ALGORITHM,
            public_base_url=config.PUBLIC_BASE_URL,
        )

    if config.FILE_STORAGE_TYPE == "s3":
        if not config.AWS_S3_BUCKET:
            raise ValueError("AWS_S3_BUCKET is required for s3 storage")
        logger.info(f"Initializing S3 storage: bucket={config.AWS_S3_BUCKET} region={config.AWS_REGION}")
        return S3ObjectStorage(
            bucket=config.AWS_S3_BUCKET,
            region=config.AWS_REGION,
            access_key_id=config.AWS_ACCESS_KEY_ID,
            secret_access_key=config.AWS_SECRET_ACCESS_KEY,
            encrypt=config.AWS_S3_ENCRYPTION,
        )

    raise ValueError(f"Unknown storage type: {config.FILE_STORAGE_TYPE}")
