"""Bucket/path blob storage for avatars and room images on an S3-compatible object store.

Logical buckets (``avatars``, ``room-images``) are key prefixes inside the one
configured object-store bucket, so ``avatars/7/me.png`` is stored under the key
``avatars/7/me.png``.
"""
from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

AVATARS_BUCKET = "avatars"
ROOM_IMAGES_BUCKET = "room-images"

IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class StorageError(Exception):
    """Raised when a blob cannot be stored or removed."""


def get_s3_client():
    """Create a boto3 client for the configured object store."""

    return boto3.client(
        "s3",
        endpoint_url=settings.storage_endpoint_url,
        aws_access_key_id=settings.storage_access_key_id,
        aws_secret_access_key=settings.storage_secret_access_key,
        region_name=settings.storage_region,
        config=Config(signature_version="s3v4"),
    )


class BlobStorage:
    def __init__(self, bucket_name: str, public_url: str, client=None) -> None:
        self.bucket_name = bucket_name
        self.public_url = public_url.rstrip("/")
        self._client = client

    @property
    def client(self):
        # Created on first use so importing the services never opens a connection.
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def _key(self, bucket: str, path: str) -> str:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise StorageError(f"Invalid blob path: {path!r}")
        return f"{bucket}/{relative}"

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        key = self._key(bucket, path)
        try:
            self.client.put_object(Bucket=self.bucket_name, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload failed: {exc}") from exc
        logger.info("Stored %s (%s, %d bytes)", key, content_type, len(data))
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_url}/{bucket}/{path}"

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        """File names directly inside ``prefix`` (one level, sorted)."""

        folder = self._key(bucket, prefix) + "/" if prefix else f"{bucket}/"
        names: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=folder, Delimiter="/"):
                names.extend(item["Key"][len(folder):] for item in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Could not list {folder}: {exc}") from exc
        return sorted(names)

    def remove(self, bucket: str, paths: List[str]) -> None:
        if not paths:
            return
        objects = [{"Key": self._key(bucket, path)} for path in paths]
        try:
            response = self.client.delete_objects(Bucket=self.bucket_name, Delete={"Objects": objects, "Quiet": True})
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Could not remove {paths}: {exc}") from exc
        errors = response.get("Errors", [])
        if errors:
            raise StorageError(f"Could not remove {errors[0].get('Key')}: {errors[0].get('Message')}")

    def replace_folder(self, bucket: str, folder: str, filename: str, data: bytes, content_type: str) -> str:
        """Remove whatever the folder holds, store the new file and return its public URL."""

        existing = self.list(bucket, folder)
        if existing:
            self.remove(bucket, [f"{folder}/{name}" for name in existing])
        path = self.upload(bucket, f"{folder}/{filename}", data, content_type)
        return self.get_public_url(bucket, path)


def image_extension(content_type: Optional[str]) -> Optional[str]:
    return IMAGE_EXTENSIONS.get((content_type or "").lower())


storage = BlobStorage(settings.storage_bucket, settings.storage_public_url)
