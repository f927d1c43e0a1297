"""
Artifact stores for generated report files.

``build_artifact_store`` picks S3-compatible object storage when a bucket
is configured and the local reports directory otherwise.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from medcenter.config import Settings

_log = logging.getLogger("medcenter.storage")


class ArtifactStore(Protocol):
    async def store(self, data: bytes, identifier: str) -> str: ...

    async def load(self, location: str) -> bytes | None: ...

    async def delete(self, location: str) -> None: ...


class LocalArtifactStore:
    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)

    def _ensure_dir(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, identifier: str) -> Path:
        name = Path(identifier).name
        if not name or name in {".", ".."}:
            raise ValueError(f"invalid artifact identifier: {identifier!r}")
        return self.directory / name

    async def store(self, data: bytes, identifier: str) -> str:
        path = self._path_for(identifier)

        def _write() -> None:
            self._ensure_dir()
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        _log.info("stored artifact %s (%d bytes)", path, len(data))
        return str(path)

    async def load(self, location: str) -> bytes | None:
        path = Path(location)
        if path.resolve().parent != self.directory.resolve():
            return None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None

    async def delete(self, location: str) -> None:
        path = Path(location)
        if path.resolve().parent != self.directory.resolve():
            return
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def purge_older_than(self, days: int, now: float | None = None) -> list[str]:
        """Delete files whose mtime is older than ``days``; returns removed names."""
        self._ensure_dir()
        cutoff = (now if now is not None else time.time()) - days * 86400
        removed: list[str] = []
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed.append(entry.name)
            except FileNotFoundError:
                continue
        return removed


class S3ArtifactStore:
    def __init__(self, settings: Settings, prefix: str = "reports") -> None:
        self.bucket = settings.S3_BUCKET
        self.prefix = prefix.strip("/")
        self.public_url = settings.S3_PUBLIC_URL.rstrip("/")
        self.endpoint_url = settings.S3_ENDPOINT_URL.rstrip("/")
        self._client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
            region_name=settings.S3_REGION or None,
        )

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}/{Path(identifier).name}"

    def _url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def _key_from_location(self, location: str) -> str:
        marker = f"{self.prefix}/"
        idx = location.rfind(marker)
        return location[idx:] if idx >= 0 else location

    async def store(self, data: bytes, identifier: str) -> str:
        key = self._key(identifier)
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="application/pdf",
        )
        _log.info("uploaded artifact s3://%s/%s", self.bucket, key)
        return self._url(key)

    async def load(self, location: str) -> bytes | None:
        key = self._key_from_location(location)
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket, Key=key)
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise

    async def delete(self, location: str) -> None:
        key = self._key_from_location(location)
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            _log.warning("could not delete s3 artifact %s: %s", key, exc)


def build_artifact_store(settings: Settings) -> ArtifactStore:
    if settings.S3_BUCKET:
        return S3ArtifactStore(settings)
    return LocalArtifactStore(settings.REPORTS_DIR)
