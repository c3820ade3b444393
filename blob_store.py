#!/usr/bin/env python3
"""
Raw feed file storage.

Feed bytes are written once per FeedFile under a key derived from the request
URL hash and fetch timestamp. Two backends share the same small interface:
a local directory (default) and an Azure Blob Storage container.
"""

import asyncio
import os
from pathlib import Path
from typing import Optional

from aiohttp import ClientError

from azure_storage import BlobClient
from config import config, get_logger
from errors import PersistenceError

# Module-specific logger
logger = get_logger("blob_store")


def _check_key(key: str) -> str:
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


class BlobStore:
    """Interface for raw feed file storage."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    async def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None


class LocalBlobStore(BlobStore):
    """Stores blobs as files in a directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or config.BLOB_STORAGE_PATH)

    async def initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Local blob store at {self.root}")

    def _write(self, path: Path, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    async def put(self, key: str, data: bytes) -> None:
        path = self.root / _check_key(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error(f"Failed to write blob {key}: {e}")
            raise PersistenceError(f"Failed to write blob {key}: {e}") from e

    async def get(self, key: str) -> Optional[bytes]:
        path = self.root / _check_key(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read blob {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return (self.root / _check_key(key)).is_file()


class AzureBlobStore(BlobStore):
    """Stores blobs in an Azure Blob Storage container."""

    def __init__(self, account: Optional[str] = None, key: Optional[str] = None,
                 container: Optional[str] = None, client: Optional[BlobClient] = None):
        self.account = account or config.AZURE_STORAGE_ACCOUNT
        self.storage_key = key or config.AZURE_STORAGE_KEY
        self.container = container or config.AZURE_STORAGE_CONTAINER
        self.client = client

    async def initialize(self) -> None:
        if self.client is None:
            if not (self.account and self.storage_key):
                raise PersistenceError("Azure blob storage selected but AZURE_STORAGE_ACCOUNT/AZURE_STORAGE_KEY are missing")
            self.client = BlobClient(account=self.account, auth=self.storage_key)
        await self.client.create_container(self.container)
        logger.info(f"Azure blob store initialized for account '{self.account}', container '{self.container}'")

    async def close(self) -> None:
        if self.client:
            await self.client.close()
            self.client = None

    async def put(self, key: str, data: bytes) -> None:
        try:
            status = await self.client.put_blob(self.container, _check_key(key), data, mimetype="application/rss+xml")
        except (OSError, ClientError) as e:
            raise PersistenceError(f"Failed to upload blob {key}: {e}") from e
        if status >= 300:
            raise PersistenceError(f"Failed to upload blob {key}: HTTP {status}")

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self.client.get_blob(self.container, _check_key(key))
        except (OSError, ClientError) as e:
            raise PersistenceError(str(e)) from e

    async def exists(self, key: str) -> bool:
        try:
            return await self.client.blob_exists(self.container, _check_key(key))
        except (OSError, ClientError) as e:
            raise PersistenceError(str(e)) from e


def create_blob_store() -> BlobStore:
    """Build the blob store selected by BLOB_BACKEND."""
    if config.BLOB_BACKEND == "azure":
        return AzureBlobStore()
    return LocalBlobStore()
