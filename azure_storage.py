from base64 import b64decode, b64encode
from email.utils import formatdate
from hashlib import sha256
from hmac import HMAC
from json import dumps
from typing import Optional

from aiohttp import ClientSession
from config import get_logger

# Module-specific logger
logger = get_logger("azure")


class BlobClient:
    """Minimal Azure Blob Storage REST API client (SharedKeyLite).

    Covers what the raw feed cache needs: container creation and
    reading, writing and probing single block blobs.
    """

    account: str | None = None
    auth: bytes | None = None
    session: ClientSession | None = None

    def __init__(self, account: str, auth: str | None = None, session: ClientSession | None = None) -> None:
        if not auth:
            raise ValueError("Storage account key (auth) is required")
        self.account = account
        self.auth = b64decode(auth)
        self._owns_session = session is None
        self.session = session or ClientSession(json_serialize=dumps)

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self.session:
            await self.session.close()

    def _uri(self, container_name: str, blob_path: str = "") -> str:
        base = f'https://{self.account}.blob.core.windows.net/{container_name}'
        return f'{base}/{blob_path}' if blob_path else base

    def _headers(self, headers: dict | None = None, date: str | None = None) -> dict:
        """Default headers for REST requests"""
        if not date:
            date = formatdate(usegmt=True)  # the API rejects non-GMT dates
        return {
            'x-ms-date': date,
            'x-ms-version': '2018-03-28',
            'Content-Type': 'application/octet-stream',
            **(headers or {}),
        }

    def _sign_for_blobs(self, verb: str, canonicalized: str, headers: dict | None = None, payload: bytes = b"") -> dict:
        """Compute the SharedKeyLite authorization header and add standard headers"""
        headers = self._headers(headers)
        signing_headers = sorted(k for k in headers if k.startswith('x-ms-'))
        canon_headers = "\n".join(f"{k}:{headers[k]}" for k in signing_headers)
        sign = "\n".join([verb, '', headers['Content-Type'], '', canon_headers, canonicalized]).encode('utf-8')
        signature = b64encode(HMAC(self.auth, sign, sha256).digest()).decode('utf-8')
        return {
            'Authorization': f'SharedKeyLite {self.account}:{signature}',
            'Content-Length': str(len(payload)),
            **headers,
        }

    async def create_container(self, container_name: str) -> int:
        """Create a container; returns the HTTP status (409 means it already exists)."""
        canon = f'/{self.account}/{container_name}'
        uri = f'{self._uri(container_name)}?restype=container'
        async with self.session.put(uri, headers=self._sign_for_blobs("PUT", canon)) as res:
            if res.status not in (201, 409):
                logger.error(f"Container creation failed for {container_name}: {res.status} {await res.text()}")
            return res.status

    async def put_blob(self, container_name: str, blob_path: str, payload: bytes, mimetype: str | None = None) -> int:
        """Upload a block blob; returns the HTTP status."""
        canon = f'/{self.account}/{container_name}/{blob_path}'
        mimetype = mimetype or "application/octet-stream"
        headers = {
            'x-ms-blob-type': 'BlockBlob',
            'x-ms-blob-content-type': mimetype,
            'Content-Type': mimetype,
        }
        signed = self._sign_for_blobs("PUT", canon, headers, payload)
        async with self.session.put(self._uri(container_name, blob_path), data=payload, headers=signed) as res:
            if res.status >= 300:
                logger.error(f"Blob upload failed for {blob_path}: {res.status} {await res.text()}")
            return res.status

    async def get_blob(self, container_name: str, blob_path: str) -> Optional[bytes]:
        """Download a blob; None when it does not exist."""
        canon = f'/{self.account}/{container_name}/{blob_path}'
        async with self.session.get(self._uri(container_name, blob_path), headers=self._sign_for_blobs("GET", canon)) as res:
            if res.status == 404:
                return None
            if res.status >= 300:
                raise OSError(f"Blob download failed for {blob_path}: HTTP {res.status}")
            return await res.read()

    async def blob_exists(self, container_name: str, blob_path: str) -> bool:
        canon = f'/{self.account}/{container_name}/{blob_path}'
        async with self.session.head(self._uri(container_name, blob_path), headers=self._sign_for_blobs("HEAD", canon)) as res:
            if res.status == 404:
                return False
            if res.status >= 300:
                raise OSError(f"Blob probe failed for {blob_path}: HTTP {res.status}")
            return True
