"""Blob store client.

This module handles:
- Downloading bundles from the blob store aggregator by identifier
- Mapping HTTP/network failures to not-found vs. unavailable errors

Bundle identifiers are opaque content-addressed handles; nothing is assumed
about them beyond byte-for-byte retrieval.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 180.0


class BlobStoreError(Exception):
    """Base error for blob store operations."""

    def __init__(self, message: str, code: str = "blob_store_error") -> None:
        super().__init__(message)
        self.code = code


class BlobNotFoundError(BlobStoreError):
    """Raised when the blob store has no blob for an identifier."""

    def __init__(self, bundle_id: str) -> None:
        super().__init__(f"Bundle not found in blob store: {bundle_id}", "blob_not_found")
        self.bundle_id = bundle_id


class BlobUnavailableError(BlobStoreError):
    """Raised when the blob store cannot be reached or answers with an error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "blob_store_unavailable")


class BlobStoreClient:
    """Read-only client for the blob store aggregator HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DOWNLOAD_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _blob_url(self, bundle_id: str) -> str:
        return f"{self.base_url}/v1/blobs/{quote(bundle_id, safe='')}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def download(self, bundle_id: str) -> bytes:
        """Download a bundle as raw bytes.

        Args:
            bundle_id: Opaque bundle identifier.

        Returns:
            The blob content.

        Raises:
            BlobNotFoundError: If the blob store has no such blob.
            BlobUnavailableError: On HTTP errors, timeouts or network failures.
        """
        url = self._blob_url(bundle_id)
        logger.info("Downloading bundle %s from %s", bundle_id, url)

        try:
            response = await self._get_client().get(url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise BlobNotFoundError(bundle_id) from e
            raise BlobUnavailableError(
                f"HTTP error downloading bundle {bundle_id}: "
                f"{e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.TimeoutException as e:
            raise BlobUnavailableError(
                f"Timeout downloading bundle {bundle_id}"
            ) from e
        except httpx.RequestError as e:
            raise BlobUnavailableError(
                f"Network error downloading bundle {bundle_id}: {e}"
            ) from e

        data = response.content
        logger.info("Downloaded bundle %s (%d bytes)", bundle_id, len(data))
        return data

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "BlobNotFoundError",
    "BlobStoreClient",
    "BlobStoreError",
    "BlobUnavailableError",
]
