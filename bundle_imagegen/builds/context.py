"""Build context preparation.

This module handles:
- Creating the per-build working directory layout
- Downloading the bundle through the blob store client
- Expanding the (gzip/bzip2/xz or plain) tar archive under ``{workdir}/src``

Cleanup of the working directory is the orchestrator's job; nothing here
deletes files.
"""

from __future__ import annotations

import asyncio
import io
import logging
import tarfile
from pathlib import Path, PurePosixPath

from bundle_imagegen.blobstore import BlobStoreClient, BlobStoreError
from bundle_imagegen.errors import ContextPreparationError

logger = logging.getLogger(__name__)

SRC_DIR_NAME = "src"


def extract_bundle(data: bytes, dest_dir: Path) -> int:
    """Expand a bundle archive into a directory.

    Args:
        data: Raw archive bytes.
        dest_dir: Destination directory (must exist).

    Returns:
        Number of archive members extracted.

    Raises:
        ContextPreparationError: If the archive is empty, malformed or
            contains unsafe paths.
    """
    if not data:
        raise ContextPreparationError("Bundle is empty")

    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise ContextPreparationError("Bundle archive is empty")

            for member in members:
                # Security: prevent path traversal
                member_path = PurePosixPath(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ContextPreparationError(
                        f"Refusing to extract {member.name}: path traversal detected"
                    )

            tar.extractall(dest_dir, filter="data")
    except tarfile.TarError as e:
        raise ContextPreparationError(f"Malformed bundle archive: {e}") from e
    except OSError as e:
        raise ContextPreparationError(f"OS error extracting bundle: {e}") from e

    return len(members)


async def prepare_context(
    client: BlobStoreClient,
    bundle_id: str,
    workdir: Path,
) -> Path:
    """Download a bundle and expand it into a build context.

    Args:
        client: Blob store client.
        bundle_id: Bundle identifier.
        workdir: Private working directory of the build.

    Returns:
        Path of the build context (``{workdir}/src``).

    Raises:
        ContextPreparationError: If the download or extraction fails.
    """
    src_dir = workdir / SRC_DIR_NAME
    try:
        src_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ContextPreparationError(
            f"Could not create working directory {workdir}: {e}"
        ) from e

    try:
        data = await client.download(bundle_id)
    except BlobStoreError as e:
        raise ContextPreparationError(str(e)) from e

    count = await asyncio.to_thread(extract_bundle, data, src_dir)
    logger.info("Extracted %d entries of bundle %s to %s", count, bundle_id, src_dir)
    return src_dir


__all__ = ["SRC_DIR_NAME", "extract_bundle", "prepare_context"]
