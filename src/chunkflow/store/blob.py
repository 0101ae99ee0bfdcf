"""Blob storage for chunk and frame bytes.

The pipeline only needs ``put`` and ``get``; ``LocalBlobStore`` is the
filesystem implementation used by the CLI and the tests.
"""

from __future__ import annotations

import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from chunkflow.utils.logging import get_logger
from chunkflow.utils.retry import run_blocking

logger = get_logger(__name__)

# Bytes written between progress reports
BLOCK_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, int], None]


class BlobStore(Protocol):
    """Stores bytes under a path and hands back a reference."""

    async def put(self, path: str, data: bytes, progress: ProgressCallback | None = None) -> str: ...

    async def get(self, ref: str) -> bytes: ...


class LocalBlobStore:
    """BlobStore backed by a directory.

    References are the storage paths themselves, so the same path always
    maps to the same file and a rerun overwrites instead of duplicating.

    Args:
        root: Directory holding the blobs. Created if missing.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        target = (self.root / ref).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Blob path escapes the store root: {ref}")
        return target

    async def put(self, path: str, data: bytes, progress: ProgressCallback | None = None) -> str:
        """Write data to path, reporting (bytes_written, total) per block.

        Returns:
            Reference to pass to ``get``.
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        total = len(data)
        start_time = time.perf_counter()

        tmp_path = target.with_name(target.name + ".part")
        f = await run_blocking(tmp_path.open, "wb")
        try:
            with f:
                written = 0
                view = memoryview(data)
                while written < total:
                    block = view[written:written + BLOCK_SIZE]
                    await run_blocking(f.write, block)
                    written += len(block)
                    if progress is not None:
                        progress(written, total)
            await run_blocking(tmp_path.replace, target)
        except BaseException:
            # Also on cancellation, so no partial file is left behind
            tmp_path.unlink(missing_ok=True)
            raise

        if total == 0 and progress is not None:
            progress(0, 0)

        elapsed = time.perf_counter() - start_time
        logger.debug(f"Stored {total} bytes at {path} in {elapsed:.2f}s")
        return path

    async def get(self, ref: str) -> bytes:
        target = self._resolve(ref)
        if not target.exists():
            raise FileNotFoundError(f"Blob not found: {ref}")
        return await run_blocking(target.read_bytes)

    def exists(self, ref: str) -> bool:
        return self._resolve(ref).exists()

    def delete(self, prefix: str) -> int:
        """Delete a blob, or every blob under a directory prefix.

        Returns:
            Number of files removed.
        """
        target = self._resolve(prefix)
        if target.is_file():
            target.unlink()
            return 1
        if target.is_dir():
            count = sum(1 for p in target.rglob("*") if p.is_file())
            shutil.rmtree(target)
            logger.info(f"Deleted {count} blobs under {prefix}")
            return count
        return 0
