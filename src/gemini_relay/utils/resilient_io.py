# src/gemini_relay/utils/resilient_io.py
"""
Resilient I/O utilities for the segmentation scratch space.

The external encoder writes segment files while we read them, and temporary
directories may still be held open briefly when a job ends. These helpers
retry with growing delays instead of failing on the first OSError:

1. read_file_with_retry - read a segment that may still be settling on disk.
2. delete_file_with_retry - remove a single file, tolerating it being gone.
3. cleanup_directory - remove a whole job directory; never raises.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional, Union

import aiofiles

lib_logger = logging.getLogger("gemini_relay.resilient_io")


async def read_file_with_retry(
    path: Union[str, Path],
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> Optional[bytes]:
    """
    Read a file completely, retrying when it is empty or unreadable.

    Args:
        path: File to read
        max_retries: Number of read attempts
        base_delay: Delay unit; attempt N waits base_delay * N before retrying

    Returns:
        File contents, or None if every attempt failed or the file stayed empty
    """
    path = Path(path)
    for attempt in range(1, max_retries + 1):
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
            if data:
                lib_logger.debug(f"Read {len(data)} bytes from {path.name}")
                return data
            lib_logger.warning(
                f"{path.name} is empty on attempt {attempt}/{max_retries}, waiting for content"
            )
        except OSError as e:
            lib_logger.warning(
                f"Failed to read {path.name} on attempt {attempt}/{max_retries}: {e}"
            )
        if attempt < max_retries:
            await asyncio.sleep(base_delay * attempt)
    return None


async def delete_file_with_retry(
    path: Union[str, Path],
    max_retries: int = 5,
    base_delay: float = 0.1,
) -> None:
    """
    Delete a file, retrying on OSError. A missing file counts as deleted.

    Raises:
        OSError: If the last attempt still fails
    """
    path = Path(path)
    for attempt in range(1, max_retries + 1):
        try:
            path.unlink(missing_ok=True)
            return
        except OSError:
            if attempt == max_retries:
                raise
            await asyncio.sleep(base_delay * attempt)


async def cleanup_directory(
    directory: Union[str, Path],
    max_retries: int = 5,
    base_delay: float = 2.0,
) -> bool:
    """
    Remove a temporary directory tree with retries.

    Idempotent: a directory that no longer exists is treated as cleaned up.
    A final failure is logged as a CleanupError and reported by returning
    False; it is never raised, so it cannot mask the job's own result.

    Returns:
        True if the directory is gone, False otherwise
    """
    directory = Path(directory)
    for attempt in range(1, max_retries + 1):
        try:
            if directory.exists():
                for child in directory.iterdir():
                    if child.is_file():
                        await delete_file_with_retry(child)
                shutil.rmtree(directory)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            if attempt == max_retries:
                lib_logger.warning(
                    f"CleanupError: failed to remove temp directory {directory} "
                    f"after {max_retries} attempts: {e}"
                )
                return False
            await asyncio.sleep(base_delay * attempt)
    return False
