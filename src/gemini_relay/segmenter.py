# src/gemini_relay/segmenter.py

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import AsyncGenerator, List, Optional, Set, Tuple, Union

import aiofiles

from .error_handler import SegmentationError
from .utils.paths import get_temp_dir
from .utils.resilient_io import cleanup_directory, read_file_with_retry
from .utils.streams import AudioSource, iter_chunks

lib_logger = logging.getLogger("gemini_relay")

SEGMENT_PATTERN = "output_%03d.opus"
_SEGMENT_INDEX = re.compile(r"output_(\d+)\.opus$")


class AudioSegmenter:
    """
    Splits long audio into fixed-length Opus segments with ffmpeg.

    ffmpeg runs as a background process writing numbered files into a
    scratch directory; `segments()` polls that directory and yields each
    segment once it is complete, i.e. once a later segment exists or the
    encoder has exited. The scratch directory is always removed afterwards.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        segment_seconds: int = 600,
        bitrate: str = "22k",
        poll_interval: float = 1.0,
        temp_root: Optional[Union[str, Path]] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.segment_seconds = segment_seconds
        self.bitrate = bitrate
        self.poll_interval = poll_interval
        self.temp_root = Path(temp_root) if temp_root else None

    def build_command(self, input_path: Path, output_dir: Path) -> List[str]:
        return [
            self.ffmpeg_path,
            "-i",
            str(input_path),
            "-c:a",
            "libopus",
            "-b:a",
            self.bitrate,
            "-f",
            "segment",
            "-segment_time",
            str(self.segment_seconds),
            "-reset_timestamps",
            "1",
            str(output_dir / SEGMENT_PATTERN),
        ]

    @staticmethod
    def _segment_index(path: Path) -> int:
        match = _SEGMENT_INDEX.search(path.name)
        return int(match.group(1)) if match else -1

    def _list_segments(self, output_dir: Path) -> List[Path]:
        return sorted(output_dir.glob("output_*.opus"), key=self._segment_index)

    async def segments(
        self, audio: AudioSource, file_name: str = "input"
    ) -> AsyncGenerator[Tuple[int, bytes], None]:
        """
        Yields `(index, data)` for every segment ffmpeg produces, in order.

        `audio` is copied to the scratch directory chunk by chunk, so a
        stream is never held in memory whole.

        Raises:
            SegmentationError: ffmpeg could not be started, or exited with an
                error before producing any segment
        """
        temp_dir = get_temp_dir(self.temp_root) / uuid.uuid4().hex
        output_dir = temp_dir / "output_segments"
        input_path = temp_dir / (Path(file_name).name or "input")

        process = None
        wait_task = None
        stderr_task = None
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(input_path, "wb") as f:
                async for chunk in iter_chunks(audio):
                    await f.write(chunk)

            command = self.build_command(input_path, output_dir)
            lib_logger.info(f"Starting ffmpeg segmentation for '{file_name}'")
            lib_logger.debug(f"ffmpeg command: {' '.join(command)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise SegmentationError(f"Could not start ffmpeg: {e}") from e

            # Keep the stderr pipe drained so ffmpeg never blocks on it
            stderr_task = asyncio.create_task(process.stderr.read())
            wait_task = asyncio.create_task(process.wait())

            emitted: Set[Path] = set()
            while True:
                exited = wait_task.done()
                files = self._list_segments(output_dir)
                complete = files if exited else files[:-1]

                for segment in complete:
                    if segment in emitted:
                        continue
                    data = await read_file_with_retry(
                        segment, base_delay=self.poll_interval
                    )
                    if data is None:
                        if exited:
                            lib_logger.warning(f"Skipping unreadable segment {segment.name}")
                            emitted.add(segment)
                        break
                    emitted.add(segment)
                    lib_logger.info(
                        f"Segment {segment.name} ready ({len(data)} bytes)"
                    )
                    yield self._segment_index(segment), data

                if exited and all(segment in emitted for segment in files):
                    break
                await asyncio.sleep(self.poll_interval)

            if process.returncode != 0:
                stderr = (await stderr_task).decode("utf-8", errors="replace")
                if not emitted:
                    raise SegmentationError(
                        f"ffmpeg exited with code {process.returncode}: {stderr[-500:]}"
                    )
                lib_logger.warning(
                    f"ffmpeg exited with code {process.returncode} after "
                    f"{len(emitted)} segment(s): {stderr[-500:]}"
                )
            elif not emitted:
                raise SegmentationError("ffmpeg produced no segments")
        finally:
            if wait_task is not None and not wait_task.done():
                lib_logger.warning("ffmpeg process still running, killing it")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await asyncio.gather(wait_task, return_exceptions=True)
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)
            await cleanup_directory(temp_dir)
