# src/gemini_relay/pipeline.py

import asyncio
import logging
from typing import AsyncGenerator, Dict, Optional, Set

from .controller import ResilientStreamController
from .error_handler import ProcessingConflictError, RelayError, TranscriptionError
from .schemas import Fragment, FragmentType
from .segmenter import AudioSegmenter
from .settings import DEFAULT_ANALYSIS_MODEL
from .state import ServiceState
from .transcription import TranscriptionClient
from .utils.streams import AudioSource, read_all, source_size

lib_logger = logging.getLogger("gemini_relay")

DEFAULT_MAX_FILE_SIZE = 25 * 1024 * 1024
MAX_CONCURRENT_SEGMENTS = 3

SUMMARY_PROMPT = "Summarize the following meeting content:\n\n{transcript}"
MINUTES_PROMPT = (
    "Write a concise summary of the following meeting content. Drop filler "
    "words and turn spoken phrasing into written prose, then produce meeting "
    "minutes. Format the output as [Summary]{{content}} [Minutes]{{content}}."
    "\n\n{transcript}"
)

_DONE = object()


class ChunkedTranscriptionPipeline:
    """
    Turns an uploaded meeting recording into a transcript and an AI summary.

    Small inputs are transcribed in one call. Larger inputs are split into
    segments by the AudioSegmenter and transcribed with bounded concurrency;
    each segment's text is emitted whole as soon as it is ready, so segment
    order in the output is completion order. The joined transcript (kept in
    segment order) is then summarized through the resilient controller.

    One identity is processed at a time; a duplicate submission gets a
    single status fragment and nothing else.
    """

    def __init__(
        self,
        state: ServiceState,
        controller: ResilientStreamController,
        transcriber: TranscriptionClient,
        segmenter: AudioSegmenter,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        analysis_model: str = DEFAULT_ANALYSIS_MODEL,
        max_concurrency: int = MAX_CONCURRENT_SEGMENTS,
    ):
        self.state = state
        self.controller = controller
        self.transcriber = transcriber
        self.segmenter = segmenter
        self.max_file_size = max_file_size
        self.analysis_model = analysis_model
        self.max_concurrency = max_concurrency

    async def process(
        self, audio: AudioSource, identity: str, size: Optional[int] = None
    ) -> AsyncGenerator[Fragment, None]:
        """
        Runs one submission and yields its progress, transcript and analysis.

        Args:
            audio: The recording as bytes, a binary file object or an async
                iterable of byte chunks
            identity: Name the submission is locked under, e.g. the file name
            size: Byte size of `audio`; required when `audio` is a stream

        Only inputs at or below `max_file_size` are read into memory; larger
        ones are streamed to the segmenter's scratch directory.
        """
        size = source_size(audio, size)
        locks = self.state.processing_locks
        try:
            locks.acquire(identity)
        except ProcessingConflictError as e:
            lib_logger.warning(f"Rejected duplicate submission: {e}")
            yield Fragment.status(
                f"'{identity}' is already being processed. Please do not submit it again."
            )
            return

        try:
            yield Fragment.status("Processing audio file...")

            if size > self.max_file_size:
                yield Fragment.status("File is large, processing it in segments...")
                texts: Dict[int, str] = {}
                try:
                    async for fragment in self._transcribe_segments(audio, identity, texts):
                        yield fragment
                except RelayError as e:
                    lib_logger.error(f"Segmented transcription of '{identity}' failed: {e}")
                    yield Fragment.failure(f"Transcription failed: {e}", e)
                    return
                transcript = "\n".join(
                    texts[index] for index in sorted(texts) if texts[index]
                )
                prompt_template = MINUTES_PROMPT
                status = "All segments transcribed, running AI analysis..."
            else:
                try:
                    transcript = await self.transcriber.transcribe_with_retry(
                        await read_all(audio)
                    )
                except TranscriptionError as e:
                    lib_logger.error(f"Transcription of '{identity}' failed: {e}")
                    yield Fragment.failure(f"Transcription failed: {e}", e)
                    return
                if transcript:
                    yield Fragment.transcription(transcript)
                prompt_template = SUMMARY_PROMPT
                status = "Running AI analysis..."

            if not transcript.strip():
                yield Fragment.status("No speech was recognized, skipping analysis.")
                return

            yield Fragment.status(status)
            analysis = self.controller.stream_generate(
                prompt_template.format(transcript=transcript), model=self.analysis_model
            )
            try:
                async for fragment in analysis:
                    if fragment.type is FragmentType.CONTENT:
                        yield Fragment.analysis(fragment.content)
                    elif fragment.type is FragmentType.SYSTEM:
                        yield Fragment.status(fragment.content)
                    else:
                        yield fragment
            finally:
                await analysis.aclose()
        finally:
            locks.release(identity)

    async def _transcribe_segments(
        self, audio: AudioSource, identity: str, texts: Dict[int, str]
    ) -> AsyncGenerator[Fragment, None]:
        """
        Yields one transcription fragment per segment in completion order and
        fills `texts` by segment index. The first segment failure cancels all
        outstanding work and is raised.
        """
        queue: asyncio.Queue = asyncio.Queue()
        slots = asyncio.Semaphore(self.max_concurrency)
        tasks: Set[asyncio.Task] = set()

        async def transcribe_segment(index: int, data: bytes):
            try:
                text = await self.transcriber.transcribe_with_retry(
                    data, file_name=f"segment_{index:03d}.opus"
                )
                await queue.put((index, text, None))
            except Exception as e:
                await queue.put((index, None, e))
            finally:
                slots.release()

        async def feed():
            segments = self.segmenter.segments(audio, identity)
            try:
                async for index, data in segments:
                    await slots.acquire()
                    tasks.add(asyncio.create_task(transcribe_segment(index, data)))
                await asyncio.gather(*tasks)
                await queue.put(_DONE)
            except Exception as e:
                await queue.put((None, None, e))
            finally:
                await segments.aclose()

        feeder = asyncio.create_task(feed())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    return
                index, text, error = item
                if error is not None:
                    if index is not None and isinstance(error, TranscriptionError):
                        raise TranscriptionError(
                            f"segment {index} failed after retries: {error}",
                            status_code=error.status_code,
                        ) from error
                    raise error
                texts[index] = text
                lib_logger.info(f"Segment {index} of '{identity}' transcribed.")
                if text:
                    yield Fragment.transcription(text)
        finally:
            feeder.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(feeder, *tasks, return_exceptions=True)
