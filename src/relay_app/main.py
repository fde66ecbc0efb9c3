import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

import aiofiles
import httpx
from dotenv import load_dotenv
from rich.console import Console

from gemini_relay import (
    ModelCatalog,
    RelaySettings,
    ResilientStreamController,
    ServiceState,
    StreamRequestExecutor,
)
from gemini_relay.catalog_sync import sync_models_file
from gemini_relay.schemas import Fragment, FragmentType
from gemini_relay.timeout_config import TimeoutConfig
from relay_app.events import format_sse, stream_events
from relay_app.logging_setup import setup_logging

console = Console()

# Console styles per fragment type; None prints plain text
FRAGMENT_STYLES = {
    FragmentType.CONTENT: None,
    FragmentType.ANALYSIS: None,
    FragmentType.TRANSCRIPTION: "cyan",
    FragmentType.SYSTEM: "dim",
    FragmentType.STATUS: "dim",
    FragmentType.ERROR: "bold red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gemini-relay", description="Resilient Gemini streaming relay"
    )
    parser.add_argument(
        "--sse",
        action="store_true",
        help="Print framed server-sent events instead of rendered text.",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Show debug logs on the console."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Stream a reply to a prompt.")
    chat.add_argument("prompt", type=str)
    chat.add_argument("--model", type=str, default=None)

    minutes = subparsers.add_parser(
        "minutes", help="Transcribe a meeting recording and summarize it."
    )
    minutes.add_argument("audio", type=Path)

    subparsers.add_parser("sync-models", help="Refresh the model catalog file.")
    return parser


def load_catalog(settings: RelaySettings) -> ModelCatalog:
    if settings.models_file.exists():
        return ModelCatalog.from_yaml(
            settings.models_file, default_model=settings.default_model
        )
    logging.warning(
        f"Model catalog {settings.models_file} not found. "
        f"Using only the default model {settings.default_model}."
    )
    return ModelCatalog({settings.default_model: ""}, default_model=settings.default_model)


async def render(fragments: AsyncIterator[Fragment], sse: bool) -> int:
    """Prints a fragment stream and returns the process exit code."""
    exit_code = 0
    if sse:
        async for event in stream_events(fragments):
            if event["type"] == "error":
                exit_code = 1
            sys.stdout.write(format_sse(event))
            sys.stdout.flush()
        return exit_code

    previous: Optional[FragmentType] = None
    async for fragment in fragments:
        if fragment.is_error:
            exit_code = 1
        style = FRAGMENT_STYLES.get(fragment.type)
        streamed = fragment.type in (FragmentType.CONTENT, FragmentType.ANALYSIS)
        if previous is not None and previous is not fragment.type and not streamed:
            console.print()
        console.print(
            fragment.content,
            style=style,
            markup=False,
            highlight=False,
            end="" if streamed else "\n",
        )
        previous = fragment.type
    console.print()
    return exit_code


async def run(args: argparse.Namespace, settings: RelaySettings) -> int:
    async with httpx.AsyncClient(timeout=TimeoutConfig.streaming()) as client:
        if args.command == "sync-models":
            keys = settings.premium_api_keys + settings.api_keys
            if not keys:
                console.print("No API keys configured.", style="bold red")
                return 1
            updated = await sync_models_file(
                client, keys[0], settings.models_file, settings.base_url
            )
            return 0 if updated else 1

        state = ServiceState.from_settings(settings)
        executor = StreamRequestExecutor(
            client, settings.base_url, settings.upload_base_url
        )
        controller = ResilientStreamController(state, load_catalog(settings), executor)

        if args.command == "chat":
            return await render(
                controller.stream_generate(args.prompt, model=args.model), args.sse
            )

        # minutes
        from gemini_relay.pipeline import ChunkedTranscriptionPipeline
        from gemini_relay.segmenter import AudioSegmenter
        from gemini_relay.transcription import TranscriptionClient

        if not settings.transcription_enabled:
            console.print(
                "Set TRANSCRIPTION_BASE_URL and TRANSCRIPTION_API_KEY to transcribe audio.",
                style="bold red",
            )
            return 1

        pipeline = ChunkedTranscriptionPipeline(
            state,
            controller,
            TranscriptionClient(
                settings.transcription_base_url,
                settings.transcription_api_key,
                settings.transcription_model,
                http_client=client,
            ),
            AudioSegmenter(
                settings.ffmpeg_path,
                settings.segment_seconds,
                settings.segment_bitrate,
            ),
            max_file_size=settings.max_file_size,
            analysis_model=settings.analysis_model,
            max_concurrency=settings.max_concurrent_segments,
        )
        size = args.audio.stat().st_size
        async with aiofiles.open(args.audio, "rb") as audio:
            return await render(
                pipeline.process(audio, args.audio.name, size=size), args.sse
            )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    root = Path.cwd()
    load_dotenv(root / ".env")
    setup_logging(root, verbose=args.verbose)

    settings = RelaySettings.from_env()
    if not settings.api_keys and not settings.premium_api_keys:
        console.print(
            "No Gemini API keys configured. Set GEMINI_API_KEYS in .env.",
            style="bold red",
        )
        return 1

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        console.print("Interrupted.", style="dim")
        return 130
    except OSError as e:
        console.print(f"Error: {e}", style="bold red", markup=False)
        return 1


if __name__ == "__main__":
    sys.exit(main())
