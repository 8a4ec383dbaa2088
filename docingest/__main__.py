"""
Command line entry point.

Usage:
    python -m docingest report.pdf --mime-type application/pdf --model gpt-4o
"""
import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path

import structlog

from docingest.config import get_settings
from docingest.errors import ProcessingError
from docingest.logging_setup import configure_logging
from docingest.processing.formats import supported_mime_types
from docingest.services.coordinator import ProcessingCoordinator

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docingest",
        description="Extract, sanitize, analyze and chunk a document for LLM input.",
    )
    parser.add_argument("file", type=Path, help="Document to process")
    parser.add_argument(
        "--mime-type",
        help="Declared MIME type (guessed from the file extension if omitted). "
        f"Supported: {', '.join(supported_mime_types())}",
    )
    parser.add_argument("--model", help="Model profile used for token counting and cost")
    parser.add_argument("--max-tokens", type=int, help="Token budget per chunk (100-32000)")
    parser.add_argument("--indent", type=int, default=2, help="JSON indentation")
    return parser


async def run(args: argparse.Namespace) -> int:
    content = args.file.read_bytes()
    mime_type = args.mime_type or mimetypes.guess_type(args.file.name)[0] or "application/octet-stream"

    async with ProcessingCoordinator() as coordinator:
        try:
            result = await coordinator.process_file(
                content,
                args.file.name,
                mime_type,
                model=args.model,
                max_tokens_per_chunk=args.max_tokens,
            )
        except ProcessingError as e:
            logger.error("Processing failed", error=str(e), error_type=type(e).__name__)
            return 1

    print(result.model_dump_json(indent=args.indent))
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    if not args.file.is_file():
        logger.error("File not found", file=str(args.file))
        return 2
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
