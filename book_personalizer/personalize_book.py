import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

from .book_processor import BookProcessor
from .cancellation import CancellationToken
from .config import Settings, load_settings
from .exceptions import PersonalizationError, RunCancelledError
from .image_processor import encode_image_file, load_page_images, save_book_pages, write_book_pdf
from .models import ProcessingReport

DEFAULT_CONFIG_PATH = Path("config.yaml")


def default_config_path() -> Optional[Path]:
    """``config.yaml`` in the working directory when it exists, else built-in defaults."""
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    logger.info(f"{DEFAULT_CONFIG_PATH} not found, using default settings")
    return None


def create_output_directory(base_dir: str, book_title: str, child_name: str) -> Path:
    """Create a unique output directory for the book."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    project_name = f"{book_title}_{child_name}".lower().replace(" ", "_")
    output_dir = Path(base_dir) / f"{project_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Personalize a children's book with a child's likeness.")
    parser.add_argument('pages_dir', type=Path, help='Directory of page images (natural filename order)')
    parser.add_argument('child_photo', type=Path, help="Photo of the child")
    parser.add_argument('--name', required=True, help="Child's display name")
    parser.add_argument('--title', default='My Book', help='Book title')
    parser.add_argument('--config', type=Path, default=None,
                        help=f'YAML configuration file (default: {DEFAULT_CONFIG_PATH} if present)')
    parser.add_argument('--batch-size', type=int, default=None, help='Pages per batch')
    parser.add_argument('--cover', type=Path, default=None, help='Original cover image to personalize')
    parser.add_argument('--analyze', action='store_true', help='Detect characters on each page before mapping')
    parser.add_argument('--output', type=str, default=None, help='Base output directory')
    return parser


async def run(args: argparse.Namespace, settings: Settings, output_dir: Path) -> ProcessingReport:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl+C will terminate without cleanup")

    book_pages = load_page_images(args.pages_dir)
    child_image = encode_image_file(args.child_photo)
    options = {'analyze_pages': args.analyze}
    if args.batch_size:
        options['batch_size'] = args.batch_size
    if args.cover:
        options['cover_image'] = encode_image_file(args.cover)

    processor = BookProcessor(settings)
    try:
        report = await processor.process_complete_book(book_pages, child_image, args.name, args.title,
                                                       options=options, token=token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    output = settings.output
    save_book_pages(report.book, output_dir, cover=report.cover)
    write_book_pdf(report.book, output_dir / "book.pdf", cover=report.cover,
                   page_width=output.page_width, page_height=output.page_height,
                   maintain_aspect=output.maintain_aspect_ratio, smart_crop=output.smart_crop,
                   bg_color=output.background_color)
    with open(output_dir / "report.json", 'w') as f:
        json.dump(report.to_dict(), f, indent=2)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the book personalization script."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config or default_config_path())
    except PersonalizationError as e:
        logger.error(str(e))
        return 2

    output_dir = create_output_directory(args.output or settings.output.directory, args.title, args.name)

    # Configure logging
    logger.add(
        output_dir / "generation.log",
        rotation="500 MB",
        level=settings.output.log_level
    )

    try:
        report = asyncio.run(run(args, settings, output_dir))
    except RunCancelledError as e:
        logger.warning(f"Run cancelled: {e}")
        return 130
    except (PersonalizationError, FileNotFoundError) as e:
        logger.error(f"Failed to personalize book: {str(e)}")
        return 1

    metadata = report.book.metadata
    logger.info(f"Done: {metadata.successful_pages}/{metadata.total_pages} pages personalized, output in {output_dir}")
    return 0 if report.book.success else 1


if __name__ == "__main__":
    sys.exit(main())
