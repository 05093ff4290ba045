import base64
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from .api_client import APIClient
from .batch_orchestrator import BatchOrchestrator
from .book_assembler import BookAssembler
from .cancellation import CancellationToken, pause
from .character_mapper import map_characters
from .config import Settings
from .cover_generator import CoverGenerator
from .exceptions import ContractViolationError
from .image_processor import strip_data_uri
from .models import PageAnalysis, PageRecord, ProcessingReport
from .page_analyzer import PageAnalyzer
from .page_generator import PageImageGenerator
from .prompt_manager import PromptManager
from .rate_limiter import RateLimiter, Sleep
from .retry_policy import RetryPolicy


def normalize_image(image: Union[str, bytes, bytearray], what: str) -> str:
    """Base64 text for an image given as base64, a data URI or raw encoded bytes."""
    if isinstance(image, (bytes, bytearray)):
        if not image:
            raise ContractViolationError(f"{what} has no image data")
        return base64.b64encode(bytes(image)).decode('utf-8')
    if not isinstance(image, str):
        raise ContractViolationError(
            f"{what} must be base64 text or encoded image bytes, got {type(image).__name__}")
    image = strip_data_uri(image)
    if not image:
        raise ContractViolationError(f"{what} has no image data")
    return image


class BookProcessor:
    """Complete book personalization: analysis, mapping, batched generation, assembly.

    One instance owns one RateLimiter; every remote call it makes (pages,
    analysis, cover) shares that limiter.
    """

    def __init__(self,
                 settings: Optional[Settings] = None,
                 client: Optional[Any] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Sleep = pause):
        self.settings = settings or Settings()
        self.client = client or APIClient(self.settings.generation)

        self.rate_limiter = rate_limiter or RateLimiter(
            min_delay_ms=self.settings.rate_limit.min_delay_ms,
            max_delay_ms=self.settings.rate_limit.max_delay_ms,
            sleep=sleep,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.retry.max_retries,
            base_delay_ms=self.settings.retry.base_delay_ms,
            max_jitter_ms=self.settings.retry.max_jitter_ms,
        )
        self._sleep = sleep

        # Initialize managers
        self.prompt_manager = PromptManager()
        self.page_generator = PageImageGenerator(self.client, self.rate_limiter, self.retry_policy,
                                                 self.prompt_manager, sleep=sleep)
        self.page_analyzer = PageAnalyzer(self.client, self.rate_limiter, self.retry_policy,
                                          self.prompt_manager, sleep=sleep)
        self.cover_generator = CoverGenerator(self.client, self.rate_limiter, self.retry_policy,
                                              self.prompt_manager, sleep=sleep)
        self.assembler = BookAssembler()

    def _ingest_pages(self, book_pages: Sequence[Union[str, bytes]]) -> List[PageRecord]:
        if not book_pages:
            raise ContractViolationError("No book pages supplied")
        return [PageRecord(page_number=index, page_image=normalize_image(image, f"Page {index}"))
                for index, image in enumerate(book_pages, 1)]

    async def process_complete_book(self,
                                    book_pages: Sequence[Union[str, bytes]],
                                    child_image: Union[str, bytes],
                                    child_name: str,
                                    book_title: str,
                                    options: Optional[Dict[str, Any]] = None,
                                    token: Optional[CancellationToken] = None) -> ProcessingReport:
        """Personalize every page of a book.

        Options:
            batch_size: pages per batch (defaults to the configured value)
            analyze_pages: run character detection before mapping
            detections: pre-computed ``{page_number: [character, ...]}``
            cover_image: original cover to personalize as well
            child_age: passed to the cover's child analysis
            book_genre: passed to the cover analysis
        """
        options = options or {}
        start_time = time.monotonic()

        if child_image is None:
            raise ContractViolationError("No child reference image supplied")
        child_image = normalize_image(child_image, "Child reference image")
        pages = self._ingest_pages(book_pages)

        logger.info("Starting complete book personalization...")
        logger.info(f"Book: {book_title}")
        logger.info(f"Child: {child_name}")
        logger.info(f"Total pages: {len(pages)}")

        analyses: List[PageAnalysis] = []
        detections = options.get('detections') or {}
        if options.get('analyze_pages'):
            logger.info("Step 1: Analyzing all book pages...")
            analyses = await self.page_analyzer.analyze_book(pages, token)
            detections = {analysis.page_number: analysis.characters for analysis in analyses}

        logger.info("Step 2: Mapping characters across pages...")
        mappings = map_characters(pages, detections)

        logger.info("Step 3: Processing pages in batches...")
        batching = self.settings.batching
        orchestrator = BatchOrchestrator(
            self.page_generator,
            batch_size=options.get('batch_size') or batching.batch_size,
            inter_page_delay_ms=batching.inter_page_delay_ms,
            inter_batch_delay_ms=batching.inter_batch_delay_ms,
            sleep=self._sleep,
        )
        processed_pages = await orchestrator.process(mappings, child_image, child_name, token)

        logger.info("Step 4: Assembling personalized book...")
        book = self.assembler.assemble(processed_pages, book_title, child_name)

        cover = None
        if options.get('cover_image'):
            logger.info("Step 5: Generating personalized cover...")
            cover = await self.cover_generator.generate_cover(
                normalize_image(options['cover_image'], "Cover image"),
                child_image,
                book={'name': book_title, 'genre': options.get('book_genre')},
                child={'name': child_name, 'age': options.get('child_age')},
                token=token,
            )

        processing_time_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(f"Personalized book assembled in {processing_time_ms / 1000:.1f}s")
        return ProcessingReport(
            book=book,
            mappings=mappings,
            processing_time_ms=processing_time_ms,
            cover=cover,
            analyses=analyses,
        )
