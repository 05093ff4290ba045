from typing import List, Optional, Sequence

from loguru import logger

from .cancellation import CancellationToken, pause
from .exceptions import ConfigurationError, ContractViolationError, RunCancelledError
from .models import PageMapping, ProcessedPageResult
from .page_generator import PageImageGenerator
from .rate_limiter import Sleep


def partition(mappings: Sequence[PageMapping], batch_size: int) -> List[List[PageMapping]]:
    """Split into contiguous batches of ``batch_size`` (the last may be shorter)."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [list(mappings[i:i + batch_size]) for i in range(0, len(mappings), batch_size)]


def fallback_result(mapping: PageMapping, error: str) -> ProcessedPageResult:
    return ProcessedPageResult(
        page_number=mapping.page_number,
        processed_image=mapping.page_image,
        success=False,
        attempts=0,
        error=error,
        used_original=True,
        character=mapping.character.description if mapping.character else None,
    )


class BatchOrchestrator:
    """Drives page generation batch by batch, one page at a time.

    Pages inside a batch run sequentially so each prompt can point at the
    most recent successfully replaced page. An unexpected exception inside a
    batch degrades that whole batch to original images and the run moves on.
    """

    def __init__(self,
                 page_generator: PageImageGenerator,
                 batch_size: int = 3,
                 inter_page_delay_ms: float = 2000,
                 inter_batch_delay_ms: float = 3000,
                 sleep: Sleep = pause):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.page_generator = page_generator
        self.batch_size = batch_size
        self.inter_page_delay_ms = inter_page_delay_ms
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self._sleep = sleep

    async def process(self,
                      mappings: Sequence[PageMapping],
                      child_image: str,
                      child_name: str,
                      token: Optional[CancellationToken] = None) -> List[ProcessedPageResult]:
        batches = partition(mappings, self.batch_size)
        processed_pages: List[ProcessedPageResult] = []
        last_success: Optional[ProcessedPageResult] = None

        for index, batch in enumerate(batches):
            batch_number = index + 1
            logger.info(f"Processing batch {batch_number}/{len(batches)} ({len(batch)} pages)")

            batch_results: List[ProcessedPageResult] = []
            try:
                for position, mapping in enumerate(batch):
                    previous_page = self._find_reference_page(batch_results, last_success)
                    result = await self.page_generator.generate(
                        mapping, child_image, child_name, previous_page=previous_page, token=token)
                    batch_results.append(result)

                    if position < len(batch) - 1:
                        await self._sleep(self.inter_page_delay_ms, token)
            except (ContractViolationError, RunCancelledError, ConfigurationError):
                raise
            except Exception as e:
                logger.error(f"Batch {batch_number} failed: {str(e)}")
                batch_results = [fallback_result(mapping, str(e)) for mapping in batch]
            else:
                logger.info(f"Batch {batch_number} completed")

            processed_pages.extend(batch_results)
            last_success = self._find_reference_page(batch_results, last_success)

            if batch_number < len(batches):
                await self._sleep(self.inter_batch_delay_ms, token)

        succeeded = sum(1 for page in processed_pages if page.success)
        fell_back = sum(1 for page in processed_pages if page.used_original)
        logger.info(f"All pages processed: {succeeded} succeeded, {fell_back} fell back to original, "
                    f"{len(processed_pages)} total")
        return processed_pages

    @staticmethod
    def _find_reference_page(batch_results: Sequence[ProcessedPageResult],
                             last_success: Optional[ProcessedPageResult]) -> Optional[ProcessedPageResult]:
        """Most recent successful page: current batch first (newest backwards), then the run so far."""
        for result in reversed(batch_results):
            if result.success:
                return result
        return last_success
