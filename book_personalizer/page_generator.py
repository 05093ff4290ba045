import asyncio
from typing import Optional, Protocol, Sequence

from loguru import logger

from .cancellation import CancellationToken, pause
from .exceptions import ContractViolationError, EmptyResponseError
from .models import PageMapping, ProcessedPageResult
from .prompt_manager import PromptManager
from .rate_limiter import RateLimiter, Sleep
from .retry_policy import RetryPolicy, status_of, with_retry


class ImageClient(Protocol):
    def stream_image(self, prompt: str, images: Sequence[str]) -> str: ...

    def generate_image(self, prompt: str, images: Sequence[str]) -> str: ...


async def request_image(client: ImageClient,
                        prompt: str,
                        images: Sequence[str],
                        label: str = "image",
                        rate_limiter: Optional[RateLimiter] = None,
                        retry_policy: Optional[RetryPolicy] = None,
                        token: Optional[CancellationToken] = None) -> str:
    """One generation attempt: streaming first, then a single non-streaming call.

    The blocking HTTP calls run in the default executor so the event loop
    stays free during long generations. An overload from the stream widens
    the limiter and the non-stream call waits for the new spacing.
    """
    loop = asyncio.get_running_loop()
    try:
        image = await loop.run_in_executor(None, client.stream_image, prompt, list(images))
        if image:
            logger.info(f"Generated {label} via stream: {len(image)} bytes")
            return image
        logger.warning(f"Stream for {label} returned no image data")
    except Exception as e:
        logger.warning(f"Streaming failed for {label} ({e}), trying non-stream fallback...")
        if (rate_limiter is not None and retry_policy is not None
                and retry_policy.is_overload(e, status_of(e))):
            rate_limiter.on_overload()
            await rate_limiter.wait_before_request(token)

    image = await loop.run_in_executor(None, client.generate_image, prompt, list(images))
    if not image:
        raise EmptyResponseError(f"No image data returned for {label}")
    logger.info(f"Generated {label} (fallback): {len(image)} bytes")
    return image


class PageImageGenerator:
    """Replaces the main character on one page, falling back to the original page image."""

    def __init__(self,
                 client: ImageClient,
                 rate_limiter: RateLimiter,
                 retry_policy: RetryPolicy,
                 prompt_manager: Optional[PromptManager] = None,
                 sleep: Sleep = pause):
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.prompt_manager = prompt_manager or PromptManager()
        self._sleep = sleep

    async def generate(self,
                       mapping: PageMapping,
                       child_image: str,
                       child_name: str,
                       previous_page: Optional[ProcessedPageResult] = None,
                       token: Optional[CancellationToken] = None) -> ProcessedPageResult:
        if mapping is None or not mapping.page_image:
            raise ContractViolationError(
                f"Page {getattr(mapping, 'page_number', '?')} has no page image to process")
        if mapping.character is None:
            raise ContractViolationError(f"Page {mapping.page_number} has no character descriptor")
        if not child_image:
            raise ContractViolationError("No child reference image supplied")

        page_number = mapping.page_number
        prompt = self.prompt_manager.generate_page_prompt(child_name, mapping.character, previous_page)
        images = [child_image, mapping.page_image]
        label = f"page {page_number}"

        async def attempt_generation(attempt: int) -> str:
            logger.info(f"Processing page {page_number} (attempt {attempt}/{self.retry_policy.max_retries})...")
            return await request_image(self.client, prompt, images, label,
                                       self.rate_limiter, self.retry_policy, token)

        outcome = await with_retry(
            attempt_generation,
            self.retry_policy,
            fallback=lambda error: mapping.page_image,
            label=f"Page {page_number} processing",
            rate_limiter=self.rate_limiter,
            token=token,
            sleep=self._sleep,
        )

        if outcome.succeeded:
            logger.info(f"Page {page_number} processed successfully"
                        + (f" (after {outcome.attempts} attempts)" if outcome.attempts > 1 else ""))
            return ProcessedPageResult(
                page_number=page_number,
                processed_image=outcome.value,
                success=True,
                attempts=outcome.attempts,
                character=mapping.character.description,
            )

        logger.warning(f"Using original page {page_number} after {outcome.attempts} attempt(s)")
        return ProcessedPageResult(
            page_number=page_number,
            processed_image=mapping.page_image,
            success=False,
            attempts=outcome.attempts,
            error=outcome.error,
            used_original=True,
            character=mapping.character.description,
        )
