import asyncio
import json
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from .cancellation import CancellationToken, pause
from .character_mapper import to_descriptor
from .models import PageAnalysis, PageRecord
from .prompt_manager import PromptManager
from .rate_limiter import RateLimiter, Sleep
from .retry_policy import RetryPolicy, with_retry

_FENCE_PATTERN = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)


class TextClient(Protocol):
    def generate_text(self, prompt: str, images: Sequence[str] = ()) -> str: ...


def parse_analysis_json(text: str) -> Dict[str, Any]:
    """Parse the detector's JSON answer, tolerating markdown fences and surrounding prose."""
    cleaned = _FENCE_PATTERN.sub('', text.strip())
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        start, end = cleaned.find('{'), cleaned.rfind('}')
        if start == -1 or end <= start:
            raise
        parsed = json.loads(cleaned[start:end + 1])
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


class PageAnalyzer:
    """Optional character detection ahead of mapping.

    Any failure yields an analysis without characters, which the mapper
    turns into its forced default target.
    """

    def __init__(self,
                 client: TextClient,
                 rate_limiter: RateLimiter,
                 retry_policy: RetryPolicy,
                 prompt_manager: Optional[PromptManager] = None,
                 sleep: Sleep = pause):
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.prompt_manager = prompt_manager or PromptManager()
        self._sleep = sleep

    async def analyze_page(self, page: PageRecord, token: Optional[CancellationToken] = None) -> PageAnalysis:
        prompt = self.prompt_manager.generate_page_analysis_prompt(page.page_number)
        loop = asyncio.get_running_loop()

        async def attempt_analysis(attempt: int) -> str:
            return await loop.run_in_executor(None, self.client.generate_text, prompt, [page.page_image])

        outcome = await with_retry(
            attempt_analysis,
            self.retry_policy,
            fallback=lambda error: "",
            label=f"Page {page.page_number} analysis",
            rate_limiter=self.rate_limiter,
            token=token,
            sleep=self._sleep,
        )
        if not outcome.succeeded:
            return PageAnalysis(page_number=page.page_number, error=outcome.error)

        try:
            payload = parse_analysis_json(outcome.value)
        except ValueError as e:
            logger.error(f"Failed to parse analysis JSON for page {page.page_number}: {e}")
            return PageAnalysis(page_number=page.page_number, error=f"invalid analysis JSON: {e}")

        characters = payload.get('characters')
        if not isinstance(characters, list):
            characters = []
        scene = payload.get('scene') if isinstance(payload.get('scene'), dict) else {}
        logger.info(f"Page {page.page_number}: detected {len(characters)} character(s)")
        return PageAnalysis(page_number=page.page_number, characters=characters, scene=scene)

    async def analyze_book(self, pages: Sequence[PageRecord], token: Optional[CancellationToken] = None) -> List[PageAnalysis]:
        analyses = []
        for page in pages:
            logger.info(f"Analyzing page {page.page_number}/{len(pages)}")
            analyses.append(await self.analyze_page(page, token))

        main_character = identify_main_character(analyses)
        logger.info(f"Book analysis complete; main character: '{main_character['description']}' "
                    f"on {main_character['frequency']}/{len(analyses)} pages")
        return analyses


def identify_main_character(analyses: Sequence[PageAnalysis]) -> Dict[str, Any]:
    """Most frequent description among characters flagged as main."""
    counts = Counter()
    for analysis in analyses:
        for payload in analysis.characters:
            character = to_descriptor(payload)
            if character is not None and character.is_main_character is True:
                counts[character.description.lower()] += 1

    if not counts:
        return {'description': "main character", 'frequency': 0, 'total_pages': len(analyses)}
    description, frequency = counts.most_common(1)[0]
    return {'description': description, 'frequency': frequency, 'total_pages': len(analyses)}
