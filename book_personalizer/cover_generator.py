import asyncio
import re
from typing import Dict, Optional, Protocol, Sequence

from loguru import logger

from .cancellation import CancellationToken, pause
from .exceptions import ContractViolationError
from .models import CoverResult
from .page_generator import request_image
from .prompt_manager import PromptManager
from .rate_limiter import RateLimiter, Sleep
from .retry_policy import RetryPolicy, with_retry

STYLE_KEYWORDS = ["watercolor", "digital", "hand-drawn", "cartoon", "realistic", "minimalist", "whimsical", "illustration"]
COLOR_KEYWORDS = {
    "vibrant": "vibrant and energetic",
    "pastel": "soft pastel colors",
    "bright": "bright and cheerful",
    "warm": "warm color tones",
    "cool": "cool color tones",
    "rainbow": "rainbow of colors",
    "muted": "muted and soft colors",
}
FEATURE_KEYWORDS = ["hair", "eyes", "smile", "face", "skin"]

DEFAULT_COVER_ANALYSIS = {
    'raw_analysis': "Default analysis - API unavailable",
    'style': "children's book illustration",
    'composition': "centered",
    'character_position': "center",
    'color_palette': "vibrant and colorful",
}


class CoverClient(Protocol):
    def generate_text(self, prompt: str, images: Sequence[str] = ()) -> str: ...

    def stream_image(self, prompt: str, images: Sequence[str]) -> str: ...

    def generate_image(self, prompt: str, images: Sequence[str]) -> str: ...


def extract_style(analysis_text: str) -> str:
    lower_text = analysis_text.lower()
    for keyword in STYLE_KEYWORDS:
        if keyword in lower_text:
            return f"{keyword} illustration style"
    return "children's book illustration style"


def extract_composition(analysis_text: str) -> str:
    lower_text = analysis_text.lower()
    if "center" in lower_text or "middle" in lower_text:
        return "centered"
    if "left" in lower_text:
        return "left-aligned"
    if "right" in lower_text:
        return "right-aligned"
    return "balanced composition"


def extract_character_position(analysis_text: str) -> str:
    lower_text = analysis_text.lower()
    if "foreground" in lower_text or "front" in lower_text:
        return "foreground center"
    if "center" in lower_text:
        return "center"
    if "left" in lower_text:
        return "left side"
    if "right" in lower_text:
        return "right side"
    return "center"


def extract_color_palette(analysis_text: str) -> str:
    lower_text = analysis_text.lower()
    for keyword, description in COLOR_KEYWORDS.items():
        if keyword in lower_text:
            return description
    return "colorful and appealing"


def extract_key_features(analysis_text: str) -> str:
    """First sentence mentioning each feature keyword, joined."""
    features = []
    for keyword in FEATURE_KEYWORDS:
        match = re.search(rf"([^.]*{keyword}[^.]*)", analysis_text, re.IGNORECASE)
        if match:
            features.append(match.group(1).strip())
    return ", ".join(features) if features else "distinctive features"


class CoverGenerator:
    """Personalized cover: analyze cover and child, then regenerate the cover."""

    def __init__(self,
                 client: CoverClient,
                 rate_limiter: RateLimiter,
                 retry_policy: RetryPolicy,
                 prompt_manager: Optional[PromptManager] = None,
                 sleep: Sleep = pause):
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.prompt_manager = prompt_manager or PromptManager()
        self._sleep = sleep

    async def _analyze(self, prompt: str, image: str, label: str, token: Optional[CancellationToken]) -> Optional[str]:
        loop = asyncio.get_running_loop()

        async def attempt_analysis(attempt: int) -> str:
            logger.info(f"{label} (attempt {attempt}/{self.retry_policy.max_retries})...")
            return await loop.run_in_executor(None, self.client.generate_text, prompt, [image])

        outcome = await with_retry(attempt_analysis, self.retry_policy, fallback=lambda error: None,
                                   label=label, rate_limiter=self.rate_limiter, token=token, sleep=self._sleep)
        return outcome.value

    async def analyze_cover(self, cover_image: str, book: Dict[str, str],
                            token: Optional[CancellationToken] = None) -> Dict[str, str]:
        prompt = self.prompt_manager.generate_cover_analysis_prompt(book)
        analysis_text = await self._analyze(prompt, cover_image, "Cover analysis", token)
        if not analysis_text:
            logger.warning("Using default cover analysis")
            return dict(DEFAULT_COVER_ANALYSIS)
        return {
            'raw_analysis': analysis_text,
            'style': extract_style(analysis_text),
            'composition': extract_composition(analysis_text),
            'character_position': extract_character_position(analysis_text),
            'color_palette': extract_color_palette(analysis_text),
        }

    async def analyze_child(self, child_image: str, child: Dict[str, str],
                            token: Optional[CancellationToken] = None) -> Dict[str, str]:
        prompt = self.prompt_manager.generate_child_analysis_prompt(child)
        analysis_text = await self._analyze(prompt, child_image, "Child analysis", token)
        features = {
            'name': child.get('name') or "the child",
            'age': child.get('age'),
        }
        if not analysis_text:
            logger.warning("Using default child features")
            features.update(appearance="a young child", features="happy and friendly")
        else:
            features.update(appearance=analysis_text, features=extract_key_features(analysis_text))
        return features

    async def generate_cover(self,
                             original_cover: str,
                             child_image: str,
                             book: Optional[Dict[str, str]] = None,
                             child: Optional[Dict[str, str]] = None,
                             token: Optional[CancellationToken] = None) -> CoverResult:
        if not original_cover or not child_image:
            raise ContractViolationError("Cover generation needs both the original cover and the child image")
        book = book or {}
        child = child or {}
        logger.info(f"Starting cover generation for '{book.get('name') or 'Unknown'}' ({child.get('name') or 'Unknown'})")

        cover_analysis = await self.analyze_cover(original_cover, book, token)
        child_features = await self.analyze_child(child_image, child, token)
        prompt = self.prompt_manager.generate_cover_prompt(cover_analysis, child_features, book)
        images = [original_cover, child_image]

        async def attempt_generation(attempt: int) -> str:
            logger.info(f"Generating cover image (attempt {attempt}/{self.retry_policy.max_retries})...")
            return await request_image(self.client, prompt, images, "cover",
                                       self.rate_limiter, self.retry_policy, token)

        outcome = await with_retry(attempt_generation, self.retry_policy, fallback=lambda error: original_cover,
                                   label="Cover image generation", rate_limiter=self.rate_limiter,
                                   token=token, sleep=self._sleep)
        if outcome.succeeded:
            logger.info("Personalized cover generated")
            return CoverResult(image=outcome.value, success=True, attempts=outcome.attempts)

        logger.warning("Keeping the original cover")
        return CoverResult(image=original_cover, success=False, attempts=outcome.attempts,
                           used_original=True, error=outcome.error)
