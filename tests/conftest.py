"""
Shared pytest fixtures for book personalization tests.

Nothing here talks to Gemini: remote calls go through FakeImageClient and
every suspension point goes through FakeSleep, which advances FakeClock
instead of waiting.
"""

import base64
from io import BytesIO

import pytest
from PIL import Image

from book_personalizer.exceptions import EmptyResponseError, GenerationAPIError
from book_personalizer.rate_limiter import RateLimiter
from book_personalizer.retry_policy import RetryPolicy


class FakeClock:
    def __init__(self, start: float = 10_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeSleep:
    """Records requested delays (ms) and advances the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []
        self.on_sleep = None

    async def __call__(self, delay_ms, token=None):
        if token is not None:
            token.raise_if_cancelled()
        self.calls.append(delay_ms)
        self.clock.now += delay_ms
        if self.on_sleep is not None:
            self.on_sleep(len(self.calls))
        if token is not None:
            token.raise_if_cancelled()


class FixedRng:
    """Stand-in for random.Random with a constant jitter."""

    def __init__(self, value: float = 0.0):
        self.value = value

    def uniform(self, a, b):
        return a + self.value


def http_error(status: int, message: str = "") -> GenerationAPIError:
    return GenerationAPIError(f"API request failed with status code {status}: {message}".rstrip(": "),
                              status_code=status)


class FakeImageClient:
    """Scriptable Gemini stand-in.

    ``generate`` and ``text`` are callables ``(prompt, images, call_number)``
    returning a value or an exception instance to raise. Streaming is
    unsupported unless ``stream`` is given.
    """

    def __init__(self, generate=None, stream=None, text=None):
        self._generate = generate or (lambda prompt, images, n: f"GENERATED-{images[-1]}")
        self._stream = stream
        self._text = text or (lambda prompt, images, n: '{"characters": []}')
        self.generate_calls = []
        self.stream_calls = []
        self.text_calls = []

    @staticmethod
    def _resolve(value):
        if isinstance(value, BaseException):
            raise value
        return value

    def stream_image(self, prompt, images):
        self.stream_calls.append((prompt, list(images)))
        if self._stream is None:
            raise EmptyResponseError("Stream ended without image data")
        return self._resolve(self._stream(prompt, images, len(self.stream_calls)))

    def generate_image(self, prompt, images):
        self.generate_calls.append((prompt, list(images)))
        return self._resolve(self._generate(prompt, images, len(self.generate_calls)))

    def generate_text(self, prompt, images=()):
        self.text_calls.append((prompt, list(images)))
        return self._resolve(self._text(prompt, images, len(self.text_calls)))

    def calls_for(self, page_image):
        return [call for call in self.generate_calls if call[1][-1] == page_image]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def rate_limiter(clock, fake_sleep):
    return RateLimiter(min_delay_ms=1000, max_delay_ms=16000, clock=clock, sleep=fake_sleep)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_retries=5, base_delay_ms=3000, max_jitter_ms=2000, rng=FixedRng(0))


@pytest.fixture
def make_png_b64():
    """Factory for a base64 PNG of the given size and color."""
    def _make(width: int = 40, height: int = 30, color: str = 'red') -> str:
        buffer = BytesIO()
        Image.new('RGB', (width, height), color).save(buffer, 'PNG')
        return base64.b64encode(buffer.getvalue()).decode('utf-8')
    return _make
