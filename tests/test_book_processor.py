"""End-to-end runs of BookProcessor against a fake Gemini client."""

import base64
from collections import Counter

import pytest

from book_personalizer.book_processor import BookProcessor
from book_personalizer.config import Settings
from book_personalizer.exceptions import ContractViolationError
from tests.conftest import FakeImageClient, http_error

PAGES = [f"PAGE{n}" for n in range(1, 6)]


def per_page_script(outcome):
    """Client callable whose result depends on how often the page has been requested."""
    counts = Counter()

    def _generate(prompt, images, n):
        page_image = images[-1]
        counts[page_image] += 1
        return outcome(page_image, counts[page_image])
    return _generate


@pytest.fixture
def build_processor(rate_limiter, retry_policy, fake_sleep):
    def _build(client, settings=None):
        return BookProcessor(settings or Settings(), client=client, rate_limiter=rate_limiter,
                             retry_policy=retry_policy, sleep=fake_sleep)
    return _build


@pytest.mark.unit
@pytest.mark.asyncio
class TestProcessCompleteBook:

    async def test_all_pages_succeed_with_forced_default_character(self, build_processor):
        processor = build_processor(FakeImageClient())
        report = await processor.process_complete_book(PAGES, "CHILD", "Mia", "The Dragon")

        book = report.book
        assert len(book.pages) == 5
        assert all(p.success and not p.used_original for p in book.pages)
        assert all(p.processed_image == f"GENERATED-PAGE{p.page_number}" for p in book.pages)
        assert {m.character.description for m in report.mappings} == {"main character (forced processing)"}
        assert report.character_replacements == 5
        assert book.metadata.successful_pages == 5

    async def test_overloaded_pages_recover_on_third_attempt(self, build_processor, rate_limiter):
        client = FakeImageClient(generate=per_page_script(
            lambda page, count: http_error(503, "Service Unavailable") if count <= 2 else f"NEW-{page}"))
        observed_delays = []
        on_overload = rate_limiter.on_overload

        def record_overload():
            on_overload()
            observed_delays.append(rate_limiter.current_delay_ms)
        rate_limiter.on_overload = record_overload

        report = await build_processor(client).process_complete_book(PAGES[:3], "CHILD", "Mia", "T")

        assert [(p.success, p.attempts) for p in report.book.pages] == [(True, 3)] * 3
        assert max(observed_delays) > rate_limiter.min_delay_ms

    async def test_non_retryable_errors_use_originals_without_retry(self, build_processor):
        client = FakeImageClient(generate=lambda prompt, images, n: http_error(400, "Invalid argument"))
        report = await build_processor(client).process_complete_book(PAGES[:4], "CHILD", "Mia", "T")

        pages = report.book.pages
        assert [(p.success, p.used_original, p.attempts) for p in pages] == [(False, True, 1)] * 4
        assert [p.processed_image for p in pages] == PAGES[:4]
        assert len(client.generate_calls) == 4
        assert report.book.success is False

    async def test_persistent_server_error_never_aborts_run(self, build_processor):
        client = FakeImageClient(generate=per_page_script(
            lambda page, count: http_error(500) if page == "PAGE2" else f"NEW-{page}"))
        report = await build_processor(client).process_complete_book(PAGES[:3], "CHILD", "Mia", "T")

        by_page = {p.page_number: p for p in report.book.pages}
        assert by_page[2].success is False
        assert by_page[2].attempts == 5
        assert len(client.calls_for("PAGE2")) == 5
        assert by_page[1].success and by_page[3].success
        assert report.book.metadata.failed_pages == 1
        assert report.book.success is True

    async def test_data_uri_pages_are_stripped(self, build_processor):
        client = FakeImageClient()
        report = await build_processor(client).process_complete_book(
            ["data:image/png;base64,PAGE1"], "data:image/png;base64,CHILD", "Mia", "T")

        assert client.generate_calls[0][1] == ["CHILD", "PAGE1"]
        assert report.book.pages[0].processed_image == "GENERATED-PAGE1"

    async def test_batch_size_option_overrides_settings(self, build_processor, fake_sleep):
        await build_processor(FakeImageClient()).process_complete_book(
            PAGES, "CHILD", "Mia", "T", options={'batch_size': 5})

        # One batch: only inter-page delays
        assert fake_sleep.calls == [2000, 2000, 2000, 2000]

    async def test_precomputed_detections_drive_mapping(self, build_processor):
        detections = {2: [{'description': 'a puppy', 'isAnimal': True},
                          {'description': 'a girl in a red coat', 'isHuman': True, 'size': 'large'}]}
        report = await build_processor(FakeImageClient()).process_complete_book(
            PAGES[:2], "CHILD", "Mia", "T", options={'detections': detections})

        assert report.mappings[0].character.description == "main character (forced processing)"
        assert report.mappings[1].character.description == "a girl in a red coat"

    async def test_analysis_feeds_mapping(self, build_processor):
        def detect(prompt, images, n):
            if images[0] == "PAGE1":
                return '```json\n{"characters": [{"description": "a boy with a kite", "isMainCharacter": true}]}\n```'
            return "I could not find anyone."
        client = FakeImageClient(text=detect)
        report = await build_processor(client).process_complete_book(
            PAGES[:2], "CHILD", "Mia", "T", options={'analyze_pages': True})

        assert len(report.analyses) == 2
        assert report.analyses[1].error is not None
        assert report.mappings[0].character.description == "a boy with a kite"
        assert report.mappings[1].character.description == "main character (forced processing)"
        assert "a boy with a kite" in client.generate_calls[0][0]

    async def test_cover_is_generated_when_supplied(self, build_processor):
        client = FakeImageClient()
        report = await build_processor(client).process_complete_book(
            PAGES[:1], "CHILD", "Mia", "T", options={'cover_image': "COVER", 'child_age': 5})

        assert report.cover.success is True
        assert report.cover.image == "GENERATED-CHILD"
        assert client.generate_calls[-1][1] == ["COVER", "CHILD"]
        assert report.to_dict()['cover']['success'] is True

    async def test_report_dict(self, build_processor):
        report = await build_processor(FakeImageClient()).process_complete_book(PAGES[:2], "CHILD", "Mia", "T")
        data = report.to_dict()

        assert data['success'] is True
        assert data['total_pages'] == 2
        assert data['character_replacements'] == 2
        assert [entry['page_number'] for entry in data['character_mapping']] == [1, 2]
        assert 'cover' not in data

    async def test_empty_page_list_is_rejected(self, build_processor):
        with pytest.raises(ContractViolationError):
            await build_processor(FakeImageClient()).process_complete_book([], "CHILD", "Mia", "T")

    async def test_blank_page_is_rejected(self, build_processor):
        with pytest.raises(ContractViolationError, match="Page 2"):
            await build_processor(FakeImageClient()).process_complete_book(["PAGE1", ""], "CHILD", "Mia", "T")

    async def test_missing_child_image_is_rejected(self, build_processor):
        with pytest.raises(ContractViolationError):
            await build_processor(FakeImageClient()).process_complete_book(PAGES, "", "Mia", "T")

    async def test_every_call_failing_returns_complete_book_of_originals(self, build_processor, retry_policy):
        client = FakeImageClient(generate=lambda prompt, images, n: http_error(500))
        report = await build_processor(client).process_complete_book(PAGES[:3], "CHILD", "Mia", "T")

        pages = report.book.pages
        assert len(pages) == 3
        assert all(p.used_original and not p.success for p in pages)
        assert [p.attempts for p in pages] == [retry_policy.max_retries] * 3
        assert [p.processed_image for p in pages] == PAGES[:3]
        assert report.book.success is False
        assert report.book.metadata.failed_pages == 3

    async def test_raw_image_bytes_are_base64_encoded(self, build_processor):
        client = FakeImageClient()
        page_bytes = b"\x89PNG\r\n\x1a\npage-one"
        child_bytes = bytearray(b"\x89PNG\r\n\x1a\nchild")
        await build_processor(client).process_complete_book([page_bytes], child_bytes, "Mia", "T")

        expected = [base64.b64encode(bytes(child_bytes)).decode('utf-8'),
                    base64.b64encode(page_bytes).decode('utf-8')]
        assert client.generate_calls[0][1] == expected

    @pytest.mark.parametrize("pages,child,message", [
        ([12345], "CHILD", "int"),
        (["PAGE1"], {'image': 'CHILD'}, "dict"),
        ([b""], "CHILD", "Page 1 has no image data"),
    ])
    async def test_unsupported_image_payloads_are_rejected(self, build_processor, pages, child, message):
        with pytest.raises(ContractViolationError, match=message):
            await build_processor(FakeImageClient()).process_complete_book(pages, child, "Mia", "T")
