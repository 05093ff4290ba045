"""Tests for batch sequencing, continuity references and batch fault isolation."""

import pytest

from book_personalizer.batch_orchestrator import BatchOrchestrator, partition
from book_personalizer.cancellation import CancellationToken
from book_personalizer.character_mapper import map_characters
from book_personalizer.exceptions import ContractViolationError, RunCancelledError
from book_personalizer.models import PageMapping, PageRecord
from book_personalizer.page_generator import PageImageGenerator
from tests.conftest import FakeImageClient, http_error


def make_mappings(count):
    return map_characters([PageRecord(page_number=n, page_image=f"PAGE{n}") for n in range(1, count + 1)])


class RecordingGenerator(PageImageGenerator):
    """Real generator that remembers the continuity reference of each call."""

    def __init__(self, *args, explode_on=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.references = {}
        self.explode_on = set(explode_on)

    async def generate(self, mapping, child_image, child_name, previous_page=None, token=None):
        if mapping.page_number in self.explode_on:
            raise RuntimeError(f"unexpected failure on page {mapping.page_number}")
        self.references[mapping.page_number] = previous_page.page_number if previous_page else None
        return await super().generate(mapping, child_image, child_name, previous_page, token)


@pytest.fixture
def build_orchestrator(rate_limiter, retry_policy, fake_sleep):
    def _build(client, batch_size=3, explode_on=()):
        generator = RecordingGenerator(client, rate_limiter, retry_policy, sleep=fake_sleep, explode_on=explode_on)
        orchestrator = BatchOrchestrator(generator, batch_size=batch_size, inter_page_delay_ms=2000,
                                         inter_batch_delay_ms=3000, sleep=fake_sleep)
        return orchestrator, generator
    return _build


@pytest.mark.unit
class TestPartition:

    def test_contiguous_batches(self):
        batches = partition(make_mappings(7), 3)
        assert [[m.page_number for m in batch] for batch in batches] == [[1, 2, 3], [4, 5, 6], [7]]

    def test_empty_input(self):
        assert partition([], 3) == []

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            partition(make_mappings(2), 0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestBatchOrchestrator:

    async def test_results_in_page_order(self, build_orchestrator):
        orchestrator, _ = build_orchestrator(FakeImageClient(), batch_size=2)
        results = await orchestrator.process(make_mappings(5), "CHILD", "Mia")

        assert [r.page_number for r in results] == [1, 2, 3, 4, 5]
        assert all(r.success for r in results)

    async def test_pages_processed_sequentially_in_order(self, build_orchestrator):
        client = FakeImageClient()
        orchestrator, _ = build_orchestrator(client, batch_size=3)
        await orchestrator.process(make_mappings(4), "CHILD", "Mia")

        assert [images[-1] for _, images in client.generate_calls] == ["PAGE1", "PAGE2", "PAGE3", "PAGE4"]

    async def test_inter_page_and_inter_batch_delays(self, build_orchestrator, fake_sleep):
        orchestrator, _ = build_orchestrator(FakeImageClient(), batch_size=2)
        await orchestrator.process(make_mappings(5), "CHILD", "Mia")

        # Batches [1,2] [3,4] [5]: page gaps inside batches, batch gaps between, none at the end.
        # The fixed delays already cover the 1000ms limiter spacing.
        assert fake_sleep.calls == [2000, 3000, 2000, 3000]

    async def test_continuity_reference_is_last_successful_page(self, build_orchestrator):
        failing_pages = {"PAGE2", "PAGE4"}
        client = FakeImageClient(generate=lambda p, images, n: http_error(400) if images[-1] in failing_pages else "NEW")
        orchestrator, generator = build_orchestrator(client, batch_size=3)
        await orchestrator.process(make_mappings(5), "CHILD", "Mia")

        # Page 3 skips failed page 2; page 5 skips failed page 4 and reaches back across the batch boundary
        assert generator.references == {1: None, 2: 1, 3: 1, 4: 3, 5: 3}

    async def test_batch_exception_degrades_whole_batch_and_run_continues(self, build_orchestrator):
        client = FakeImageClient()
        orchestrator, _ = build_orchestrator(client, batch_size=2, explode_on={3})
        results = await orchestrator.process(make_mappings(5), "CHILD", "Mia")

        assert len(results) == 5
        by_page = {r.page_number: r for r in results}
        for page in (1, 2, 5):
            assert by_page[page].success is True
        for page in (3, 4):
            assert by_page[page].success is False
            assert by_page[page].used_original is True
            assert by_page[page].processed_image == f"PAGE{page}"
            assert "unexpected failure" in by_page[page].error
        # Page 4 never reached the API
        assert client.calls_for("PAGE4") == []

    async def test_batch_exception_discards_partial_batch_results(self, build_orchestrator):
        orchestrator, _ = build_orchestrator(FakeImageClient(), batch_size=3, explode_on={2})
        results = await orchestrator.process(make_mappings(3), "CHILD", "Mia")

        assert [r.used_original for r in results] == [True, True, True]

    async def test_contract_violation_is_not_absorbed(self, build_orchestrator):
        orchestrator, generator = build_orchestrator(FakeImageClient())
        mappings = make_mappings(2)
        broken = PageMapping(page=PageRecord(page_number=2, page_image=""), character=mappings[1].character)

        with pytest.raises(ContractViolationError):
            await orchestrator.process([mappings[0], broken], "CHILD", "Mia")

    async def test_cancellation_stops_at_next_suspension(self, build_orchestrator, fake_sleep):
        client = FakeImageClient()
        orchestrator, _ = build_orchestrator(client, batch_size=3)
        token = CancellationToken()
        fake_sleep.on_sleep = lambda count: token.cancel("test")

        with pytest.raises(RunCancelledError):
            await orchestrator.process(make_mappings(3), "CHILD", "Mia", token=token)
        assert len(client.generate_calls) == 1
