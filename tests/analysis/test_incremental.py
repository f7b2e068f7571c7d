"""
Incremental Analysis Tests
==========================

INVARIANTS TESTED:
1. Unchanged content never reaches the model twice
2. A failed item keeps its old moments and is retried on the next run
3. Removed content takes its moments and hash with it
4. Impacted windows are re-correlated from base scores
5. Progress is reported from 10% to 100%, never backwards
6. Content the catalog failed to read is never treated as removed
7. An unexpected error in one source group does not abort the run
"""

import asyncio

from adapter.extractor import MomentExtractor
from adapter.providers.base import ProviderErrorCode
from adapter.providers.mock import MockProvider
from moments.analysis import (
    CatalogGaps,
    ContentHashStore,
    IncrementalMomentManager,
    IncrementalOptions,
    flatten_catalog,
)
from moments.contracts import AnalysisScope, SourceType, StepStatus
from moments.observability import ObservabilityEngine
from moments.storage import HashFileStore, MomentFileStore

from tests.fixtures import (
    FixedClock,
    make_company,
    make_item,
    make_technology,
    moment_payload,
)


BROKEN_MARKER = "BROKEN-PAYLOAD"


def scripted_responder(request):
    if BROKEN_MARKER in request.prompt:
        return "I could not find anything worth reporting."
    return moment_payload()


class Harness:
    """Manager wired to a mock provider and stores under tmp_path."""

    def __init__(self, tmp_path, provider=None, send=None):
        self.provider = provider or MockProvider(responder=scripted_responder)
        self.hashes = ContentHashStore(HashFileStore(tmp_path / "hashes.db"))
        self.store = MomentFileStore(tmp_path / "moments")
        self.observability = ObservabilityEngine()
        self.manager = IncrementalMomentManager(
            self.hashes,
            self.store,
            MomentExtractor(send or self.provider.send_request, clock=FixedClock()),
            observability=self.observability,
            clock=FixedClock(),
        )

    def run(self, companies=(), technologies=(), scope=AnalysisScope.ALL, options=None, gaps=None):
        return asyncio.run(self.manager.analyze_incrementally(
            list(companies), list(technologies), scope, options, gaps
        ))


def openai(*items):
    return make_company("openai", items or (make_item("openai-overview"), make_item("openai-funding")))


class TestFlattenCatalog:

    def test_sources_carry_entity_and_item(self):
        work = flatten_catalog([openai()], [make_technology("langchain", [make_item("langchain-intro")])])
        assert [(i.id, s.type) for i, s in work] == [
            ("openai-overview", SourceType.COMPANY),
            ("openai-funding", SourceType.COMPANY),
            ("langchain-intro", SourceType.TECHNOLOGY),
        ]
        assert work[0][1].content_id == "openai-overview"
        assert work[0][1].name == "Openai"

    def test_scope_filters_entities(self):
        work = flatten_catalog([openai()], [make_technology("langchain", [make_item("langchain-intro")])],
                               AnalysisScope.TECHNOLOGIES)
        assert [i.id for i, _ in work] == ["langchain-intro"]


class TestFirstRun:

    def test_extracts_every_item(self, tmp_path):
        harness = Harness(tmp_path)

        result = harness.run([openai()])

        assert result.success
        assert result.total_processed == 2
        assert sorted(m.id for m in result.moments) == [
            "openai-funding-moment-1", "openai-overview-moment-1",
        ]
        assert result.change_summary.new_items == 2
        assert harness.provider.call_count == 2
        assert len(harness.hashes) == 2
        assert harness.store.status().count == 2

    def test_same_window_moments_are_correlated(self, tmp_path):
        result = Harness(tmp_path).run([openai()])

        assert len(result.correlations) == 1
        for moment in result.moments:
            assert moment.impact.base_score == 80
            assert moment.impact.score == 90
        assert len(result.change_summary.affected_windows) == 1

    def test_empty_array_is_a_successful_run(self, tmp_path):
        harness = Harness(tmp_path, MockProvider(responses=["[]"]))

        result = harness.run([openai(make_item())])

        assert result.success
        assert result.moments == ()
        assert "openai-overview" in harness.hashes


class TestSecondRun:

    def test_unchanged_content_skips_model(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        result = harness.run([openai()])

        assert harness.provider.call_count == 2
        assert result.total_processed == 2
        assert result.change_summary.unchanged_items == 2
        assert len(result.moments) == 2

    def test_modified_item_reextracted(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        changed = make_item("openai-overview", content="# OpenAI\n\nOpenAI raised a new funding round.")
        result = harness.run([openai(changed, make_item("openai-funding"))])

        assert harness.provider.call_count == 3
        assert result.change_summary.modified_items == 1
        assert result.change_summary.affected_moments == 1
        assert sorted(m.id for m in result.moments) == [
            "openai-funding-moment-1", "openai-overview-moment-1",
        ]

    def test_force_full_analysis(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        harness.run([openai()], options=IncrementalOptions(force_full_analysis=True))

        assert harness.provider.call_count == 4

    def test_removed_item_drops_moments_and_hash(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        result = harness.run([openai(make_item("openai-overview"))])

        assert result.change_summary.removed_items == 1
        assert [m.id for m in result.moments] == ["openai-overview-moment-1"]
        assert "openai-funding" not in harness.hashes
        assert harness.store.get("openai-funding-moment-1") is None

    def test_removal_respects_scope(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        result = harness.run([], [], scope=AnalysisScope.TECHNOLOGIES)

        assert result.change_summary.removed_items == 0
        assert len(harness.hashes) == 2


class TestCatalogGaps:

    def test_unloadable_source_type_keeps_everything(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])
        gaps = CatalogGaps(
            source_types=frozenset({SourceType.COMPANY}),
            errors=("Folder not found: /catalog/companies",),
        )

        result = harness.run([], [], gaps=gaps)

        assert result.errors == ("Folder not found: /catalog/companies",)
        assert result.change_summary.removed_items == 0
        assert len(result.moments) == 2
        assert len(harness.hashes) == 2
        assert harness.store.status().count == 2

    def test_unreadable_file_is_unknown_not_removed(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])
        gaps = CatalogGaps(
            paths=frozenset({"companies/openai/openai-funding.md"}),
            errors=("Error reading companies/openai/openai-funding.md: permission denied",),
        )

        result = harness.run([openai(make_item("openai-overview"))], gaps=gaps)

        assert not result.success
        assert result.change_summary.removed_items == 0
        assert "openai-funding" in harness.hashes
        assert harness.store.get("openai-funding-moment-1") is not None

    def test_unreadable_entity_directory(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])

        result = harness.run([], gaps=CatalogGaps(paths=frozenset({"companies/openai"})))

        assert result.change_summary.removed_items == 0
        assert len(harness.hashes) == 2

    def test_other_content_still_removed(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()], [make_technology("langchain", [make_item("langchain-intro")])])
        gaps = CatalogGaps(source_types=frozenset({SourceType.TECHNOLOGY}))

        result = harness.run([openai(make_item("openai-overview"))], gaps=gaps)

        assert result.change_summary.removed_items == 1
        assert "openai-funding" not in harness.hashes
        assert "langchain-intro" in harness.hashes


class TestFailures:

    def test_unexpected_error_isolated_to_its_group(self, tmp_path):
        provider = MockProvider(responder=scripted_responder)

        def send(request):
            if "LangChain" in request.prompt:
                raise RuntimeError("sdk blew up")
            return provider.send_request(request)

        harness = Harness(tmp_path, provider, send=send)
        langchain = make_technology("langchain", [make_item(
            "langchain-intro", content="# LangChain\n\nLangChain shipped agents.",
        )])

        result = harness.run([openai(make_item())], [langchain])

        assert result.errors == ("Failed to process Langchain: sdk blew up",)
        assert [m.id for m in result.moments] == ["openai-overview-moment-1"]
        assert "openai-overview" in harness.hashes
        assert "langchain-intro" not in harness.hashes
        failures = [e for e in harness.observability.get_layer_log("analysis") if e.outcome == "failure"]
        assert [e.action for e in failures] == ["extract_group"]

    def test_unparseable_item_not_committed(self, tmp_path):
        harness = Harness(tmp_path)
        broken = make_item("openai-broken", content=f"# Broken\n\n{BROKEN_MARKER}")

        result = harness.run([openai(make_item("openai-overview"), broken)])

        assert not result.success
        assert len(result.errors) == 1
        assert "no JSON array" in result.errors[0]
        assert "openai-overview" in harness.hashes
        assert "openai-broken" not in harness.hashes

    def test_failed_item_retried_next_run(self, tmp_path):
        harness = Harness(tmp_path)
        broken = make_item("openai-broken", content=f"# Broken\n\n{BROKEN_MARKER}")
        harness.run([openai(make_item("openai-overview"), broken)])

        result = harness.run([openai(make_item("openai-overview"), broken)])

        assert harness.provider.call_count == 3
        assert result.change_summary.new_items == 1

    def test_provider_failure_keeps_previous_moments(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai(make_item())])
        harness.provider.set_failure_mode(ProviderErrorCode.API_ERROR)

        changed = make_item(content="# OpenAI\n\nSomething else happened.")
        result = harness.run([openai(changed)])

        assert len(result.errors) == 1
        assert [m.id for m in result.moments] == ["openai-overview-moment-1"]
        assert harness.store.get("openai-overview-moment-1") is not None

        harness.provider.set_failure_mode(None)
        retried = harness.run([openai(changed)])
        assert retried.success
        assert retried.change_summary.modified_items == 1


class TestCallbacks:

    def test_progress_is_monotonic(self, tmp_path):
        steps = []
        Harness(tmp_path).run([openai()], options=IncrementalOptions(on_progress=steps.append))

        percents = [s.progress for s in steps]
        assert percents[0] == 10
        assert percents[-1] == 100
        assert percents == sorted(percents)
        assert steps[-1].status is StepStatus.COMPLETED

    def test_no_change_run_completes(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])
        steps = []

        harness.run([openai()], options=IncrementalOptions(on_progress=steps.append))

        assert [s.id for s in steps] == ["incremental-assessment", "incremental-complete"]

    def test_agent_activity_per_item(self, tmp_path):
        activities = []
        broken = make_item("openai-broken", content=f"# Broken\n\n{BROKEN_MARKER}")

        Harness(tmp_path).run(
            [openai(make_item("openai-overview"), broken)],
            options=IncrementalOptions(on_agent_activity=activities.append),
        )

        statuses = sorted(a.status.value for a in activities)
        assert statuses == ["completed", "error"]
        assert all(a.agent_name == "moment_extractor" for a in activities)


class TestMaintenance:

    def test_stats_and_clear(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()], options=IncrementalOptions(temporal_window_days=7))

        stats = harness.manager.get_incremental_stats()
        assert stats.tracked_content == 2
        assert stats.temporal_window_days == 7

        harness.manager.clear_content_hashes()
        assert harness.manager.get_incremental_stats().tracked_content == 0
        assert harness.manager.get_incremental_stats().to_dict()["lastUpdate"] is None

    def test_audit_trail_written(self, tmp_path):
        harness = Harness(tmp_path)
        harness.run([openai()])
        actions = [e.action for e in harness.observability.get_layer_log("analysis")]
        assert actions == ["change_assessment", "incremental_analysis"]
