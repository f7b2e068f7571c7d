"""
API Server Tests
================

INVARIANTS TESTED:
1. Endpoints answer 503 until the engine is initialized
2. An analysis run is visible through the moment endpoints
3. Unchanged content is not sent to the provider again
4. Missing moments are 404, invalid bodies 422, unhealthy switches 409
5. Concurrent analysis requests run one at a time
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from adapter.providers.base import ProviderErrorCode
from adapter.providers.mock import MockProvider
from moments.api.server import create_app
from moments.config import MomentsConfig
from moments.engine import MomentsEngine
from moments.observability import ObservabilityEngine

from tests.fixtures import FixedClock, make_mock_factory, moment_payload


MOMENT_ID = "open-ai-overview-moment-1"


def build_catalog(root):
    folder = root / "companies" / "open-ai"
    folder.mkdir(parents=True)
    (root / "technologies").mkdir()
    (folder / "overview.md").write_text(
        "---\ntitle: OpenAI Overview\n---\n# OpenAI\n\nOpenAI released GPT-4.\n", encoding="utf-8",
    )


@pytest.fixture
def provider():
    return MockProvider("mock", responses=[moment_payload()])


@pytest.fixture
def engine(tmp_path, provider):
    build_catalog(tmp_path / "catalog")
    config = MomentsConfig.from_dict({
        "provider": {"type": "mock", "fallback": None},
        "monitoring": {"providers": ["mock"]},
    })
    factory = make_mock_factory(
        provider,
        MockProvider("bedrock"),
        MockProvider("anthropic", failure_mode=ProviderErrorCode.AUTH_ERROR),
    )
    return MomentsEngine(
        config,
        root=tmp_path / "catalog",
        data_dir=tmp_path / "data",
        factory=factory,
        observability=ObservabilityEngine(),
        clock=FixedClock(),
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as test_client:
        yield test_client


def analyze(client, **body):
    response = client.post("/api/v1/moments/analyze", json=body)
    assert response.status_code == 200
    return response.json()


class TestLifecycle:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "online"}

    def test_uninitialized_engine(self, engine):
        # without the context manager the lifespan never runs
        client = TestClient(create_app(engine))
        assert client.get("/health").status_code == 503


class TestCatalog:

    def test_status(self, client):
        status = client.get("/api/v1/catalog/status").json()
        assert status["ready"] is True
        assert status["totalItems"] == 1

    def test_companies(self, client):
        body = client.get("/api/v1/companies").json()
        assert body["errors"] == []
        company = body["companies"][0]
        assert company["slug"] == "open-ai"
        assert company["content"][0]["name"] == "OpenAI Overview"

    def test_technologies_missing_folder(self, client, tmp_path):
        (tmp_path / "catalog" / "technologies").rmdir()
        body = client.get("/api/v1/technologies").json()
        assert body["technologies"] == []
        assert body["errors"][0].startswith("Folder not found")


class TestAnalysis:

    def test_analyze_then_list(self, client, provider):
        result = analyze(client)

        assert result["success"] is True
        assert result["changes"]["new"] == 1
        assert [m["id"] for m in result["moments"]] == [MOMENT_ID]
        assert provider.call_count == 1

        listing = client.get("/api/v1/moments").json()
        assert listing["total"] == 1
        assert listing["moments"][0]["impact"]["score"] == 80

    def test_second_run_skips_unchanged(self, client, provider):
        analyze(client)
        result = analyze(client)

        assert result["changes"]["unchanged"] == 1
        assert provider.call_count == 1

    def test_force_full_analysis(self, client, provider):
        analyze(client)
        analyze(client, force_full_analysis=True)
        assert provider.call_count == 2

    def test_scope_without_content(self, client, provider):
        result = analyze(client, scope="technologies")
        assert result["moments"] == []
        assert provider.call_count == 0

    def test_missing_catalog_folder_keeps_moments(self, client, tmp_path):
        analyze(client)
        catalog = tmp_path / "catalog"
        (catalog / "companies").rename(catalog / "companies-moved")

        result = analyze(client)

        assert result["success"] is False
        assert result["errors"][0].startswith("Folder not found")
        assert result["changes"]["removed"] == 0
        assert [m["id"] for m in result["moments"]] == [MOMENT_ID]
        assert client.get("/api/v1/moments").json()["total"] == 1
        assert client.get("/api/v1/moments/status").json()["incremental"]["trackedContent"] == 1

    def test_unreadable_file_keeps_moments(self, client, tmp_path):
        analyze(client)
        overview = tmp_path / "catalog" / "companies" / "open-ai" / "overview.md"
        overview.write_bytes(b"\xff\xfe not utf-8 \xff")

        result = analyze(client)

        assert "Error reading companies/open-ai/overview.md" in result["errors"][0]
        assert result["changes"]["removed"] == 0
        assert client.get("/api/v1/moments").json()["total"] == 1

    @pytest.mark.parametrize("body", [
        {"temporal_window_days": 0},
        {"correlation_threshold": 1.5},
        {"scope": "people"},
    ])
    def test_invalid_body(self, client, body):
        assert client.post("/api/v1/moments/analyze", json=body).status_code == 422


class TestMoments:

    def test_filters(self, client):
        analyze(client)
        assert client.get("/api/v1/moments", params={"min_impact": 90}).json()["total"] == 0
        assert client.get("/api/v1/moments", params={"source": "Open Ai"}).json()["total"] == 1
        assert client.get("/api/v1/moments", params={"source": "Google"}).json()["total"] == 0

    def test_get_and_delete(self, client):
        analyze(client)

        assert client.get(f"/api/v1/moments/{MOMENT_ID}").json()["title"] == "GPT-4 launch"
        assert client.delete(f"/api/v1/moments/{MOMENT_ID}").json() == {"deleted": MOMENT_ID}
        assert client.get(f"/api/v1/moments/{MOMENT_ID}").status_code == 404
        assert client.delete(f"/api/v1/moments/{MOMENT_ID}").status_code == 404

    def test_status_and_clear_hashes(self, client):
        analyze(client)

        status = client.get("/api/v1/moments/status").json()
        assert status["storage"]["count"] == 1
        assert status["incremental"]["trackedContent"] == 1

        assert client.delete("/api/v1/moments/hashes").json() == {"cleared": True}
        assert client.get("/api/v1/moments/status").json()["incremental"]["trackedContent"] == 0

    def test_entity_report(self, client):
        analyze(client)
        report = client.get("/api/v1/moments/entities/report").json()
        assert report["totalCorrelations"] == 3
        assert client.get("/api/v1/moments/entities/report", params={"max_entities": 1}).status_code == 422


class TestProviders:

    def test_status(self, client):
        status = client.get("/api/v1/providers/status").json()
        assert status["primary"] == "mock"
        assert status["fallback"] is None
        assert status["failover"]["currentProvider"] == "mock"
        assert status["cache"] is None

    def test_status_with_health_check(self, client):
        status = client.get("/api/v1/providers/status", params={"check": True}).json()
        assert status["health"]["mock"]["totalChecks"] == 1

    def test_switch(self, client):
        response = client.post("/api/v1/providers/switch", json={"provider": "bedrock"})
        assert response.json() == {"primary": "bedrock", "fallback": None}

    def test_switch_to_unhealthy_provider(self, client):
        response = client.post("/api/v1/providers/switch", json={"provider": "anthropic"})
        assert response.status_code == 409

    def test_status_reports_usage(self, client):
        analyze(client)
        usage = client.get("/api/v1/providers/status").json()["usage"]
        assert usage["overall"]["totalRequests"] == 1
        assert usage["providers"]["mock"]["operationBreakdown"]["analysis"]["totalRequests"] == 1
        assert usage["budget"]["alerts"] == []


class OverlapTracker:
    """Responder that records how many requests were in flight at once."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, request):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return moment_payload()


class TestConcurrency:

    @pytest.fixture
    def tracker(self):
        return OverlapTracker()

    @pytest.fixture
    def provider(self, tracker):
        return MockProvider("mock", responder=tracker)

    def test_analysis_runs_serialized(self, client, provider, tracker):
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(client.post, "/api/v1/moments/analyze", json={"force_full_analysis": True})
                for _ in range(2)
            ]
            responses = [f.result() for f in futures]

        assert [r.status_code for r in responses] == [200, 200]
        assert provider.call_count == 2
        assert tracker.peak == 1

    def test_threadpool_handlers_after_analysis(self, client):
        analyze(client)
        assert client.get("/api/v1/moments").json()["total"] == 1
        assert client.get("/health").json() == {"status": "online"}


class TestAudit:

    def test_audit_report(self, client):
        analyze(client)
        report = client.get("/api/v1/audit").json()
        assert report["total_entries"] > 0
        assert "catalog" in report["by_layer"]
