"""
代币缓存服务 HTTP 路由测试（TestClient，不需要真实数据库或网络）

服务上下文在测试中显式构造：内存存储 + 手动时钟 + 假数据源
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider
from token_cache.config import CacheServiceSettings
from token_cache.layers.clock import ManualClock
from token_cache.models.entities import NAMESPACE_PRICES, NAMESPACE_TOKENS
from token_cache.services.context import build_context

SOL = "So11111111111111111111111111111111111111112"


def _settings(**overrides) -> CacheServiceSettings:
    values = dict(
        BACKGROUND_ENABLED=False,
        MONGODB_ENABLED=False,
        REDIS_ENABLED=False,
        JUPITER_REQUESTS_PER_WINDOW=3,
        MAX_LOOKUP_KEYS=5,
    )
    values.update(overrides)
    return CacheServiceSettings(**values)


@pytest.fixture
def context():
    providers = {
        NAMESPACE_PRICES: [FakeProvider()],
        NAMESPACE_TOKENS: [FakeProvider(
            name="fake_token",
            values={SOL: {"address": SOL, "symbol": "SOL", "name": "Wrapped SOL", "decimals": 9}},
        )],
    }
    return asyncio.run(build_context(_settings(), clock=ManualClock(), providers=providers))


@pytest.fixture
def client(context):
    from token_cache.main import create_app
    with TestClient(create_app(context=context)) as c:
        yield c


# ─────────────────────────────────────────────────────────
# 1. 健康检查
# ─────────────────────────────────────────────────────────

class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["backend"] == "memory"
        assert body["data"]["databases"]["mongodb"]["status"] == "disabled"

    def test_healthz_endpoint(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_readyz_endpoint(self, client):
        resp = client.get("/readyz")
        assert resp.status_code == 200
        assert resp.json()["ready"] is True

    def test_root_endpoint(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        body = resp.json()
        assert "version" in body
        assert "docs" in body
        assert "X-Process-Time" in resp.headers

    def test_unhandled_error_uses_envelope(self, context):
        from token_cache.main import create_app
        app = create_app(context=context)

        @app.get("/boom")
        async def boom():
            raise RuntimeError("boom")

        with TestClient(app, raise_server_exceptions=False) as c:
            resp = c.get("/boom")
        assert resp.status_code == 500
        assert resp.json() == {
            "success": False,
            "data": None,
            "message": "boom",
            "error": "内部服务错误",
        }


# ─────────────────────────────────────────────────────────
# 2. 查询路由
# ─────────────────────────────────────────────────────────

class TestLookupRoutes:
    def test_cold_lookup_returns_synthetic_values(self, client):
        resp = client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": [SOL, "Xmint"]})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["count"] == 2
        assert data["cache_status"] == "UNAVAILABLE"
        assert set(data["missing_keys"]) == {SOL, "Xmint"}
        sources = {v["key"]: v["source"] for v in data["values"]}
        assert sources == {SOL: "static", "Xmint": "generated"}
        assert data["refresh_job_id"]

    def test_lookup_after_refresh_is_fresh(self, client):
        resp = client.post(f"/api/refresh/{NAMESPACE_PRICES}", json={"specific_keys": ["a", "b"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["updated"] == 2

        resp = client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": ["a", "b", "a"]})
        data = resp.json()["data"]
        assert data["cache_status"] == "FRESH"
        assert data["source"] == "cache"
        assert data["count"] == 3
        assert data["missing_keys"] == []
        assert all(v["confidence"] == 0.9 for v in data["values"])

    def test_tokens_namespace(self, client):
        client.post(f"/api/refresh/{NAMESPACE_TOKENS}", json={"specific_keys": [SOL]})
        resp = client.post(f"/api/lookup/{NAMESPACE_TOKENS}", json={"keys": [SOL]})
        value = resp.json()["data"]["values"][0]
        assert value["value"]["symbol"] == "SOL"
        assert value["provider"] == "fake_token"

    def test_empty_keys(self, client):
        resp = client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": []})
        assert resp.status_code == 200
        assert resp.json()["data"]["count"] == 0

    @pytest.mark.parametrize("body", [
        {"keys": "not-a-list"},
        {"keys": [""]},
        {"keys": [1, {"a": 2}]},
        {},
    ])
    def test_malformed_input_is_rejected(self, client, body):
        resp = client.post(f"/api/lookup/{NAMESPACE_PRICES}", json=body)
        assert resp.status_code == 422

    def test_too_many_keys(self, client):
        resp = client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": [f"k{i}" for i in range(6)]})
        assert resp.status_code == 422

    def test_unknown_namespace(self, client):
        resp = client.post("/api/lookup/nfts", json={"keys": ["a"]})
        assert resp.status_code == 404


# ─────────────────────────────────────────────────────────
# 3. 刷新路由
# ─────────────────────────────────────────────────────────

class TestRefreshRoutes:
    def test_out_of_budget_returns_429(self, client):
        resp = client.post(f"/api/refresh/{NAMESPACE_PRICES}", json={"specific_keys": ["a", "b", "c"]})
        assert resp.status_code == 200

        resp = client.post(f"/api/refresh/{NAMESPACE_PRICES}", json={"specific_keys": ["d"]})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "3600"
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "rate_limited"
        assert body["data"]["next_available_time"]
        assert body["data"]["processed"] == 0

    def test_enqueue_without_drain(self, client):
        resp = client.post(
            f"/api/refresh/{NAMESPACE_PRICES}",
            json={"specific_keys": ["a"], "drain_now": False, "priority": "HIGH"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["drained"] is False
        assert data["enqueued"] == 1

        jobs = client.get("/api/cache/jobs").json()["data"]["jobs"]
        assert jobs[0]["priority"] == "HIGH"
        assert jobs[0]["status"] == "PENDING"

    def test_invalid_priority(self, client):
        resp = client.post(f"/api/refresh/{NAMESPACE_PRICES}", json={"priority": "URGENT"})
        assert resp.status_code == 422

    def test_unknown_namespace(self, client):
        resp = client.post("/api/refresh/nfts", json={})
        assert resp.status_code == 404


# ─────────────────────────────────────────────────────────
# 4. 缓存管理路由
# ─────────────────────────────────────────────────────────

class TestCacheRoutes:
    def test_health_snapshot(self, client):
        client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": ["a"]})
        resp = client.get("/api/cache/health", params={"history": 5})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total_requests"] == 1
        assert data["status"] in ("healthy", "degraded", "unhealthy")
        assert 0 <= data["overall_score"] <= 100
        assert len(data["history"]) == 1

    def test_stats(self, client):
        client.post(f"/api/refresh/{NAMESPACE_PRICES}", json={"specific_keys": ["a"]})
        client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": ["a", "b"]})
        data = client.get("/api/cache/stats").json()["data"]
        assert data["backend"] == "memory"
        assert data["namespaces"][NAMESPACE_PRICES]["fresh"] == 1
        assert data["namespaces"][NAMESPACE_PRICES]["history_records"] == 1
        assert data["namespaces"][NAMESPACE_TOKENS]["total"] == 0
        assert data["lookups"]["key_hits"] == 1
        assert data["lookups"]["key_misses"] == 1
        assert data["jobs"]["COMPLETED"] == 1
        assert data["jobs"]["PENDING"] == 1

    def test_jobs_listing(self, client):
        client.post(f"/api/lookup/{NAMESPACE_PRICES}", json={"keys": ["x", "y"]})
        data = client.get("/api/cache/jobs", params={"limit": 10}).json()["data"]
        assert data["count"] == 1
        assert set(data["jobs"][0]["keys"]) == {"x", "y"}
