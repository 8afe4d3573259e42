"""
代币缓存服务单元测试（基础层）

覆盖范围：
  - 配置模块（服务发现、环境变量解析）
  - 数据实体（新鲜度边界、限流窗口）
  - 限流层（窗口计数、窗口重置、状态不可读时放行）
  - 数据获取层（Jupiter / CoinGecko 响应映射与错误分类）
  - 缓存 / 历史存储
  - 合成数据兜底
  - 定时调度抽象
  - 健康聚合
  - API 响应模型
"""

import asyncio
import os
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from token_cache.layers.acquisition import (
    SOURCE_JUPITER,
    CoinGeckoPriceProvider,
    CoinGeckoTokenProvider,
    JupiterPriceProvider,
    JupiterTokenProvider,
    Malformed,
    NotFound,
    RateLimited,
    Unreachable,
    UpstreamStats,
    build_providers,
)
from token_cache.layers.fallback import (
    GENERATED_CONFIDENCE,
    STATIC_CONFIDENCE,
    STATIC_TOKENS,
    SyntheticGenerator,
)
from token_cache.layers.health import HealthAggregator, composite_score, health_status
from token_cache.layers.ratelimit import RateLimitBackend, RateLimiter
from token_cache.layers.resolver import LookupStats
from token_cache.layers.ticker import TICK, WAKE, PeriodicTask, Ticker
from token_cache.models.entities import (
    NAMESPACE_PRICES,
    NAMESPACE_TOKENS,
    CacheEntry,
    HistoryRecord,
    RateLimitWindow,
    ValueSource,
)

SOL = "So11111111111111111111111111111111111111112"
UNKNOWN = "UnknownMint1111111111111111111111111111111"


def _entry(clock, key, ttl=120, namespace=NAMESPACE_PRICES, price=1.0):
    now = clock.now()
    return CacheEntry(
        namespace=namespace,
        key=key,
        value={"address": key, "price": price},
        source=ValueSource.PRIMARY_PROVIDER,
        confidence=0.9,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
        provider="fake_price",
    )


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        """默认配置不依赖外部服务即可实例化"""
        from token_cache.config import CacheServiceSettings
        s = CacheServiceSettings()
        assert s.PORT == 8002
        assert s.MONGODB_DATABASE == "tokenwars"
        assert s.JUPITER_REQUESTS_PER_WINDOW == 100
        assert s.COINGECKO_REQUESTS_PER_WINDOW == 30
        assert s.RATE_LIMIT_WINDOW_MINUTES == 60
        assert s.REFRESH_SUB_BATCH_SIZE == 5

    def test_mongo_uri_with_auth(self):
        from token_cache.config import CacheServiceSettings
        s = CacheServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="mydb",
        )
        assert "user:pass@db-host:27017/mydb" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from token_cache.config import CacheServiceSettings
        s = CacheServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_env_override(self):
        from token_cache.config import CacheServiceSettings
        with patch.dict(os.environ, {"PRICE_CACHE_TTL": "30", "COINGECKO_API_KEY": "k"}):
            s = CacheServiceSettings()
        assert s.PRICE_CACHE_TTL == 30
        assert s.COINGECKO_API_KEY == "k"

    def test_docker_service_discovery(self):
        """Docker 环境下默认使用服务名而非 localhost"""
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from token_cache import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"


# ─────────────────────────────────────────────────────────
# 2. 数据实体测试
# ─────────────────────────────────────────────────────────

class TestEntities:
    def test_expiry_must_follow_creation(self, clock):
        now = clock.now()
        with pytest.raises(ValueError):
            CacheEntry(
                namespace=NAMESPACE_PRICES, key="a", source=ValueSource.STATIC,
                confidence=0.5, created_at=now, expires_at=now,
            )

    def test_expires_at_equal_now_is_not_fresh(self, clock):
        entry = _entry(clock, "a", ttl=60)
        clock.advance(59)
        assert entry.is_fresh(clock.now())
        clock.advance(1)
        assert not entry.is_fresh(clock.now())

    def test_rate_limit_window_derived_fields(self, clock):
        window = RateLimitWindow(
            source=SOURCE_JUPITER, window_start=clock.now(), window_seconds=3600,
            requests_made=5, requests_limit=5,
        )
        assert window.is_limited
        assert window.window_end == clock.now() + timedelta(hours=1)
        assert window.to_dict()["is_limited"] is True


# ─────────────────────────────────────────────────────────
# 3. 限流层测试
# ─────────────────────────────────────────────────────────

class _BrokenBackend(RateLimitBackend):
    async def acquire(self, *args):
        raise ConnectionError("redis down")

    async def add(self, *args):
        raise ConnectionError("redis down")

    async def peek(self, *args):
        raise ConnectionError("redis down")


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_denies_once_limit_reached(self, make_limiter):
        limiter = make_limiter(limit=3)
        results = [await limiter.try_acquire(SOURCE_JUPITER) for _ in range(5)]
        assert [r.allowed for r in results] == [True, True, True, False, False]
        window = await limiter.peek(SOURCE_JUPITER)
        assert window.requests_made == 3
        assert window.is_limited

    @pytest.mark.asyncio
    async def test_retry_after_points_to_window_end(self, make_limiter, clock):
        limiter = make_limiter(limit=1)
        await limiter.try_acquire(SOURCE_JUPITER)
        clock.advance(600)
        decision = await limiter.try_acquire(SOURCE_JUPITER)
        assert not decision.allowed
        assert decision.retry_after == timedelta(minutes=50)

    @pytest.mark.asyncio
    async def test_window_resets_after_duration(self, make_limiter, clock):
        limiter = make_limiter(limit=2)
        await limiter.try_acquire(SOURCE_JUPITER)
        await limiter.try_acquire(SOURCE_JUPITER)
        assert not (await limiter.try_acquire(SOURCE_JUPITER)).allowed
        clock.advance(3600)
        assert (await limiter.try_acquire(SOURCE_JUPITER)).allowed
        assert (await limiter.peek(SOURCE_JUPITER)).requests_made == 1

    @pytest.mark.asyncio
    async def test_cost_larger_than_remaining_is_denied(self, make_limiter):
        limiter = make_limiter(limit=5)
        assert (await limiter.try_acquire(SOURCE_JUPITER, cost=4)).allowed
        assert not (await limiter.try_acquire(SOURCE_JUPITER, cost=2)).allowed
        assert (await limiter.try_acquire(SOURCE_JUPITER, cost=1)).allowed

    @pytest.mark.asyncio
    async def test_record_usage_counts_calls(self, make_limiter):
        limiter = make_limiter(limit=10)
        await limiter.record_usage(SOURCE_JUPITER, 4)
        assert (await limiter.peek(SOURCE_JUPITER)).requests_made == 4

    @pytest.mark.asyncio
    async def test_unreadable_state_fails_open(self, clock):
        limiter = RateLimiter(_BrokenBackend(), {SOURCE_JUPITER: 1}, 3600, clock)
        decision = await limiter.try_acquire(SOURCE_JUPITER)
        assert decision.allowed
        assert decision.degraded
        # 计数写失败只记录日志
        await limiter.record_usage(SOURCE_JUPITER)
        assert await limiter.has_budget(SOURCE_JUPITER)

    @pytest.mark.asyncio
    async def test_next_available(self, make_limiter, clock):
        limiter = make_limiter(limit=1)
        start = clock.now()
        await limiter.try_acquire(SOURCE_JUPITER)
        assert await limiter.next_available([SOURCE_JUPITER]) == start + timedelta(hours=1)

    def test_unknown_source(self, make_limiter):
        with pytest.raises(KeyError):
            make_limiter().limit_for("NOPE")


# ─────────────────────────────────────────────────────────
# 4. 数据获取层测试
# ─────────────────────────────────────────────────────────

class TestProviders:
    @pytest.mark.asyncio
    async def test_jupiter_price_success(self):
        def handler(request):
            assert request.url.params["ids"] == SOL
            return httpx.Response(200, json={"data": {SOL: {"id": SOL, "price": "172.5"}}})

        async with _mock_client(handler) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            value = await provider.fetch(SOL)
        assert value == {"address": SOL, "price": 172.5}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (404, NotFound),
        (429, RateLimited),
        (500, Unreachable),
        (503, Unreachable),
    ])
    async def test_http_status_mapping(self, status, error):
        async with _mock_client(lambda request: httpx.Response(status)) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            with pytest.raises(error):
                await provider.fetch(SOL)

    @pytest.mark.asyncio
    async def test_transport_error_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _mock_client(handler) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            with pytest.raises(Unreachable) as exc_info:
                await provider.fetch(SOL)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_bad_json_is_malformed(self):
        async with _mock_client(lambda request: httpx.Response(200, text="<html>")) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            with pytest.raises(Malformed) as exc_info:
                await provider.fetch(SOL)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_key_in_body_is_not_found(self):
        async with _mock_client(lambda request: httpx.Response(200, json={"data": {}})) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            with pytest.raises(NotFound):
                await provider.fetch(SOL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["NaN", "Infinity", "-inf"])
    async def test_non_finite_price_is_malformed(self, price):
        body = {"data": {SOL: {"id": SOL, "price": price}}}
        async with _mock_client(lambda request: httpx.Response(200, json=body)) as client:
            provider = JupiterPriceProvider(client, "https://price.test/v2")
            with pytest.raises(Malformed):
                await provider.fetch(SOL)

    @pytest.mark.asyncio
    async def test_coingecko_infinite_price_is_malformed(self):
        raw = ('{"%s": {"usd": Infinity, "usd_market_cap": 1.0}}' % SOL.lower()).encode()

        def handler(request):
            return httpx.Response(200, content=raw, headers={"content-type": "application/json"})

        async with _mock_client(handler) as client:
            provider = CoinGeckoPriceProvider(client, "https://cg.test/api/v3", "demo-key")
            with pytest.raises(Malformed):
                await provider.fetch(SOL)

    @pytest.mark.asyncio
    async def test_coingecko_token_bad_platforms_is_malformed(self):
        body = {"id": "wrapped-solana", "symbol": "sol", "name": "Wrapped SOL",
                "detail_platforms": ["solana"], "market_data": {}}
        async with _mock_client(lambda request: httpx.Response(200, json=body)) as client:
            provider = CoinGeckoTokenProvider(client, "https://cg.test/api/v3", "demo-key")
            with pytest.raises(Malformed) as exc_info:
                await provider.fetch(SOL)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_jupiter_token_mapping(self):
        body = {"address": SOL, "symbol": "SOL", "name": "Wrapped SOL", "decimals": 9,
                "logoURI": "https://logo", "tags": ["verified"], "daily_volume": 1000.0}

        def handler(request):
            assert request.url.path.endswith(f"/token/{SOL}")
            return httpx.Response(200, json=body)

        async with _mock_client(handler) as client:
            provider = JupiterTokenProvider(client, "https://tokens.test/v1/token/")
            value = await provider.fetch(SOL)
        assert value["symbol"] == "SOL"
        assert value["decimals"] == 9
        assert value["logo_uri"] == "https://logo"

    @pytest.mark.asyncio
    async def test_coingecko_sends_api_key(self):
        def handler(request):
            assert request.headers["x-cg-demo-api-key"] == "demo-key"
            return httpx.Response(200, json={SOL.lower(): {
                "usd": 170.0, "usd_market_cap": 1e9, "usd_24h_vol": 5e6, "usd_24h_change": -1.5,
            }})

        async with _mock_client(handler) as client:
            provider = CoinGeckoPriceProvider(client, "https://cg.test/api/v3", "demo-key")
            value = await provider.fetch(SOL)
        assert value["price"] == 170.0
        assert value["price_change_24h"] == -1.5
        assert provider.value_source == ValueSource.SECONDARY_PROVIDER

    @pytest.mark.asyncio
    async def test_build_providers_order(self):
        from token_cache.config import CacheServiceSettings
        async with httpx.AsyncClient() as client:
            without_key = build_providers(CacheServiceSettings(COINGECKO_API_KEY=""), client)
            with_key = build_providers(CacheServiceSettings(COINGECKO_API_KEY="k"), client)
        assert [p.name for p in without_key[NAMESPACE_PRICES]] == ["jupiter_price"]
        assert [p.name for p in with_key[NAMESPACE_PRICES]] == ["jupiter_price", "coingecko_price"]
        assert [p.name for p in with_key[NAMESPACE_TOKENS]] == ["jupiter_token", "coingecko_token"]

    def test_upstream_stats(self):
        stats = UpstreamStats()
        assert stats.success_rate("jupiter_price") is None
        stats.record_success("jupiter_price", 10)
        stats.record_failure("jupiter_price", NotFound.kind, 5)
        assert stats.success_rate("jupiter_price") == 0.5
        summary = stats.summary()["jupiter_price"]
        assert summary["failures"] == {"not_found": 1}
        assert summary["avg_response_time_ms"] == 7.5


# ─────────────────────────────────────────────────────────
# 5. 缓存 / 历史存储测试
# ─────────────────────────────────────────────────────────

class TestCacheStore:
    @pytest.mark.asyncio
    async def test_get_fresh_excludes_expired(self, cache_store, clock):
        await cache_store.upsert(_entry(clock, "a", ttl=60))
        await cache_store.upsert(_entry(clock, "b", ttl=120))
        clock.advance(60)
        fresh = await cache_store.get_fresh(NAMESPACE_PRICES, ["a", "b", "c"], clock.now())
        assert set(fresh) == {"b"}
        # 过期条目仍可读
        assert set(await cache_store.get_many(NAMESPACE_PRICES, ["a", "b"])) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_upsert_last_writer_wins(self, cache_store, clock):
        await cache_store.upsert(_entry(clock, "a", price=1.0))
        await cache_store.upsert(_entry(clock, "a", price=2.0))
        entry = (await cache_store.get_many(NAMESPACE_PRICES, ["a"]))["a"]
        assert entry.value["price"] == 2.0

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, cache_store, clock):
        await cache_store.upsert(_entry(clock, "a"))
        assert await cache_store.get_fresh(NAMESPACE_TOKENS, ["a"], clock.now()) == {}

    @pytest.mark.asyncio
    async def test_stale_keys_oldest_first(self, cache_store, clock):
        await cache_store.upsert(_entry(clock, "late", ttl=100))
        await cache_store.upsert(_entry(clock, "early", ttl=50))
        await cache_store.upsert(_entry(clock, "fresh", ttl=1000))
        clock.advance(200)
        assert await cache_store.stale_keys(NAMESPACE_PRICES, clock.now(), 10) == ["early", "late"]
        assert await cache_store.stale_keys(NAMESPACE_PRICES, clock.now(), 1) == ["early"]

    @pytest.mark.asyncio
    async def test_freshness_counts(self, cache_store, clock):
        await cache_store.upsert(_entry(clock, "fresh", ttl=7200))
        await cache_store.upsert(_entry(clock, "stale", ttl=3000))
        await cache_store.upsert(_entry(clock, "expired", ttl=1))
        clock.advance(3100)
        counts = await cache_store.freshness_counts(clock.now(), timedelta(minutes=50))
        assert counts == {"fresh": 1, "stale": 1, "expired": 1, "total": 3}


class TestHistoryStore:
    def _record(self, clock, key, price):
        return HistoryRecord(
            namespace=NAMESPACE_PRICES, key=key, value={"price": price},
            source=ValueSource.PRIMARY_PROVIDER, provider="fake_price", observed_at=clock.now(),
        )

    @pytest.mark.asyncio
    async def test_latest_within_window(self, history_store, clock):
        await history_store.append(self._record(clock, "a", 1.0))
        clock.advance(600)
        await history_store.append(self._record(clock, "a", 2.0))
        clock.advance(600)
        latest = await history_store.latest(NAMESPACE_PRICES, ["a", "b"], clock.now() - timedelta(hours=1))
        assert set(latest) == {"a"}
        assert latest["a"].value["price"] == 2.0

    @pytest.mark.asyncio
    async def test_old_records_ignored(self, history_store, clock):
        await history_store.append(self._record(clock, "a", 1.0))
        clock.advance(7200)
        assert await history_store.latest(NAMESPACE_PRICES, ["a"], clock.now() - timedelta(hours=1)) == {}

    @pytest.mark.asyncio
    async def test_prune(self, history_store, clock):
        await history_store.append(self._record(clock, "a", 1.0))
        clock.advance(3600)
        await history_store.append(self._record(clock, "a", 2.0))
        removed = await history_store.prune(clock.now() - timedelta(minutes=30))
        assert removed == 1
        assert await history_store.count() == 1


# ─────────────────────────────────────────────────────────
# 6. 合成数据测试
# ─────────────────────────────────────────────────────────

class TestSyntheticGenerator:
    def test_static_reference_with_jitter(self, clock):
        gen = SyntheticGenerator(NAMESPACE_PRICES, clock)
        entry = gen.generate(SOL)
        reference = STATIC_TOKENS[SOL]["price"]
        assert entry.source == ValueSource.STATIC
        assert entry.confidence == STATIC_CONFIDENCE
        assert reference * 0.98 <= entry.value["price"] <= reference * 1.02

    def test_generated_is_deterministic(self, clock):
        gen = SyntheticGenerator(NAMESPACE_PRICES, clock)
        first, second = gen.generate(UNKNOWN), gen.generate(UNKNOWN)
        assert first.source == ValueSource.GENERATED
        assert first.confidence == GENERATED_CONFIDENCE
        assert first.value == second.value

    def test_tokens_namespace_carries_metadata(self, clock):
        entry = SyntheticGenerator(NAMESPACE_TOKENS, clock).generate(SOL)
        assert entry.value["symbol"] == "SOL"
        assert entry.value["decimals"] == 9


# ─────────────────────────────────────────────────────────
# 7. 定时调度抽象测试
# ─────────────────────────────────────────────────────────

class TestTicker:
    @pytest.mark.asyncio
    async def test_tick_advances_virtual_time(self, clock):
        ticker = Ticker(30, clock)
        assert await ticker.wait() == TICK
        assert clock.sleeps == [30]

    @pytest.mark.asyncio
    async def test_wake_short_circuits(self, clock):
        ticker = Ticker(30, clock)
        ticker.wake()
        assert await ticker.wait() == WAKE
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_periodic_task_survives_callback_errors(self, clock):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("flaky", Ticker(1, clock), flaky)
        await task.run_once()
        assert task.runs == 1

        task.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0)
        assert task.running
        await task.stop()
        assert not task.running
        assert len(calls) >= 2


# ─────────────────────────────────────────────────────────
# 8. 健康聚合测试
# ─────────────────────────────────────────────────────────

class TestHealth:
    def test_composite_score_weights(self):
        assert composite_score(100, 100, 100) == 100.0
        assert composite_score(50, 100, 0) == 50.0
        assert composite_score(0, 0, 100) == 30.0

    def test_status_thresholds(self):
        assert health_status(85) == "healthy"
        assert health_status(60) == "degraded"
        assert health_status(10) == "unhealthy"

    def _aggregator(self, clock, cache_store, history_store, job_store, limiter, stats, upstream):
        return HealthAggregator(
            cache_store, history_store, job_store, limiter, stats, upstream,
            provider_sources={"jupiter_price": SOURCE_JUPITER}, clock=clock,
        )

    @pytest.mark.asyncio
    async def test_sample_empty_cache(self, clock, cache_store, history_store, job_store, make_limiter):
        agg = self._aggregator(
            clock, cache_store, history_store, job_store, make_limiter(), LookupStats(), UpstreamStats()
        )
        snapshot = await agg.sample()
        assert snapshot.cache_efficiency == 0.0
        assert snapshot.upstream_health == 100.0
        assert snapshot.data_freshness == 0.0
        assert snapshot.overall_score == 30.0
        assert agg.latest is snapshot

    @pytest.mark.asyncio
    async def test_sample_reflects_freshness_and_limits(
        self, clock, cache_store, history_store, job_store, make_limiter
    ):
        await cache_store.upsert(_entry(clock, "fresh", ttl=600))
        await cache_store.upsert(_entry(clock, "old", ttl=60))
        limiter = make_limiter(limit=1)
        await limiter.try_acquire(SOURCE_JUPITER)
        clock.advance(120)

        upstream = UpstreamStats()
        upstream.record_success("jupiter_price", 10)
        agg = self._aggregator(
            clock, cache_store, history_store, job_store, limiter, LookupStats(), upstream
        )
        snapshot = await agg.sample()
        assert snapshot.fresh_count == 1
        assert snapshot.stale_count == 1
        assert snapshot.data_freshness == 50.0
        # JUPITER 已限流，COINGECKO 正常
        assert snapshot.upstream_health == 50.0
        assert snapshot.overall_score == composite_score(0, 50, 50)
        assert len(agg.history()) == 1


# ─────────────────────────────────────────────────────────
# 9. API 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from token_cache.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"}, message="done")
        assert r.success is True
        assert r.data == {"key": "value"}
        assert r.error is None

    def test_fail_with_data(self):
        from token_cache.models.response import ApiResponse
        r = ApiResponse.fail(error="rate_limited", data={"retry_after_seconds": 60})
        assert r.success is False
        assert r.error == "rate_limited"
        assert r.data["retry_after_seconds"] == 60
