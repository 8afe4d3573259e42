"""
测试公共夹具：内存存储、手动时钟、假数据源
所有测试都不依赖网络或数据库
"""

import os
import sys
from datetime import timedelta

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from token_cache.layers.acquisition import SOURCE_COINGECKO, SOURCE_JUPITER, UpstreamProvider  # noqa: E402
from token_cache.layers.cache import MemoryCacheStore  # noqa: E402
from token_cache.layers.clock import ManualClock  # noqa: E402
from token_cache.layers.history import MemoryHistoryStore  # noqa: E402
from token_cache.layers.jobs import MemoryJobStore  # noqa: E402
from token_cache.layers.ratelimit import MemoryRateLimitBackend, RateLimiter  # noqa: E402
from token_cache.layers.scheduler import RefreshScheduler  # noqa: E402
from token_cache.models.entities import NAMESPACE_PRICES, ValueSource  # noqa: E402


class FakeProvider(UpstreamProvider):
    """按 key 返回预置值或抛出预置错误，并记录调用顺序"""

    name = "fake_price"
    source = SOURCE_JUPITER
    namespace = NAMESPACE_PRICES
    value_source = ValueSource.PRIMARY_PROVIDER
    confidence = 0.9

    def __init__(self, values=None, errors=None, name=None, source=None):
        super().__init__(client=None, timeout=5.0)
        self.values = values or {}
        self.errors = errors or {}
        self.calls = []
        if name:
            self.name = name
        if source:
            self.source = source

    async def fetch(self, key):
        self.calls.append(key)
        if key in self.errors:
            raise self.errors[key](self.name, key)
        return self.values.get(key, {"address": key, "price": 1.0})


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache_store():
    return MemoryCacheStore()


@pytest.fixture
def history_store():
    return MemoryHistoryStore()


@pytest.fixture
def job_store():
    return MemoryJobStore()


@pytest.fixture
def make_limiter(clock):
    def _make(limit=100, secondary_limit=None):
        return RateLimiter(
            MemoryRateLimitBackend(),
            {SOURCE_JUPITER: limit, SOURCE_COINGECKO: secondary_limit or limit},
            window_seconds=3600,
            clock=clock,
        )
    return _make


@pytest.fixture
def make_scheduler(clock, cache_store, history_store, job_store, make_limiter):
    """返回 (scheduler, limiter)；providers 按顺序作为 prices 命名空间的数据源"""
    def _make(*providers, limit=100, **kwargs):
        limiter = make_limiter(limit)
        scheduler = RefreshScheduler(
            cache_store=cache_store,
            history_store=history_store,
            job_store=job_store,
            limiter=limiter,
            providers={NAMESPACE_PRICES: list(providers)},
            ttls={NAMESPACE_PRICES: 120},
            clock=clock,
            retry_delay=kwargs.pop("retry_delay", timedelta(hours=1)),
            **kwargs,
        )
        return scheduler, limiter
    return _make
