"""
Layer 1 – 数据获取层
从上游数据提供商（Jupiter / CoinGecko）拉取代币价格与元数据，
统一映射为规范化的值结构，失败时抛出分类明确的 ProviderError。
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional

import httpx

from token_cache.config import CacheServiceSettings
from token_cache.models.entities import (
    NAMESPACE_PRICES,
    NAMESPACE_TOKENS,
    ValueSource,
)

logger = logging.getLogger(__name__)

# ── 限流来源标识 ──────────────────────────────────────────
SOURCE_JUPITER = "JUPITER"
SOURCE_COINGECKO = "COINGECKO"


# ── 错误分类 ──────────────────────────────────────────────

class ProviderError(Exception):
    """上游数据源调用失败"""

    kind = "error"
    retryable = False

    def __init__(self, provider: str, key: str, message: str = ""):
        self.provider = provider
        self.key = key
        self.message = message
        super().__init__(f"[{provider}] {key}: {self.kind} {message}".rstrip())


class NotFound(ProviderError):
    """数据源不认识该 key，本轮不再向该数据源重试"""
    kind = "not_found"


class RateLimited(ProviderError):
    """数据源返回限流，稍后重试"""
    kind = "rate_limited"
    retryable = True


class Unreachable(ProviderError):
    """网络错误或超时，下一轮重试"""
    kind = "unreachable"
    retryable = True


class Malformed(ProviderError):
    """响应结构不符合预期，控制流上按 NotFound 处理"""
    kind = "malformed"


ERROR_KINDS = (NotFound.kind, RateLimited.kind, Unreachable.kind, Malformed.kind)


def _to_float(value: Any) -> Optional[float]:
    """空值返回 None；NaN / Infinity 视为无法解析"""
    if value is None or value == "":
        return None
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"非有限数值: {value!r}")
    return number


# ── 数据源基类 ────────────────────────────────────────────

class UpstreamProvider(ABC):
    """上游数据源：fetch(key) 返回规范化的值，或抛出 ProviderError"""

    name: str = "provider"
    source: str = ""
    namespace: str = ""
    value_source: ValueSource = ValueSource.PRIMARY_PROVIDER
    confidence: float = 1.0

    def __init__(self, client: httpx.AsyncClient, timeout: float = 5.0):
        self._client = client
        self.timeout = timeout

    @abstractmethod
    async def fetch(self, key: str) -> Dict[str, Any]:
        ...

    async def _get_json(
        self,
        key: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = await self._client.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise Unreachable(self.name, key, f"超时: {exc}") from exc
        except httpx.HTTPError as exc:
            raise Unreachable(self.name, key, f"网络错误: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise RateLimited(self.name, key, "HTTP 429")
        if status >= 500:
            raise Unreachable(self.name, key, f"HTTP {status}")
        if status >= 400:
            raise NotFound(self.name, key, f"HTTP {status}")
        try:
            return response.json()
        except ValueError as exc:
            raise Malformed(self.name, key, "响应不是合法 JSON") from exc


# ── Jupiter ───────────────────────────────────────────────

class JupiterPriceProvider(UpstreamProvider):
    name = "jupiter_price"
    source = SOURCE_JUPITER
    namespace = NAMESPACE_PRICES
    value_source = ValueSource.PRIMARY_PROVIDER
    confidence = 0.9

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        super().__init__(client, timeout)
        self._base_url = base_url

    async def fetch(self, key: str) -> Dict[str, Any]:
        body = await self._get_json(key, self._base_url, params={"ids": key})
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise Malformed(self.name, key, "缺少 data 字段")
        item = body["data"].get(key)
        if not item:
            raise NotFound(self.name, key)
        try:
            price = _to_float(item.get("price"))
        except (TypeError, ValueError, AttributeError) as exc:
            raise Malformed(self.name, key, "price 字段无法解析") from exc
        if not price or price <= 0:
            raise NotFound(self.name, key, "价格为空")
        return {"address": key, "price": price}


class JupiterTokenProvider(UpstreamProvider):
    name = "jupiter_token"
    source = SOURCE_JUPITER
    namespace = NAMESPACE_TOKENS
    value_source = ValueSource.PRIMARY_PROVIDER
    confidence = 0.9

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        super().__init__(client, timeout)
        self._base_url = base_url.rstrip("/")

    async def fetch(self, key: str) -> Dict[str, Any]:
        body = await self._get_json(key, f"{self._base_url}/{key}")
        if body is None:
            raise NotFound(self.name, key)
        if not isinstance(body, dict):
            raise Malformed(self.name, key, "响应不是对象")
        symbol, name = body.get("symbol"), body.get("name")
        if not symbol or not name:
            raise Malformed(self.name, key, "缺少 symbol / name")
        return {
            "address": key,
            "symbol": symbol,
            "name": name,
            "decimals": body.get("decimals"),
            "logo_uri": body.get("logoURI"),
            "tags": body.get("tags") or [],
            "volume_24h": body.get("daily_volume"),
        }


# ── CoinGecko ─────────────────────────────────────────────

class _CoinGeckoProvider(UpstreamProvider):
    source = SOURCE_COINGECKO
    value_source = ValueSource.SECONDARY_PROVIDER
    confidence = 0.85

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
    ):
        super().__init__(client, timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"x-cg-demo-api-key": api_key, "accept": "application/json"}


class CoinGeckoPriceProvider(_CoinGeckoProvider):
    name = "coingecko_price"
    namespace = NAMESPACE_PRICES

    async def fetch(self, key: str) -> Dict[str, Any]:
        body = await self._get_json(
            key,
            f"{self._base_url}/simple/token_price/solana",
            params={
                "contract_addresses": key,
                "vs_currencies": "usd",
                "include_market_cap": "true",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
            },
            headers=self._headers,
        )
        if not isinstance(body, dict):
            raise Malformed(self.name, key, "响应不是对象")
        item = body.get(key) or body.get(key.lower())
        if not item:
            raise NotFound(self.name, key)
        try:
            price = _to_float(item.get("usd"))
            value = {
                "address": key,
                "price": price,
                "market_cap": _to_float(item.get("usd_market_cap")),
                "volume_24h": _to_float(item.get("usd_24h_vol")),
                "price_change_24h": _to_float(item.get("usd_24h_change")),
            }
        except (TypeError, ValueError, AttributeError) as exc:
            raise Malformed(self.name, key, "价格字段无法解析") from exc
        if not price or price <= 0:
            raise NotFound(self.name, key, "价格为空")
        return value


class CoinGeckoTokenProvider(_CoinGeckoProvider):
    name = "coingecko_token"
    namespace = NAMESPACE_TOKENS

    async def fetch(self, key: str) -> Dict[str, Any]:
        body = await self._get_json(
            key, f"{self._base_url}/coins/solana/contract/{key}", headers=self._headers
        )
        if not isinstance(body, dict) or not body.get("symbol"):
            raise Malformed(self.name, key, "缺少 symbol")
        try:
            market = body.get("market_data") or {}
            image = body.get("image") or {}
            platform = (body.get("detail_platforms") or {}).get("solana") or {}
            return {
                "address": key,
                "symbol": str(body["symbol"]).upper(),
                "name": body.get("name"),
                "decimals": platform.get("decimal_place"),
                "logo_uri": image.get("small") or image.get("thumb"),
                "price": _to_float((market.get("current_price") or {}).get("usd")),
                "market_cap": _to_float((market.get("market_cap") or {}).get("usd")),
                "volume_24h": _to_float((market.get("total_volume") or {}).get("usd")),
                "price_change_24h": _to_float(market.get("price_change_percentage_24h")),
                "coingecko_id": body.get("id"),
            }
        except (TypeError, ValueError, AttributeError) as exc:
            raise Malformed(self.name, key, "市场数据无法解析") from exc


# ── 调用统计（供健康聚合区分错误类型） ─────────────────────

class UpstreamStats:
    """按数据源累计成功 / 失败次数与耗时"""

    def __init__(self):
        self.successes: Dict[str, int] = defaultdict(int)
        self.failures: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.latency_ms: Dict[str, float] = defaultdict(float)

    def record_success(self, provider: str, elapsed_ms: float) -> None:
        self.successes[provider] += 1
        self.latency_ms[provider] += elapsed_ms

    def record_failure(self, provider: str, kind: str, elapsed_ms: float = 0.0) -> None:
        self.failures[provider][kind] += 1
        self.latency_ms[provider] += elapsed_ms

    def calls(self, provider: str) -> int:
        return self.successes.get(provider, 0) + sum(self.failures.get(provider, {}).values())

    def success_rate(self, provider: str) -> Optional[float]:
        total = self.calls(provider)
        if total == 0:
            return None
        return self.successes.get(provider, 0) / total

    def summary(self) -> Dict[str, Dict[str, Any]]:
        providers = set(self.successes) | set(self.failures)
        result = {}
        for provider in sorted(providers):
            total = self.calls(provider)
            result[provider] = {
                "calls": total,
                "successes": self.successes[provider],
                "failures": dict(self.failures[provider]),
                "success_rate": self.success_rate(provider),
                "avg_response_time_ms": round(self.latency_ms[provider] / total, 1) if total else 0.0,
            }
        return result


# ── 数据源装配 ────────────────────────────────────────────

def build_providers(
    settings: CacheServiceSettings, client: httpx.AsyncClient
) -> Dict[str, List[UpstreamProvider]]:
    """按可靠性顺序装配各命名空间的数据源：Jupiter 优先，CoinGecko 需要 API Key"""
    timeout = settings.PROVIDER_TIMEOUT_SECONDS
    providers: Dict[str, List[UpstreamProvider]] = {
        NAMESPACE_PRICES: [JupiterPriceProvider(client, settings.JUPITER_PRICE_URL, timeout)],
        NAMESPACE_TOKENS: [JupiterTokenProvider(client, settings.JUPITER_TOKEN_URL, timeout)],
    }
    if settings.COINGECKO_API_KEY:
        providers[NAMESPACE_PRICES].append(
            CoinGeckoPriceProvider(
                client, settings.COINGECKO_BASE_URL, settings.COINGECKO_API_KEY, timeout
            )
        )
        providers[NAMESPACE_TOKENS].append(
            CoinGeckoTokenProvider(
                client, settings.COINGECKO_BASE_URL, settings.COINGECKO_API_KEY, timeout
            )
        )
    else:
        logger.info("COINGECKO_API_KEY 未配置，仅启用 Jupiter 数据源")
    return providers
