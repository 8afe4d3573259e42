"""
TokenWars 代币缓存服务
为高频读取、低频变化的代币元数据 / 价格提供分级缓存查询

架构分层：
  限流层     (RateLimiter)      → 按数据源的滑动窗口调用预算
  数据源层   (UpstreamProvider) → Jupiter / CoinGecko 上游数据提供商
  存储层     (Store)            → 缓存表 / 历史表 / 后台任务表
  解析层     (CacheResolver)    → 缓存 → 历史 → 合成数据 三级查询
  调度层     (RefreshScheduler) → 后台刷新任务入队与消费
  健康层     (HealthAggregator) → 命中率、新鲜度、综合健康分
"""

__version__ = "1.0.0"
