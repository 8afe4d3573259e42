"""
缓存子系统分层架构
  Layer 0 – Clock / Ticker : 时间抽象与周期调度
  Layer 1 – Acquisition    : 上游数据源（Jupiter / CoinGecko）+ 限流
  Layer 2 – Cache / History: 缓存表、历史表、后台任务表（MongoDB → 内存）
  Layer 3 – Resolver       : 缓存 → 历史 → 合成数据 分级查询
  Layer 4 – Scheduler      : 后台刷新任务
  Layer 5 – Health         : 健康聚合
"""
