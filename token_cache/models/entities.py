"""
缓存子系统自有的数据实体
CacheEntry / HistoryRecord / RateLimitWindow / BackgroundJob
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

# ── 缓存命名空间 ──────────────────────────────────────────
NAMESPACE_PRICES = "prices"
NAMESPACE_TOKENS = "tokens"
NAMESPACES = (NAMESPACE_PRICES, NAMESPACE_TOKENS)


class ValueSource(str, Enum):
    """值的来源，置信度按层级递减"""
    PRIMARY_PROVIDER = "PRIMARY_PROVIDER"
    SECONDARY_PROVIDER = "SECONDARY_PROVIDER"
    HISTORY = "HISTORY"
    STATIC = "STATIC"
    GENERATED = "GENERATED"


class CacheStatus(str, Enum):
    FRESH = "FRESH"
    PARTIAL = "PARTIAL"
    FALLBACK = "FALLBACK"
    UNAVAILABLE = "UNAVAILABLE"


class JobType(str, Enum):
    REFRESH_KEYS = "REFRESH_KEYS"
    FULL_REFRESH = "FULL_REFRESH"
    OPTIMIZE = "OPTIMIZE"


class JobPriority(str, Enum):
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """排序用数值，越小越优先"""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"


# 可被认领的状态；RUNNING 之后只能前进到终态
CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRY_SCHEDULED)
OPEN_STATUSES = (JobStatus.PENDING, JobStatus.RETRY_SCHEDULED, JobStatus.RUNNING)
FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class CacheEntry(BaseModel):
    """某个 key 的最新已知值"""

    namespace: str
    key: str
    value: Dict[str, Any] = Field(default_factory=dict)
    source: ValueSource
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime
    expires_at: datetime
    provider: Optional[str] = None

    @model_validator(mode="after")
    def _check_expiry(self) -> "CacheEntry":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at 必须晚于 created_at")
        return self

    def is_fresh(self, now: datetime) -> bool:
        # 严格大于：expires_at == now 视为已过期
        return self.expires_at > now


class HistoryRecord(BaseModel):
    """只追加的历史观测记录"""

    namespace: str
    key: str
    value: Dict[str, Any] = Field(default_factory=dict)
    source: ValueSource
    provider: Optional[str] = None
    observed_at: datetime


class RateLimitWindow(BaseModel):
    """单个数据源的滑动窗口计数"""

    source: str
    window_start: datetime
    window_seconds: int
    requests_made: int = 0
    requests_limit: int

    @property
    def is_limited(self) -> bool:
        return self.requests_made >= self.requests_limit

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.window_end

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["is_limited"] = self.is_limited
        data["window_end"] = self.window_end.isoformat()
        return data


def _new_job_id() -> str:
    return uuid.uuid4().hex


class BackgroundJob(BaseModel):
    """后台刷新任务"""

    id: str = Field(default_factory=_new_job_id)
    job_type: JobType
    namespace: str
    keys: List[str] = Field(default_factory=list)
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    parent_id: Optional[str] = None
    reason: Optional[str] = None
    scheduled_at: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)
    result: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_document(self) -> Dict[str, Any]:
        """MongoDB 文档形式（附带优先级排序字段）"""
        doc = self.model_dump()
        doc["_id"] = doc.pop("id")
        doc["job_type"] = self.job_type.value
        doc["priority"] = self.priority.value
        doc["priority_rank"] = self.priority.rank
        doc["status"] = self.status.value
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "BackgroundJob":
        data = dict(doc)
        data["id"] = data.pop("_id")
        data.pop("priority_rank", None)
        return cls(**data)
