from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True)
class User:
    user_id: str
    api_key: str
    name: str | None = None
    prefer_shared: bool = False
    enabled: bool = True
    created_at: float = field(default_factory=time.time)

    def to_public_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("api_key", None)
        return payload


@dataclass(slots=True)
class Account:
    cookie_id: str
    user_id: str
    is_shared: bool
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    enabled: bool = True
    needs_reauth: bool = False
    project_id: str | None = None
    is_restricted: bool = False
    name: str | None = None
    email: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def selectable(self) -> bool:
        return self.enabled and not self.needs_reauth

    def to_public_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("access_token", None)
        payload.pop("refresh_token", None)
        return payload


@dataclass(slots=True)
class ModelQuota:
    cookie_id: str
    model_name: str
    quota: float = 1.0
    reset_at: float | None = None
    available: bool = True
    last_fetched_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SharedQuotaPool:
    user_id: str
    model_name: str
    quota: float
    max_quota: float
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ConsumptionRecord:
    user_id: str
    cookie_id: str
    model_name: str
    quota_before: float
    quota_after: float
    quota_consumed: float
    is_shared: bool
    consumed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SharedPoolSummary:
    model_name: str
    total_quota: float
    earliest_reset: float | None
    available_accounts: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
