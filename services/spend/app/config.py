"""
Spend Service - 設定

環境変数から設定を読み込む。DATABASE_URL は必須、それ以外は既定値を持つ。
"""

import os
from decimal import Decimal

from pydantic import BaseModel, field_validator

from .models import OrderStatus

RECOMPUTE_MODES = ("incremental", "full")


def _parse_statuses(raw: str) -> tuple[OrderStatus, ...]:
    statuses = []
    for name in raw.split(","):
        name = name.strip()
        if not name:
            continue
        match = [s for s in OrderStatus if s.value.lower() == name.lower()]
        if not match:
            raise ValueError(f"Unknown order status in SPEND_COUNTED_STATUSES: {name!r}")
        statuses.append(match[0])
    return tuple(statuses)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str
    redis_url: str | None = None

    # 集計ポリシー: total_spent に含めるステータス
    counted_statuses: tuple[OrderStatus, ...] = (
        OrderStatus.PENDING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    )

    recompute_mode: str = "incremental"
    batch_interval: float = 300.0
    audit_interval: float = 3600.0
    epsilon: Decimal = Decimal("0.00")

    lanes: int = 8
    max_in_flight: int = 1000
    batch_size: int = 500
    poll_interval: float = 1.0
    apply_timeout: float = 10.0
    retry_attempts: int = 5
    retry_base_delay: float = 0.1
    retry_max_delay: float = 5.0
    cursor_flush_interval: float = 1.0

    require_existing: bool = False
    background_tasks: bool = True
    log_level: str = "INFO"

    @field_validator("recompute_mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        if value not in RECOMPUTE_MODES:
            raise ValueError(f"recompute_mode must be one of {RECOMPUTE_MODES}")
        return value

    @field_validator("lanes", "max_in_flight", "batch_size", "retry_attempts")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator(
        "batch_interval",
        "audit_interval",
        "epsilon",
        "poll_interval",
        "apply_timeout",
        "retry_base_delay",
        "retry_max_delay",
        "cursor_flush_interval",
    )
    @classmethod
    def _check_non_negative(cls, value):
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """環境変数から Settings を組み立てる。未設定の項目は既定値のまま。"""
        env = os.environ if environ is None else environ
        values: dict = {"database_url": env["DATABASE_URL"]}
        if env.get("REDIS_URL"):
            values["redis_url"] = env["REDIS_URL"]
        if "SPEND_COUNTED_STATUSES" in env:
            values["counted_statuses"] = _parse_statuses(env["SPEND_COUNTED_STATUSES"])
        if "LOG_LEVEL" in env:
            values["log_level"] = env["LOG_LEVEL"].upper()

        mapping = {
            "SPEND_RECOMPUTE_MODE": ("recompute_mode", str),
            "SPEND_BATCH_INTERVAL": ("batch_interval", float),
            "SPEND_AUDIT_INTERVAL": ("audit_interval", float),
            "SPEND_EPSILON": ("epsilon", str),
            "SPEND_LANES": ("lanes", int),
            "SPEND_MAX_IN_FLIGHT": ("max_in_flight", int),
            "SPEND_BATCH_SIZE": ("batch_size", int),
            "SPEND_POLL_INTERVAL": ("poll_interval", float),
            "SPEND_APPLY_TIMEOUT": ("apply_timeout", float),
            "SPEND_RETRY_ATTEMPTS": ("retry_attempts", int),
            "SPEND_RETRY_BASE_DELAY": ("retry_base_delay", float),
            "SPEND_RETRY_MAX_DELAY": ("retry_max_delay", float),
            "SPEND_CURSOR_FLUSH_INTERVAL": ("cursor_flush_interval", float),
            "SPEND_REQUIRE_EXISTING": ("require_existing", _parse_bool),
            "SPEND_BACKGROUND_TASKS": ("background_tasks", _parse_bool),
        }
        for var, (field, convert) in mapping.items():
            if var in env:
                values[field] = convert(env[var])
        return cls(**values)
