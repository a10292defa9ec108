"""
Spend Service - ドメインモデル

台帳(Ledger)の事実・変更イベントと、非正規化された集計値を定義する。
OrderFact と MutationEvent は過去の事実なので不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """DB から読んだ数値(Decimal / float / str / int)を小数 2 桁の Decimal に揃える。"""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "Pending"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class MutationKind(str, Enum):
    INSERT = "Insert"
    UPDATE = "Update"
    DELETE = "Delete"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    OUT_OF_ORDER = "out_of_order"
    QUARANTINED = "quarantined"


class OrderFact(BaseModel):
    """台帳上の注文。status は台帳に書かれた生の文字列のまま保持する。"""

    model_config = ConfigDict(frozen=True)

    order_id: str
    customer_id: str
    amount: Decimal
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MutationEvent(BaseModel):
    """台帳への変更 1 件。sequence は台帳全体で単調増加する。"""

    model_config = ConfigDict(frozen=True)

    sequence: int
    kind: MutationKind
    order_id: str
    customer_id: str
    old_amount: Decimal | None = None
    new_amount: Decimal | None = None
    old_status: str | None = None
    new_status: str | None = None
    recorded_at: datetime | None = None


class CustomerAggregate(BaseModel):
    customer_id: str
    total_spent: Decimal
    last_applied_sequence: int
    updated_at: datetime | None = None


class Discrepancy(BaseModel):
    """監査で検出した保存値と再計算値のずれ"""

    customer_id: str
    stored: Decimal
    recomputed: Decimal
    stored_sequence: int
    sequence: int
    corrected: bool
    detected_at: datetime
