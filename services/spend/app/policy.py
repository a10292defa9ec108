"""
Spend Service - 集計ポリシー (Inclusion Policy)

どの注文を total_spent に含めるかを判定し、
変更イベントから差分(delta)を、注文一覧から合計を計算する。

ステータスが判定できない場合は既定値で済ませず、必ず例外にする。
"""

from collections.abc import Iterable
from decimal import Decimal

from .errors import DataIntegrityError, InclusionPolicyAmbiguous, InvalidAmount
from .models import ZERO, MutationEvent, MutationKind, OrderFact, OrderStatus


def parse_status(raw) -> OrderStatus:
    """台帳のステータス文字列を OrderStatus に変換する(大文字小文字は無視)。"""
    if isinstance(raw, OrderStatus):
        return raw
    if isinstance(raw, str):
        for status in OrderStatus:
            if status.value.lower() == raw.strip().lower():
                return status
    raise InclusionPolicyAmbiguous(raw)


def validate_amount(amount) -> Decimal:
    if amount is None:
        raise InvalidAmount("Amount is missing")
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    if not amount.is_finite():
        raise InvalidAmount(f"Amount is not finite: {amount}")
    if amount < 0:
        raise InvalidAmount(f"Amount must be non-negative: {amount}")
    if amount.as_tuple().exponent < -2:
        raise InvalidAmount(f"Amount has more than 2 fractional digits: {amount}")
    return amount


class InclusionPolicy:
    """total_spent に数えるステータスの集合"""

    def __init__(self, counted: Iterable[OrderStatus]) -> None:
        self.counted = frozenset(parse_status(s) for s in counted)

    def __repr__(self) -> str:
        names = sorted(s.value for s in self.counted)
        return f"InclusionPolicy({names})"

    def counts(self, status) -> bool:
        return parse_status(status) in self.counted

    def contribution(self, amount, status) -> Decimal:
        """1 件の注文が合計に寄与する金額。数えない注文は 0。"""
        if status is None:
            raise DataIntegrityError("Status is missing")
        counted = self.counts(status)
        amount = validate_amount(amount)
        return amount if counted else ZERO


def compute_delta(event: MutationEvent, policy: InclusionPolicy) -> Decimal:
    """
    変更イベントを total_spent の差分に変換する。

    Insert: +new (new が数える対象なら)
    Update: (new を数えるなら new) - (old を数えていたなら old)
    Delete: -old (old を数えていたなら)
    """
    if event.kind is MutationKind.INSERT:
        return policy.contribution(event.new_amount, event.new_status)
    if event.kind is MutationKind.UPDATE:
        new = policy.contribution(event.new_amount, event.new_status)
        old = policy.contribution(event.old_amount, event.old_status)
        return new - old
    if event.kind is MutationKind.DELETE:
        return -policy.contribution(event.old_amount, event.old_status)
    raise DataIntegrityError(f"Unknown mutation kind: {event.kind!r}")


def recompute_total(orders: Iterable[OrderFact], policy: InclusionPolicy) -> Decimal:
    """注文一覧から total_spent を計算し直す(バッチ・監査の正解値)。"""
    total = ZERO
    for order in orders:
        total += policy.contribution(order.amount, order.status)
    return total
