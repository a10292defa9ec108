"""
Spend Service - 例外定義

SpendError を基底とし、呼び出し側が扱い方を選べるように分類する。

- 一時的なエラー (StoreUnavailable): リトライで回復する
- データ整合性エラー (DataIntegrityError): 黙って捨てずに隔離・報告する
- 書き込み側のエラー (OrderConflict, NotFound, SequenceConflict)
"""


class SpendError(Exception):
    """Spend Service の全例外の基底クラス"""


class NotFound(SpendError):
    """対象のレコードが存在しない"""


class StoreUnavailable(SpendError):
    """ストレージに一時的に到達できない(リトライ対象)"""


class DataIntegrityError(SpendError):
    """台帳のデータが集計ルールに反している(隔離対象)"""


class InclusionPolicyAmbiguous(DataIntegrityError):
    """ステータスが集計ポリシーで判定できない"""

    def __init__(self, status: object) -> None:
        super().__init__(f"Unrecognized order status: {status!r}")
        self.status = status


class InvalidAmount(DataIntegrityError):
    """金額が負、または小数 2 桁を超えている"""


class OrderConflict(SpendError):
    """同じ order_id の注文が既に存在する"""


class SequenceConflict(SpendError):
    """台帳のシーケンス採番が競合し続けた"""
