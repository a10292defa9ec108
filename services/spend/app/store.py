"""
Spend Service - 集計ストア (AggregateStore)

顧客ごとの total_spent を customer_aggregates に保持する。
このテーブルを書き換えてよいのはこのクラスだけ。

すべての書き込みは 1 本の UPSERT 文で、sequence による条件付き更新になっている。
- apply_delta: sequence が最後に適用した値より大きいときだけ加算する
- set:         sequence が最後に適用した値以上のときだけ上書きする
これにより重複配信・順序逆転・古いスナップショットによる巻き戻しが起きない。
顧客をまたぐロックは取らない。
"""

import logging
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .db import (
    as_datetime,
    money_param,
    timestamp_param,
    unavailable_on_connection_error,
    utcnow,
)
from .errors import NotFound
from .models import ZERO, CustomerAggregate, to_money

logger = logging.getLogger(__name__)


class AggregateStore:
    def __init__(self, session_factory: sessionmaker, require_existing: bool = False):
        self.session_factory = session_factory
        self.require_existing = require_existing

    async def get(self, customer_id: str) -> Decimal:
        """保存されている total_spent。レコードが無ければ 0.00。"""
        record = await self.get_record(customer_id)
        return record.total_spent if record else ZERO

    async def get_record(self, customer_id: str) -> CustomerAggregate | None:
        async with unavailable_on_connection_error():
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT customer_id, total_spent, last_applied_sequence, updated_at
                        FROM customer_aggregates
                        WHERE customer_id = :cid
                    """),
                    {"cid": customer_id},
                )
                row = result.fetchone()
        if not row:
            return None
        return CustomerAggregate(
            customer_id=row.customer_id,
            total_spent=to_money(row.total_spent),
            last_applied_sequence=row.last_applied_sequence,
            updated_at=as_datetime(row.updated_at),
        )

    async def apply_delta(self, customer_id: str, delta: Decimal, sequence: int) -> bool:
        """
        total_spent に delta を加算する。

        sequence <= last_applied_sequence の場合は何もせず False を返す。
        """
        if self.require_existing:
            statement = text("""
                UPDATE customer_aggregates
                SET total_spent = total_spent + :delta,
                    last_applied_sequence = :seq,
                    updated_at = :now
                WHERE customer_id = :cid
                  AND last_applied_sequence < :seq
            """)
        else:
            statement = text("""
                INSERT INTO customer_aggregates
                    (customer_id, total_spent, last_applied_sequence, updated_at)
                VALUES
                    (:cid, :delta, :seq, :now)
                ON CONFLICT (customer_id) DO UPDATE SET
                    total_spent = customer_aggregates.total_spent + excluded.total_spent,
                    last_applied_sequence = excluded.last_applied_sequence,
                    updated_at = excluded.updated_at
                WHERE customer_aggregates.last_applied_sequence
                    < excluded.last_applied_sequence
            """)
        return await self._write(statement, customer_id, "delta", delta, sequence)

    async def set(self, customer_id: str, total_spent: Decimal, sequence: int) -> bool:
        """
        total_spent を絶対値で上書きする(バッチ・監査用)。

        同じ sequence で計算した値は正解として上書きを許す。
        それより新しいイベントが適用済みなら何もせず False を返す。
        """
        if self.require_existing:
            statement = text("""
                UPDATE customer_aggregates
                SET total_spent = :total,
                    last_applied_sequence = :seq,
                    updated_at = :now
                WHERE customer_id = :cid
                  AND last_applied_sequence <= :seq
            """)
        else:
            statement = text("""
                INSERT INTO customer_aggregates
                    (customer_id, total_spent, last_applied_sequence, updated_at)
                VALUES
                    (:cid, :total, :seq, :now)
                ON CONFLICT (customer_id) DO UPDATE SET
                    total_spent = excluded.total_spent,
                    last_applied_sequence = excluded.last_applied_sequence,
                    updated_at = excluded.updated_at
                WHERE customer_aggregates.last_applied_sequence
                    <= excluded.last_applied_sequence
            """)
        return await self._write(statement, customer_id, "total", total_spent, sequence)

    async def _write(self, statement, customer_id, amount_key, amount, sequence) -> bool:
        statement = statement.bindparams(money_param(amount_key), timestamp_param("now"))
        params = {
            "cid": customer_id,
            amount_key: amount,
            "seq": sequence,
            "now": utcnow(),
        }
        async with unavailable_on_connection_error():
            async with self.session_factory() as session:
                result = await session.execute(statement, params)
                applied = result.rowcount > 0
                if not applied and self.require_existing:
                    exists = await session.execute(
                        text("SELECT 1 FROM customer_aggregates WHERE customer_id = :cid"),
                        {"cid": customer_id},
                    )
                    if exists.fetchone() is None:
                        raise NotFound(f"No aggregate for customer {customer_id!r}")
                await session.commit()

        if not applied:
            logger.debug(
                "Skipped stale write for %s at sequence %s", customer_id, sequence
            )
        return applied
