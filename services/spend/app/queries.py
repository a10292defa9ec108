"""
Spend Service - クエリハンドラ (Read 側)

非正規化された customer_aggregates.total_spent をそのまま読む。
レポートクエリはこの列のインデックスで絞り込み・並び替えを行う。
"""

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger
from .db import as_datetime, money_param
from .models import to_money


def _aggregate_to_dict(row) -> dict:
    updated_at = as_datetime(row.updated_at)
    return {
        "customer_id": row.customer_id,
        "total_spent": str(to_money(row.total_spent)),
        "last_applied_sequence": row.last_applied_sequence,
        "updated_at": updated_at.isoformat() if updated_at else None,
    }


async def list_top_spenders(
    session: AsyncSession,
    min_total: Decimal | None = None,
    limit: int = 100,
) -> list[dict]:
    """total_spent の降順で顧客を返す。min_total を超える顧客だけに絞れる。"""
    where = "WHERE total_spent > :min_total" if min_total is not None else ""
    statement = text(f"""
        SELECT customer_id, total_spent, last_applied_sequence, updated_at
        FROM customer_aggregates
        {where}
        ORDER BY total_spent DESC, customer_id ASC
        LIMIT :limit
    """)
    params: dict = {"limit": limit}
    if min_total is not None:
        statement = statement.bindparams(money_param("min_total"))
        params["min_total"] = min_total
    result = await session.execute(statement, params)
    return [_aggregate_to_dict(row) for row in result.fetchall()]


async def get_customer_aggregate(session: AsyncSession, customer_id: str) -> dict | None:
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
    return _aggregate_to_dict(row)


async def list_orders(session: AsyncSession, customer_id: str) -> list[dict]:
    """顧客の注文を台帳の現在値から返す。"""
    return [
        {
            "order_id": order.order_id,
            "customer_id": order.customer_id,
            "amount": str(order.amount),
            "status": order.status,
            "created_at": order.created_at.isoformat() if order.created_at else None,
            "updated_at": order.updated_at.isoformat() if order.updated_at else None,
        }
        for order in await ledger.query_orders(session, customer_id)
    ]
