"""
Spend Service - コマンドハンドラ (台帳の書き込み側)

注文の作成・変更・削除を台帳に記録する。
1 つのトランザクションで
  1. order_mutations に変更イベントを追記(sequence を採番)
  2. orders の現在値を更新
を行い、コミット後に Redis Pub/Sub で order_mutations チャネルへ通知する。

通知は「新しい変更がある」というヒントに過ぎない。
サブスクライバは台帳テーブルから読み直すので、通知が失われても整合性は崩れない。
"""

import json
import logging
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger
from .db import money_param, timestamp_param
from .errors import NotFound, OrderConflict, SequenceConflict
from .models import MutationEvent, MutationKind
from .policy import validate_amount

logger = logging.getLogger(__name__)

CHANNEL = "order_mutations"
MAX_SEQUENCE_RETRIES = 5


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    customer_id: str,
    amount: Decimal,
    status: str,
) -> MutationEvent:
    """注文作成コマンド: Insert イベントを記録する。"""
    validate_amount(amount)

    async def write(expected: int) -> MutationEvent:
        if await ledger.get_order(session, order_id) is not None:
            raise OrderConflict(f"Order {order_id!r} already exists")
        event = await ledger.append_mutation(
            session, MutationKind.INSERT, order_id, customer_id, expected,
            new_amount=amount, new_status=status,
        )
        await session.execute(
            text("""
                INSERT INTO orders
                    (order_id, customer_id, amount, status, last_sequence,
                     created_at, updated_at)
                VALUES
                    (:oid, :cid, :amount, :status, :seq, :now, :now)
            """).bindparams(money_param("amount"), timestamp_param("now")),
            {
                "oid": order_id,
                "cid": customer_id,
                "amount": amount,
                "status": status,
                "seq": event.sequence,
                "now": event.recorded_at,
            },
        )
        return event

    return await _record(session, redis, write)


async def change_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    amount: Decimal | None = None,
    status: str | None = None,
) -> MutationEvent:
    """注文変更コマンド(ステータス遷移・返金など): Update イベントを記録する。"""
    if amount is not None:
        validate_amount(amount)

    async def write(expected: int) -> MutationEvent:
        current = await ledger.get_order(session, order_id)
        if current is None:
            raise NotFound(f"Order {order_id!r} not found")
        new_amount = current.amount if amount is None else amount
        new_status = current.status if status is None else status
        event = await ledger.append_mutation(
            session, MutationKind.UPDATE, order_id, current.customer_id, expected,
            old_amount=current.amount, new_amount=new_amount,
            old_status=current.status, new_status=new_status,
        )
        await session.execute(
            text("""
                UPDATE orders
                SET amount = :amount, status = :status,
                    last_sequence = :seq, updated_at = :now
                WHERE order_id = :oid
            """).bindparams(money_param("amount"), timestamp_param("now")),
            {
                "oid": order_id,
                "amount": new_amount,
                "status": new_status,
                "seq": event.sequence,
                "now": event.recorded_at,
            },
        )
        return event

    return await _record(session, redis, write)


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> MutationEvent:
    """注文削除コマンド: Delete イベントを記録する。"""

    async def write(expected: int) -> MutationEvent:
        current = await ledger.get_order(session, order_id)
        if current is None:
            raise NotFound(f"Order {order_id!r} not found")
        event = await ledger.append_mutation(
            session, MutationKind.DELETE, order_id, current.customer_id, expected,
            old_amount=current.amount, old_status=current.status,
        )
        await session.execute(
            text("DELETE FROM orders WHERE order_id = :oid"),
            {"oid": order_id},
        )
        return event

    return await _record(session, redis, write)


async def _record(session, redis, write) -> MutationEvent:
    """
    sequence を採番して write を実行し、コミットする。

    最新 sequence を先に読み、その後で注文の現在値を読む。
    他の書き込みと sequence が衝突した場合はロールバックして読み直す。
    """
    for attempt in range(1, MAX_SEQUENCE_RETRIES + 1):
        try:
            expected = await ledger.latest_sequence(session)
            event = await write(expected)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("Sequence conflict on attempt %s, retrying", attempt)
            continue
        except Exception:
            await session.rollback()
            raise
        await _publish(redis, event)
        return event
    raise SequenceConflict(
        f"Could not append to the ledger after {MAX_SEQUENCE_RETRIES} attempts"
    )


async def _publish(redis: aioredis.Redis | None, event: MutationEvent) -> None:
    if redis is None:
        return
    try:
        await redis.publish(CHANNEL, json.dumps({
            "sequence": event.sequence,
            "customer_id": event.customer_id,
        }))
    except RedisError:
        logger.warning("Failed to publish mutation %s", event.sequence, exc_info=True)
