"""
Spend Service - 台帳 (Ledger)

注文の事実(orders)と、その変更履歴(order_mutations)を扱う。
台帳が total_spent の唯一の正解(source of truth)であり、
集計値はここから差分適用または再計算で導出される。

order_mutations の sequence は台帳全体で単調増加する。
採番は「最新 sequence + 1」を主キー制約で確定させる楽観的ロックで、
競合した書き込みは IntegrityError で失敗する → 呼び出し側がリトライする。
このため sequence はコミット順に見え、スナップショット S は S 以下の全変更を含む。
"""

from collections.abc import AsyncIterator
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .db import as_datetime, money_param, timestamp_param, utcnow
from .errors import DataIntegrityError
from .models import MutationEvent, MutationKind, OrderFact, to_money

_MUTATION_COLUMNS = """
    sequence, kind, order_id, customer_id,
    old_amount, new_amount, old_status, new_status, recorded_at
"""


def _optional_money(value) -> Decimal | None:
    return None if value is None else to_money(value)


def _row_to_event(row) -> MutationEvent:
    return MutationEvent(
        sequence=row.sequence,
        kind=MutationKind(row.kind),
        order_id=row.order_id,
        customer_id=row.customer_id,
        old_amount=_optional_money(row.old_amount),
        new_amount=_optional_money(row.new_amount),
        old_status=row.old_status,
        new_status=row.new_status,
        recorded_at=as_datetime(row.recorded_at),
    )


def _row_to_order(row) -> OrderFact:
    return OrderFact(
        order_id=row.order_id,
        customer_id=row.customer_id,
        amount=to_money(row.amount),
        status=row.status,
        created_at=as_datetime(row.created_at),
        updated_at=as_datetime(row.updated_at),
    )


# ── 書き込み ─────────────────────────────────────


async def latest_sequence(session: AsyncSession) -> int:
    """コミット済みの最新 sequence(変更が無ければ 0)"""
    result = await session.execute(
        text("SELECT COALESCE(MAX(sequence), 0) AS latest FROM order_mutations")
    )
    return int(result.scalar_one())


async def append_mutation(
    session: AsyncSession,
    kind: MutationKind,
    order_id: str,
    customer_id: str,
    expected_sequence: int,
    old_amount: Decimal | None = None,
    new_amount: Decimal | None = None,
    old_status: str | None = None,
    new_status: str | None = None,
) -> MutationEvent:
    """
    変更を台帳に追記する。

    expected_sequence は呼び出し側が読んだ最新 sequence。
    同じ sequence が既に存在すると主キー違反で失敗する → 競合を検知できる。
    コミットは呼び出し側が行う(orders の更新と同じトランザクションにするため)。
    """
    now = utcnow()
    sequence = expected_sequence + 1
    await session.execute(
        text(f"""
            INSERT INTO order_mutations ({_MUTATION_COLUMNS})
            VALUES
                (:sequence, :kind, :order_id, :customer_id,
                 :old_amount, :new_amount, :old_status, :new_status, :now)
        """).bindparams(
            money_param("old_amount"),
            money_param("new_amount"),
            timestamp_param("now"),
        ),
        {
            "sequence": sequence,
            "kind": kind.value,
            "order_id": order_id,
            "customer_id": customer_id,
            "old_amount": old_amount,
            "new_amount": new_amount,
            "old_status": old_status,
            "new_status": new_status,
            "now": now,
        },
    )
    return MutationEvent(
        sequence=sequence,
        kind=kind,
        order_id=order_id,
        customer_id=customer_id,
        old_amount=old_amount,
        new_amount=new_amount,
        old_status=old_status,
        new_status=new_status,
        recorded_at=now,
    )


# ── 読み取り ─────────────────────────────────────


async def get_order(session: AsyncSession, order_id: str) -> OrderFact | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_id = :oid"),
        {"oid": order_id},
    )
    row = result.fetchone()
    return _row_to_order(row) if row else None


async def read_mutations(
    session: AsyncSession,
    after: int,
    limit: int,
) -> list[MutationEvent]:
    """sequence > after の変更を sequence 順に最大 limit 件返す。"""
    result = await session.execute(
        text(f"""
            SELECT {_MUTATION_COLUMNS}
            FROM order_mutations
            WHERE sequence > :after
            ORDER BY sequence ASC
            LIMIT :limit
        """),
        {"after": after, "limit": limit},
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def stream_mutations(
    session_factory: sessionmaker,
    since: int = 0,
    batch_size: int = 500,
) -> AsyncIterator[MutationEvent]:
    """
    since より後の変更を順に返す遅延イテレータ。

    ページごとに新しいセッションで読むので、途中で止めても
    最後に受け取った sequence を since に渡せば続きから再開できる。
    呼び出した時点で末尾に達すると終わる。
    """
    cursor = since
    while True:
        async with session_factory() as session:
            page = await read_mutations(session, cursor, batch_size)
        if not page:
            return
        for event in page:
            cursor = event.sequence
            yield event
        if len(page) < batch_size:
            return


async def query_orders(
    session: AsyncSession,
    customer_id: str,
    as_of: int | None = None,
) -> list[OrderFact]:
    """
    顧客の注文一覧を返す。

    as_of を省略すると orders テーブルの現在値を返す。
    as_of を指定すると sequence <= as_of の変更履歴をリプレイして
    その時点の注文一覧を再構築する(1 本の SELECT なので一貫したスナップショットになる)。
    """
    if as_of is None:
        result = await session.execute(
            text("""
                SELECT * FROM orders
                WHERE customer_id = :cid
                ORDER BY created_at ASC, order_id ASC
            """),
            {"cid": customer_id},
        )
        return [_row_to_order(row) for row in result.fetchall()]

    result = await session.execute(
        text(f"""
            SELECT {_MUTATION_COLUMNS}
            FROM order_mutations
            WHERE customer_id = :cid AND sequence <= :as_of
            ORDER BY sequence ASC
        """),
        {"cid": customer_id, "as_of": as_of},
    )
    orders: dict[str, OrderFact] = {}
    for row in result.fetchall():
        event = _row_to_event(row)
        if event.kind is MutationKind.DELETE:
            orders.pop(event.order_id, None)
            continue
        if event.new_amount is None or event.new_status is None:
            raise DataIntegrityError(
                f"Mutation {event.sequence} has no new amount or status"
            )
        previous = orders.get(event.order_id)
        orders[event.order_id] = OrderFact(
            order_id=event.order_id,
            customer_id=event.customer_id,
            amount=event.new_amount,
            status=event.new_status,
            created_at=previous.created_at if previous else event.recorded_at,
            updated_at=event.recorded_at,
        )
    return list(orders.values())


async def list_customers(
    session: AsyncSession,
    after: str = "",
    limit: int = 500,
) -> list[str]:
    """台帳または集計テーブルに現れる顧客を customer_id 順に返す(カーソル用)。"""
    result = await session.execute(
        text("""
            SELECT customer_id FROM (
                SELECT customer_id FROM order_mutations
                UNION
                SELECT customer_id FROM customer_aggregates
            ) known
            WHERE customer_id > :after
            ORDER BY customer_id ASC
            LIMIT :limit
        """),
        {"after": after, "limit": limit},
    )
    return [row.customer_id for row in result.fetchall()]


async def touched_customers(
    session: AsyncSession,
    after_sequence: int,
    through_sequence: int,
    after: str = "",
    limit: int = 500,
) -> list[str]:
    """(after_sequence, through_sequence] の間に変更された顧客を customer_id 順に返す。"""
    result = await session.execute(
        text("""
            SELECT DISTINCT customer_id
            FROM order_mutations
            WHERE sequence > :after_seq
              AND sequence <= :through_seq
              AND customer_id > :after
            ORDER BY customer_id ASC
            LIMIT :limit
        """),
        {
            "after_seq": after_sequence,
            "through_seq": through_sequence,
            "after": after,
            "limit": limit,
        },
    )
    return [row.customer_id for row in result.fetchall()]
