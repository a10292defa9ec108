"""
Spend Service - メンテナ (Maintainer)

台帳の変更を customer_aggregates.total_spent に反映する 2 つの戦略。

- EventMaintainer: 変更イベントごとに差分を即時適用する(トリガー相当)
- BatchMaintainer: 一定間隔で台帳から合計を再計算して上書きする(cron 相当)

どちらも reconcile() で「ストアを台帳に追いつかせる」という同じ役割を果たすので、
低レイテンシのイベント適用と、取りこぼしを拾うバッチを併用できる。
"""

import asyncio
import logging
from decimal import Decimal
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from . import cursors, ledger
from .db import timestamp_param, unavailable_on_connection_error, utcnow
from .errors import DataIntegrityError, NotFound, StoreUnavailable
from .models import ApplyOutcome, MutationEvent
from .policy import InclusionPolicy, compute_delta, recompute_total
from .store import AggregateStore

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    async def reconcile(self) -> int: ...


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """attempt 回目(1 始まり)の待ち時間。指数的に伸ばして cap で頭打ちにする。"""
    return min(cap, base * (2 ** (attempt - 1)))


# ── 隔離 (Quarantine) ───────────────────────────


async def quarantine(session_factory: sessionmaker, event: MutationEvent, reason: str) -> None:
    """適用できないイベントを mutation_quarantine に残す。同じ sequence は 1 件だけ。"""
    async with unavailable_on_connection_error():
        async with session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO mutation_quarantine
                        (sequence, customer_id, order_id, kind, reason, quarantined_at)
                    VALUES
                        (:seq, :cid, :oid, :kind, :reason, :now)
                    ON CONFLICT (sequence) DO NOTHING
                """).bindparams(timestamp_param("now")),
                {
                    "seq": event.sequence,
                    "cid": event.customer_id,
                    "oid": event.order_id,
                    "kind": event.kind.value,
                    "reason": reason,
                    "now": utcnow(),
                },
            )
            await session.commit()


async def list_quarantine(session_factory: sessionmaker) -> list[dict]:
    async with session_factory() as session:
        result = await session.execute(
            text("SELECT * FROM mutation_quarantine ORDER BY sequence ASC")
        )
        return [
            {
                "sequence": row.sequence,
                "customer_id": row.customer_id,
                "order_id": row.order_id,
                "kind": row.kind,
                "reason": row.reason,
            }
            for row in result.fetchall()
        ]


# ── イベント駆動 ─────────────────────────────────


class EventMaintainer:
    """
    変更イベントを 1 件ずつ差分としてストアに適用する。

    同じ顧客のイベントは sequence 順に渡す必要がある(呼び出し側の責務)。
    重複・順序逆転したイベントはストアの sequence チェックで無視される。
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: AggregateStore,
        policy: InclusionPolicy,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 5.0,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.store = store
        self.policy = policy
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.batch_size = batch_size

    async def apply(self, event: MutationEvent) -> ApplyOutcome:
        try:
            delta = compute_delta(event, self.policy)
        except DataIntegrityError as e:
            logger.error(
                "Quarantined mutation %s for customer %s: %s",
                event.sequence, event.customer_id, e,
            )
            await quarantine(self.session_factory, event, str(e))
            return ApplyOutcome.QUARANTINED

        try:
            applied = await self._apply_delta(event, delta)
        except NotFound as e:
            # require_existing モードで集計行が無い顧客。行が用意されるまで隔離しておく
            logger.error(
                "Quarantined mutation %s for customer %s: %s",
                event.sequence, event.customer_id, e,
            )
            await quarantine(self.session_factory, event, f"NotFound: {e}")
            return ApplyOutcome.QUARANTINED
        if not applied:
            logger.info(
                "Ignored out-of-order mutation %s for customer %s",
                event.sequence, event.customer_id,
            )
            return ApplyOutcome.OUT_OF_ORDER
        logger.debug(
            "Applied mutation %s (%s) to customer %s",
            event.sequence, delta, event.customer_id,
        )
        return ApplyOutcome.APPLIED

    async def _apply_delta(self, event: MutationEvent, delta: Decimal) -> bool:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.store.apply_delta(event.customer_id, delta, event.sequence)
            except StoreUnavailable:
                if attempt >= self.retry_attempts:
                    raise
                delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay)
                logger.warning(
                    "Store unavailable for mutation %s, retrying in %.2fs",
                    event.sequence, delay,
                )
                await asyncio.sleep(delay)

    async def reconcile(self) -> int:
        """
        events カーソルから台帳の末尾までを 1 レーンで順に適用する。

        1 件ごとにカーソルを保存するので、途中で失敗しても次回は続きから再開する。
        """
        async with self.session_factory() as session:
            since = await cursors.load_sequence(session, cursors.EVENTS)

        count = 0
        async for event in ledger.stream_mutations(self.session_factory, since, self.batch_size):
            await self.apply(event)
            async with self.session_factory() as session:
                await cursors.save_cursor(session, cursors.EVENTS, str(event.sequence))
                await session.commit()
            count += 1
        return count


# ── バッチ再計算 ─────────────────────────────────


class BatchMaintainer:
    """
    台帳から total_spent を再計算してストアに上書きする。

    incremental モードでは前回以降に変更された顧客だけ、
    full モード(初回のバックフィルを含む)では既知の全顧客を対象にする。
    上書きはスナップショットの sequence で行うので、より新しいイベント適用を巻き戻さない。
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: AggregateStore,
        policy: InclusionPolicy,
        mode: str = "incremental",
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.store = store
        self.policy = policy
        self.mode = mode
        self.batch_size = batch_size

    async def snapshot_sequence(self) -> int:
        async with unavailable_on_connection_error():
            async with self.session_factory() as session:
                return await ledger.latest_sequence(session)

    async def recompute(self, customer_id: str, as_of: int | None = None) -> tuple[Decimal, int]:
        """顧客の total_spent を台帳のスナップショットから計算し、(合計, sequence) を返す。"""
        if as_of is None:
            as_of = await self.snapshot_sequence()
        async with unavailable_on_connection_error():
            async with self.session_factory() as session:
                orders = await ledger.query_orders(session, customer_id, as_of=as_of)
        return recompute_total(orders, self.policy), as_of

    async def reconcile(self, full: bool | None = None) -> int:
        if full is None:
            full = self.mode == "full"
        snapshot = await self.snapshot_sequence()

        async with self.session_factory() as session:
            since = 0 if full else await cursors.load_sequence(session, cursors.BATCH)

        written = 0
        after = ""
        while True:
            async with unavailable_on_connection_error():
                async with self.session_factory() as session:
                    if full:
                        page = await ledger.list_customers(session, after, self.batch_size)
                    else:
                        page = await ledger.touched_customers(
                            session, since, snapshot, after, self.batch_size
                        )
            if not page:
                break
            for customer_id in page:
                if await self._rebuild(customer_id, snapshot):
                    written += 1
            after = page[-1]

        async with self.session_factory() as session:
            await cursors.save_cursor(session, cursors.BATCH, str(snapshot))
            await session.commit()
        logger.info(
            "Batch recompute (%s) wrote %s customers at sequence %s",
            "full" if full else "incremental", written, snapshot,
        )
        return written

    async def _rebuild(self, customer_id: str, snapshot: int) -> bool:
        try:
            total, _ = await self.recompute(customer_id, snapshot)
            return await self.store.set(customer_id, total, snapshot)
        except (DataIntegrityError, NotFound) as e:
            logger.error("Skipped recompute for customer %s: %s", customer_id, e)
            return False
