"""
Spend Service - 整合性チェッカー (ConsistencyChecker)

台帳から total_spent を再計算し、ストアの値と比較する。
epsilon を超えるずれがあればスナップショットの sequence で set し直し、
Discrepancy として返す(ログ出力と Redis への通知も行う)。

メンテナと同時に動かしてよい。
- スナップショットより新しいイベントが適用済みの顧客は比較しない
- 補正の set は sequence 付きなので、より新しい更新を巻き戻さない

全顧客の監査は customer_id 順に進み、1 顧客ごとに audit カーソルを保存する。
途中で止まっても次回はカーソルの続きから再開し、最後まで終わるとカーソルを戻す。
"""

import logging
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from . import cursors, ledger
from .db import unavailable_on_connection_error, utcnow
from .errors import DataIntegrityError, NotFound
from .maintainer import BatchMaintainer
from .models import ZERO, Discrepancy
from .store import AggregateStore

logger = logging.getLogger(__name__)

CHANNEL = "aggregate_discrepancies"


class ConsistencyChecker:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: AggregateStore,
        recomputer: BatchMaintainer,
        epsilon: Decimal = ZERO,
        batch_size: int = 500,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.recomputer = recomputer
        self.epsilon = epsilon
        self.batch_size = batch_size
        self.redis = redis

    async def audit(self, customer_id: str | None = None) -> list[Discrepancy]:
        if customer_id is not None:
            found = await self.check(customer_id)
            return [found] if found else []

        async with self.session_factory() as session:
            after = await cursors.load_cursor(session, cursors.AUDIT)
        if after:
            logger.info("Resuming audit after customer %s", after)

        discrepancies: list[Discrepancy] = []
        while True:
            async with unavailable_on_connection_error():
                async with self.session_factory() as session:
                    page = await ledger.list_customers(session, after, self.batch_size)
            if not page:
                break
            for cid in page:
                found = await self.check(cid)
                if found:
                    discrepancies.append(found)
                after = cid
                async with self.session_factory() as session:
                    await cursors.save_cursor(session, cursors.AUDIT, after)
                    await session.commit()

        async with self.session_factory() as session:
            await cursors.save_cursor(session, cursors.AUDIT, "")
            await session.commit()
        logger.info("Audit finished with %s discrepancies", len(discrepancies))
        return discrepancies

    async def check(self, customer_id: str) -> Discrepancy | None:
        """1 顧客を監査する。ずれがあれば補正して Discrepancy を返す。"""
        try:
            recomputed, snapshot = await self.recomputer.recompute(customer_id)
        except DataIntegrityError as e:
            logger.error("Cannot audit customer %s: %s", customer_id, e)
            return None

        record = await self.store.get_record(customer_id)
        stored = record.total_spent if record else ZERO
        stored_sequence = record.last_applied_sequence if record else 0
        if stored_sequence > snapshot:
            # スナップショットより新しいイベントが適用済み → 次回の監査で比較する
            logger.debug("Customer %s moved past snapshot %s", customer_id, snapshot)
            return None
        if abs(stored - recomputed) <= self.epsilon:
            return None

        try:
            corrected = await self.store.set(customer_id, recomputed, snapshot)
        except NotFound as e:
            # require_existing モードで集計行が無い。補正せずに報告だけする
            logger.error("Cannot correct customer %s: %s", customer_id, e)
            corrected = False
        discrepancy = Discrepancy(
            customer_id=customer_id,
            stored=stored,
            recomputed=recomputed,
            stored_sequence=stored_sequence,
            sequence=snapshot,
            corrected=corrected,
            detected_at=utcnow(),
        )
        logger.warning(
            "Discrepancy for customer %s: stored=%s recomputed=%s (corrected=%s)",
            customer_id, stored, recomputed, corrected,
        )
        await self._publish(discrepancy)
        return discrepancy

    async def _publish(self, discrepancy: Discrepancy) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(CHANNEL, discrepancy.model_dump_json())
        except RedisError:
            logger.warning(
                "Failed to publish discrepancy for %s", discrepancy.customer_id, exc_info=True
            )
