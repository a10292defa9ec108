"""
Spend Service - 変更イベントのサブスクライバー

台帳(order_mutations)を events カーソルから読み進め、
顧客ごとのレーンに振り分けて EventMaintainer で適用する。

- 同じ顧客のイベントは常に同じレーンに入るので、顧客内の順序は保たれる
- 同時に抱えるイベント数はレーンごとに上限を持つ。上限に達したレーンの
  イベントは振り分けずに読み飛ばし、空きができたら台帳から読み直す
  → 詰まったレーンがあっても他のレーンは読み進められる
- カーソルは「ここまでは全部適用済み」という下限(watermark)だけを保存する
  → 再起動時は少し前から再適用するが、sequence チェックで冪等になる

Redis Pub/Sub の order_mutations チャネルは起床のヒントとしてだけ使う。
メッセージを取りこぼしても poll_interval ごとに台帳を読みに行く。
"""

import asyncio
import logging
import math
import time
import zlib

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import cursors, ledger
from .errors import StoreUnavailable
from .maintainer import EventMaintainer, backoff_delay, quarantine
from .models import MutationEvent

logger = logging.getLogger(__name__)


class SequenceWatermark:
    """
    レーンに渡したまま完了していない sequence を覚えておく。

    position は「これ以下はすべて完了」の sequence で、後退しない。
    """

    def __init__(self, position: int = 0) -> None:
        self.position = position
        self._in_flight: set[int] = set()

    def __len__(self) -> int:
        return len(self._in_flight)

    def dispatched(self, sequence: int) -> None:
        self._in_flight.add(sequence)

    def completed(self, sequence: int) -> None:
        self._in_flight.discard(sequence)

    def advance(self, bound: int) -> int:
        """
        bound 以下は振り分け済みか保留なしとわかっているときに位置を進める。

        未完了の sequence があればその手前までしか進めない。
        """
        candidate = bound
        if self._in_flight:
            candidate = min(candidate, min(self._in_flight) - 1)
        self.position = max(self.position, candidate)
        return self.position


class MutationConsumer:
    def __init__(
        self,
        session_factory: sessionmaker,
        maintainer: EventMaintainer,
        lanes: int = 8,
        max_in_flight: int = 1000,
        batch_size: int = 500,
        poll_interval: float = 1.0,
        apply_timeout: float = 10.0,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 5.0,
        cursor_flush_interval: float = 1.0,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.maintainer = maintainer
        self.lane_count = lanes
        self.max_in_flight = max_in_flight
        self.lane_limit = max(1, math.ceil(max_in_flight / lanes))
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.apply_timeout = apply_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.cursor_flush_interval = cursor_flush_interval
        self.redis = redis

        self.watermark = SequenceWatermark()
        self.scan_cursor = 0
        self._lane_cursors: list[int] = []
        self._lane_in_flight: list[int] = []
        # 上限のため読み飛ばしたレーン → 読み飛ばした最初の sequence
        self._held: dict[int, int] = {}
        self._at_tail = False
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []
        self._saved_position: int | None = None
        self._last_flush = 0.0

    # ── ライフサイクル ───────────────────────────

    async def start(self) -> None:
        async with self.session_factory() as session:
            position = await cursors.load_sequence(session, cursors.EVENTS)
        self.watermark = SequenceWatermark(position)
        self.scan_cursor = position
        self._lane_cursors = [position] * self.lane_count
        self._lane_in_flight = [0] * self.lane_count
        self._held = {}
        self._at_tail = False
        self._saved_position = position
        self._queues = [asyncio.Queue() for _ in range(self.lane_count)]
        self._workers = [
            asyncio.create_task(self._lane(i, q)) for i, q in enumerate(self._queues)
        ]
        logger.info("Consumer started at sequence %s with %s lanes", position, self.lane_count)

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers = []
        await self.flush_cursor()

    def lane_for(self, customer_id: str) -> int:
        return zlib.crc32(customer_id.encode("utf-8")) % self.lane_count

    @property
    def position(self) -> int:
        """保存してよいカーソル位置。保留中のイベントより先には進まない。"""
        bound = self.scan_cursor
        if self._held:
            bound = min(bound, min(self._held.values()) - 1)
        return self.watermark.advance(bound)

    # ── 取り込み ─────────────────────────────────

    async def pump(self) -> int:
        """台帳から次のページを読み、レーンに振り分ける。振り分けた件数を返す。"""
        self._rewind_ready_lanes()
        async with self.session_factory() as session:
            page = await ledger.read_mutations(session, self.scan_cursor, self.batch_size)

        dispatched = 0
        for event in page:
            self.scan_cursor = event.sequence
            lane = self.lane_for(event.customer_id)
            if event.sequence <= self._lane_cursors[lane]:
                # 読み直しで再び見えた振り分け済みのイベント
                continue
            if lane in self._held or self._lane_in_flight[lane] >= self.lane_limit:
                self._held.setdefault(lane, event.sequence)
                continue
            self._lane_cursors[lane] = event.sequence
            self._lane_in_flight[lane] += 1
            self.watermark.dispatched(event.sequence)
            self._queues[lane].put_nowait(event)
            dispatched += 1
        self._at_tail = len(page) < self.batch_size
        return dispatched

    def _rewind_ready_lanes(self) -> None:
        """空きのできた保留レーンがあれば、その最初のイベントから読み直す。"""
        ready = [
            lane for lane in self._held
            if self._lane_in_flight[lane] < self.lane_limit
        ]
        if not ready:
            return
        restart = min(self._held.pop(lane) for lane in ready) - 1
        self.scan_cursor = min(self.scan_cursor, restart)
        self._at_tail = False

    @property
    def idle(self) -> bool:
        return self._at_tail and not self._held and len(self.watermark) == 0

    async def drain(self) -> int:
        """現時点でコミット済みの変更をすべて適用し終えるまで待つ。"""
        total = 0
        while True:
            count = await self.pump()
            total += count
            if self.idle:
                break
            if count == 0 and self._at_tail:
                await asyncio.gather(*(q.join() for q in self._queues))
        await self.flush_cursor()
        return total

    async def flush_cursor(self) -> None:
        position = self.position
        self._last_flush = time.monotonic()
        if position == self._saved_position:
            return
        async with self.session_factory() as session:
            await cursors.save_cursor(session, cursors.EVENTS, str(position))
            await session.commit()
        self._saved_position = position

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで台帳を読み進める。"""
        await self.start()
        pubsub = None
        if self.redis is not None:
            pubsub = self.redis.pubsub()
            await pubsub.subscribe("order_mutations")
            logger.info("Subscribed to order_mutations channel")
        try:
            while not shutdown_event.is_set():
                try:
                    count = await self.pump()
                    if time.monotonic() - self._last_flush >= self.cursor_flush_interval:
                        await self.flush_cursor()
                except Exception:
                    logger.exception("Failed to read mutations from the ledger")
                    count = 0
                    self._at_tail = True
                if count == 0 and self._at_tail:
                    await self._wait_for_wakeup(pubsub, shutdown_event)
        finally:
            if pubsub is not None:
                await pubsub.unsubscribe("order_mutations")
                await pubsub.aclose()
            await self.stop()

    async def _wait_for_wakeup(self, pubsub, shutdown_event: asyncio.Event) -> None:
        if pubsub is not None:
            try:
                await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_interval
                )
                return
            except Exception:
                logger.warning("Redis wake-up failed, falling back to polling", exc_info=True)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    # ── レーン ───────────────────────────────────

    async def _lane(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self._apply_until_done(index, event)
                self.watermark.completed(event.sequence)
                self._lane_in_flight[index] -= 1
            finally:
                queue.task_done()

    async def _apply_until_done(self, index: int, event: MutationEvent) -> None:
        """
        ストアが回復するまで同じイベントを再試行する。

        タイムアウトも一時的な障害として扱う。詰まるのはこのレーンだけ。
        想定外の例外で失敗したイベントは隔離してから先に進む。
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.wait_for(self.maintainer.apply(event), self.apply_timeout)
                return
            except (StoreUnavailable, asyncio.TimeoutError):
                pass
            except Exception as e:
                logger.exception("Lane %s failed to apply mutation %s", index, event.sequence)
                try:
                    await quarantine(self.session_factory, event, f"{type(e).__name__}: {e}")
                    return
                except StoreUnavailable:
                    pass
            delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay)
            logger.warning(
                "Lane %s stalled on mutation %s, retrying in %.2fs",
                index, event.sequence, delay,
            )
            await asyncio.sleep(delay)
