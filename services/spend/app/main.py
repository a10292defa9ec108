"""
Spend Service - FastAPI エントリーポイント

customer_aggregates.total_spent(非正規化された累計購入額)を
注文台帳と整合させ続けるサービス。

┌────────────┐  order_mutations  ┌──────────────────┐   apply_delta   ┌─────────────────────┐
│  台帳       │ ───────────────▶ │ MutationConsumer │ ──────────────▶ │ customer_aggregates │
│ (orders)   │                   │ (顧客ごとのレーン) │                 │   total_spent       │
└─────┬──────┘                   └──────────────────┘                 └──────────▲──────────┘
      │            再計算 (スナップショット sequence で set)                     │
      └──────────▶ BatchMaintainer / ConsistencyChecker ───────────────────────┘

起動時にサブスクライバー・バッチ・監査をバックグラウンドタスクとして開始する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import commands, queries
from .checker import ConsistencyChecker
from .config import Settings
from .db import create_engine, make_session_factory
from .errors import (
    DataIntegrityError,
    NotFound,
    OrderConflict,
    SequenceConflict,
    StoreUnavailable,
)
from .maintainer import BatchMaintainer, EventMaintainer, Reconciler, list_quarantine
from .models import OrderStatus
from .policy import InclusionPolicy
from .scheduler import run_periodic
from .schema import create_schema
from .store import AggregateStore
from .subscriber import MutationConsumer

logger = logging.getLogger(__name__)

settings = Settings.from_env()

engine = create_engine(settings.database_url)
async_session = make_session_factory(engine)
redis_pool: aioredis.Redis | None = None

policy = InclusionPolicy(settings.counted_statuses)
store = AggregateStore(async_session, require_existing=settings.require_existing)
event_maintainer = EventMaintainer(
    async_session,
    store,
    policy,
    retry_attempts=settings.retry_attempts,
    retry_base_delay=settings.retry_base_delay,
    retry_max_delay=settings.retry_max_delay,
    batch_size=settings.batch_size,
)
batch_maintainer = BatchMaintainer(
    async_session,
    store,
    policy,
    mode=settings.recompute_mode,
    batch_size=settings.batch_size,
)
reconcilers: dict[str, Reconciler] = {
    "event": event_maintainer,
    "batch": batch_maintainer,
}


def build_checker() -> ConsistencyChecker:
    return ConsistencyChecker(
        async_session,
        store,
        batch_maintainer,
        epsilon=settings.epsilon,
        batch_size=settings.batch_size,
        redis=redis_pool,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にスキーマを用意し、サブスクライバー・バッチ・監査を開始する。"""
    global redis_pool
    logging.basicConfig(level=settings.log_level)
    await create_schema(engine)
    if settings.redis_url:
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

    shutdown_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if settings.background_tasks:
        consumer = MutationConsumer(
            async_session,
            event_maintainer,
            lanes=settings.lanes,
            max_in_flight=settings.max_in_flight,
            batch_size=settings.batch_size,
            poll_interval=settings.poll_interval,
            apply_timeout=settings.apply_timeout,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            cursor_flush_interval=settings.cursor_flush_interval,
            redis=redis_pool,
        )
        tasks.append(asyncio.create_task(consumer.run(shutdown_event)))
        if settings.batch_interval > 0:
            tasks.append(asyncio.create_task(run_periodic(
                "batch recompute", batch_maintainer.reconcile,
                settings.batch_interval, shutdown_event,
            )))
        if settings.audit_interval > 0:
            tasks.append(asyncio.create_task(run_periodic(
                "audit", build_checker().audit,
                settings.audit_interval, shutdown_event,
            )))
    logger.info("Spend service started (%s, %s background tasks)", policy, len(tasks))
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Spend Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────

Money = Annotated[Decimal, Field(ge=0, decimal_places=2)]


class PlaceOrderRequest(BaseModel):
    order_id: str
    customer_id: str
    amount: Money
    status: OrderStatus = OrderStatus.PENDING


class ChangeOrderRequest(BaseModel):
    amount: Money | None = None
    status: OrderStatus | None = None


def _mutation_response(event) -> dict:
    return {
        "sequence": event.sequence,
        "kind": event.kind.value,
        "order_id": event.order_id,
        "customer_id": event.customer_id,
    }


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(404, str(e))
    if isinstance(e, OrderConflict):
        return HTTPException(409, str(e))
    if isinstance(e, DataIntegrityError):
        return HTTPException(422, str(e))
    return HTTPException(503, str(e))


# ── Command Endpoints (台帳の書き込み側) ─────────

@app.post("/commands/orders")
async def cmd_place_order(req: PlaceOrderRequest):
    """注文作成コマンド"""
    async with async_session() as session:
        try:
            event = await commands.place_order(
                session, redis_pool,
                req.order_id, req.customer_id, req.amount, req.status.value,
            )
        except (OrderConflict, DataIntegrityError, SequenceConflict) as e:
            raise _http_error(e)
        return _mutation_response(event)


@app.patch("/commands/orders/{order_id}")
async def cmd_change_order(order_id: str, req: ChangeOrderRequest):
    """注文変更コマンド(ステータス遷移・金額訂正)"""
    async with async_session() as session:
        try:
            event = await commands.change_order(
                session, redis_pool, order_id,
                amount=req.amount,
                status=req.status.value if req.status else None,
            )
        except (NotFound, DataIntegrityError, SequenceConflict) as e:
            raise _http_error(e)
        return _mutation_response(event)


@app.delete("/commands/orders/{order_id}")
async def cmd_delete_order(order_id: str):
    """注文削除コマンド"""
    async with async_session() as session:
        try:
            event = await commands.delete_order(session, redis_pool, order_id)
        except (NotFound, SequenceConflict) as e:
            raise _http_error(e)
        return _mutation_response(event)


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_orders(customer_id: str):
    async with async_session() as session:
        return await queries.list_orders(session, customer_id)


@app.get("/queries/customers")
async def query_top_spenders(min_total: Decimal | None = None, limit: int = 100):
    """total_spent の降順で顧客を返す"""
    async with async_session() as session:
        return await queries.list_top_spenders(session, min_total, limit)


@app.get("/queries/customers/{customer_id}")
async def query_customer(customer_id: str):
    async with async_session() as session:
        result = await queries.get_customer_aggregate(session, customer_id)
        if not result:
            raise HTTPException(404, "Customer not found")
        return result


# ── Maintenance Endpoints ────────────────────────

@app.post("/maintenance/reconcile/{strategy}")
async def maintenance_reconcile(strategy: str):
    """指定した戦略 (event / batch) で 1 回だけストアを台帳に追いつかせる"""
    reconciler = reconcilers.get(strategy)
    if reconciler is None:
        raise HTTPException(404, f"Unknown strategy: {strategy}")
    try:
        count = await reconciler.reconcile()
    except (NotFound, StoreUnavailable) as e:
        raise _http_error(e)
    return {"strategy": strategy, "count": count}


@app.post("/maintenance/rebuild")
async def maintenance_rebuild():
    """全顧客の total_spent を台帳から作り直す(初回のバックフィル)"""
    try:
        count = await batch_maintainer.reconcile(full=True)
    except (NotFound, StoreUnavailable) as e:
        raise _http_error(e)
    return {"rebuilt": count}


@app.post("/maintenance/audit")
async def maintenance_audit(customer_id: str | None = None):
    try:
        discrepancies = await build_checker().audit(customer_id)
    except (NotFound, StoreUnavailable) as e:
        raise _http_error(e)
    return [d.model_dump(mode="json") for d in discrepancies]


@app.get("/maintenance/quarantine")
async def maintenance_quarantine():
    return await list_quarantine(async_session)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "spend-service"}
