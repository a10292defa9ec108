"""
Spend Service - 定期実行

バッチ再計算と監査を、それぞれ独立した間隔で繰り返し実行する。
1 回の実行が失敗してもループは止めず、次の周期で再試行する。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


async def run_periodic(
    name: str,
    job: Callable[[], Awaitable[object]],
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに job を実行する。"""
    logger.info("Scheduled %s every %ss", name, interval)
    while not shutdown_event.is_set():
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled job %s failed", name)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
