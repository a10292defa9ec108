"""
Spend Service - 保守カーソル

イベント適用・バッチ・監査の進捗位置を maintenance_cursors に保存する。
再起動や中断の後は、保存された位置から再開する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import timestamp_param, utcnow

EVENTS = "events"
BATCH = "batch"
AUDIT = "audit"


async def load_cursor(session: AsyncSession, name: str, default: str = "") -> str:
    result = await session.execute(
        text("SELECT position FROM maintenance_cursors WHERE name = :name"),
        {"name": name},
    )
    row = result.fetchone()
    return row.position if row else default


async def save_cursor(session: AsyncSession, name: str, position: str) -> None:
    """カーソルを UPSERT する。コミットは呼び出し側が行う。"""
    await session.execute(
        text("""
            INSERT INTO maintenance_cursors (name, position, updated_at)
            VALUES (:name, :position, :now)
            ON CONFLICT (name) DO UPDATE SET
                position = excluded.position,
                updated_at = excluded.updated_at
        """).bindparams(timestamp_param("now")),
        {"name": name, "position": position, "now": utcnow()},
    )


async def load_sequence(session: AsyncSession, name: str) -> int:
    return int(await load_cursor(session, name, "0") or 0)
