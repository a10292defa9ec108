"""
Spend Service - スキーマ

台帳(orders / order_mutations)と非正規化テーブル(customer_aggregates)、
保守用の補助テーブルを作成する。PostgreSQL と SQLite の両方で通る DDL のみ使う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id      VARCHAR(64) PRIMARY KEY,
        customer_id   VARCHAR(64) NOT NULL,
        amount        NUMERIC(12, 2) NOT NULL,
        status        VARCHAR(20) NOT NULL,
        last_sequence BIGINT NOT NULL,
        created_at    TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at    TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders (customer_id)",
    """
    CREATE TABLE IF NOT EXISTS order_mutations (
        sequence    BIGINT PRIMARY KEY,
        kind        VARCHAR(10) NOT NULL,
        order_id    VARCHAR(64) NOT NULL,
        customer_id VARCHAR(64) NOT NULL,
        old_amount  NUMERIC(12, 2),
        new_amount  NUMERIC(12, 2),
        old_status  VARCHAR(20),
        new_status  VARCHAR(20),
        recorded_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_mutations_customer
        ON order_mutations (customer_id, sequence)
    """,
    """
    CREATE TABLE IF NOT EXISTS customer_aggregates (
        customer_id           VARCHAR(64) PRIMARY KEY,
        total_spent           NUMERIC(12, 2) NOT NULL DEFAULT 0.00,
        last_applied_sequence BIGINT NOT NULL DEFAULT 0,
        updated_at            TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    # レポートクエリが ORDER BY / WHERE total_spent で使うインデックス
    """
    CREATE INDEX IF NOT EXISTS idx_customer_aggregates_total_spent
        ON customer_aggregates (total_spent)
    """,
    """
    CREATE TABLE IF NOT EXISTS mutation_quarantine (
        sequence       BIGINT PRIMARY KEY,
        customer_id    VARCHAR(64) NOT NULL,
        order_id       VARCHAR(64) NOT NULL,
        kind           VARCHAR(10) NOT NULL,
        reason         TEXT NOT NULL,
        quarantined_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS maintenance_cursors (
        name       VARCHAR(32) PRIMARY KEY,
        position   VARCHAR(255) NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
