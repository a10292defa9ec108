"""
Spend Service - DB 接続

エンジンとセッションファクトリの生成、生 SQL のバインド型、
接続系エラーを StoreUnavailable に変換するヘルパーをまとめる。

本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) で同じ SQL を動かす。
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import DateTime, Numeric, bindparam
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailable

# SQLite は Decimal / datetime を直接扱えないため、型付きでバインドする
MONEY = Numeric(12, 2)
TIMESTAMP = DateTime(timezone=True)


def money_param(name: str):
    return bindparam(name, type_=MONEY)


def timestamp_param(name: str):
    return bindparam(name, type_=TIMESTAMP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_datetime(value) -> datetime | None:
    """SQLite は日時を文字列で返すので datetime に戻す。"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def unavailable_on_connection_error():
    """接続断・ロック待ちなどの一時的なエラーを StoreUnavailable として投げ直す。"""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailable(str(e)) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailable(str(e)) from e
        raise
    except (ConnectionError, OSError) as e:
        raise StoreUnavailable(str(e)) from e
