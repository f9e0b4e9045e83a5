from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import MetaData
from contextlib import asynccontextmanager
from typing import AsyncIterator
from .config import settings
from .errors import AppError
import logging


convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    metadata = metadata


def masked_database_url(url: str) -> str:
    if settings.POSTGRES_PASSWORD:
        return url.replace(settings.POSTGRES_PASSWORD, "***")
    return url


logging.getLogger(__name__).info("creating async engine", extra={"url": masked_database_url(settings.DATABASE_URL)})
engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker[
    AsyncSession
](bind=engine, expire_on_commit=False, autoflush=False, autocommit=False)


def make_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker[AsyncSession](bind=bind, expire_on_commit=False, autoflush=False, autocommit=False)


@asynccontextmanager
async def get_async_session(factory: async_sessionmaker[AsyncSession] | None = None) -> AsyncIterator[AsyncSession]:
    session = (factory or AsyncSessionLocal)()
    try:
        logging.getLogger(__name__).debug("db session begin")
        yield session
        await session.commit()
        logging.getLogger(__name__).debug("db session commit")
    except AppError as e:
        # Domain errors roll back without an error log
        logging.getLogger(__name__).debug("db session rollback", extra={"error": type(e).__name__})
        await session.rollback()
        raise
    except Exception:
        logging.getLogger(__name__).exception("db session rollback due to error")
        await session.rollback()
        raise
    finally:
        await session.close()
        logging.getLogger(__name__).debug("db session closed")
