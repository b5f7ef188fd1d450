from typing import Tuple
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from aurelia.db.utils import _normalize_db_url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(_normalize_db_url(database_url), echo=echo)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


def create_engine_and_session(database_url: str, echo: bool = False) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = build_engine(database_url, echo=echo)
    return engine, build_session_factory(engine)
