# chathub/database/postgres.py
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from chathub.core.config import settings
from chathub.models.base import Base

engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def get_db_session():
    """Request-scoped session; committed when the handler returns cleanly."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def initialize_db():
    """Create any missing chat tables. Existing tables are left untouched."""
    # Registers every table on Base.metadata.
    from chathub.models import (  # noqa: F401
        direct_message, message, presence, reaction, read_receipt, room, user
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def upsert_insert(session: AsyncSession, model):
    """
    INSERT construct for `model` that accepts ON CONFLICT clauses on the
    dialect the session is bound to.
    """
    return _INSERT_BY_DIALECT.get(session.bind.dialect.name, postgresql.insert)(model)
