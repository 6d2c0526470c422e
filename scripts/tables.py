import argparse
import asyncio

from chathub.database.postgres import engine, initialize_db
from chathub.models.base import Base

async def create_tables(drop: bool = False):
    """
    Create all database tables based on the SQLAlchemy models,
    optionally dropping the existing ones first.
    """
    if drop:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await initialize_db()
    await engine.dispose()

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the chathub tables.")
    parser.add_argument("--drop", action="store_true", help="drop existing tables first")
    args = parser.parse_args()
    asyncio.run(create_tables(drop=args.drop))
