"""Repository for the durable progress record."""

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from site_discovery.db import scoped_session
from site_discovery.models import PROGRESS_SCHEMA_VERSION, ProgressRecord


class ProgressRepository:
    """Reads and writes ProgressRecord rows, one transaction per call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self.valid_columns = {column.key for column in ProgressRecord.__table__.columns}

    async def find_by_key(self, key: str) -> Optional[ProgressRecord]:
        async with scoped_session(self.session_maker) as session:
            result = await session.execute(select(ProgressRecord).where(ProgressRecord.key == key))
            return result.scalars().one_or_none()

    async def upsert(self, key: str, data: dict) -> ProgressRecord:
        """Create or update the record for key with the given columns."""
        values = {k: v for k, v in data.items() if k in self.valid_columns and k != "key"}
        async with scoped_session(self.session_maker) as session:
            result = await session.execute(select(ProgressRecord).where(ProgressRecord.key == key))
            record = result.scalars().one_or_none()
            if record is None:
                record = ProgressRecord(key=key, version=PROGRESS_SCHEMA_VERSION, **values)
                session.add(record)
            else:
                for column, value in values.items():
                    setattr(record, column, value)
                record.version = PROGRESS_SCHEMA_VERSION
            await session.flush()
            return record

    async def delete_by_key(self, key: str) -> bool:
        async with scoped_session(self.session_maker) as session:
            result = await session.execute(delete(ProgressRecord).where(ProgressRecord.key == key))
            return result.rowcount > 0
