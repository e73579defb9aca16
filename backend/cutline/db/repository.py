"""SQLAlchemy-backed job persistence."""
import asyncio
import logging
from typing import List

from sqlalchemy import delete, select

from cutline.db.database import close_db, create_engine, create_session_maker, init_db
from cutline.db.records import JobRecord
from cutline.models.job import Job

logger = logging.getLogger(__name__)


class SqlJobRepository:
    """Writes job snapshots to a relational table and reads them back."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self._engine = create_engine(database_url, echo=echo)
        self._session_maker = create_session_maker(self._engine)
        # SQLite allows one writer at a time
        self._write_lock = asyncio.Lock()

    async def open(self):
        await init_db(self._engine)
        logger.info(f"Job repository ready at {self.database_url}")

    async def close(self):
        await close_db(self._engine)

    async def save(self, job: Job):
        """Insert or update the row for a job snapshot."""
        async with self._write_lock:
            async with self._session_maker() as session:
                record = await session.get(JobRecord, job.id)
                if record is None:
                    session.add(JobRecord.from_job(job))
                else:
                    record.apply(job)
                await session.commit()

    async def delete(self, job_id: str):
        async with self._write_lock:
            async with self._session_maker() as session:
                await session.execute(delete(JobRecord).where(JobRecord.id == job_id))
                await session.commit()

    async def load_all(self) -> List[Job]:
        async with self._session_maker() as session:
            result = await session.execute(select(JobRecord).order_by(JobRecord.created_at))
            return [record.to_job() for record in result.scalars().all()]
