"""Persistence for student weekly schedules.

ScheduleStore is the interface the schedule service depends on. SQLScheduleStore
implements it on an async SQLAlchemy engine with one row per student.
"""

import json
from typing import Protocol

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import SQLModel, select

from classroom_tablet_manager.exceptions import ScheduleStoreError
from classroom_tablet_manager.models import StudentProfileRecord
from classroom_tablet_manager.schedule import DailySessions, StudentAppProfile

_sessions_adapter = TypeAdapter(dict[str, DailySessions])


class ScheduleStore(Protocol):
    """Reads and writes StudentAppProfile documents keyed by student id."""

    async def fetch_all(self) -> list[StudentAppProfile]: ...

    async def upsert(self, profile: StudentAppProfile) -> None: ...


class SQLScheduleStore:
    """ScheduleStore backed by a SQL database.

    Attributes:
        db_engine: Async SQLAlchemy engine for profile persistence.
    """

    def __init__(self, db_engine: AsyncEngine) -> None:
        self.db_engine = db_engine

    async def create_tables(self) -> None:
        """Create the profile table if it does not exist."""
        try:
            async with self.db_engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
        except SQLAlchemyError as e:
            raise ScheduleStoreError(f"Failed to create schedule tables: {e}") from e

    @staticmethod
    def _to_profile(record: StudentProfileRecord) -> StudentAppProfile:
        try:
            sessions = _sessions_adapter.validate_json(record.sessions_json)
        except ValidationError as e:
            raise ScheduleStoreError(
                f"Stored schedule for student {record.student_id} is malformed",
                {"student_id": record.student_id},
            ) from e
        return StudentAppProfile(student_id=record.student_id, location_id=record.location_id, sessions=sessions)

    @staticmethod
    def _to_record(profile: StudentAppProfile) -> StudentProfileRecord:
        sessions = {day: daily.model_dump(mode="json", by_alias=True) for day, daily in profile.sessions.items()}
        return StudentProfileRecord(
            student_id=profile.student_id,
            location_id=profile.location_id,
            sessions_json=json.dumps(sessions),
        )

    async def fetch_all(self) -> list[StudentAppProfile]:
        """Return every stored profile.

        Raises:
            ScheduleStoreError: If the database cannot be read or a row is malformed.
        """
        try:
            async with AsyncSession(self.db_engine) as session:
                result = await session.execute(select(StudentProfileRecord))
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise ScheduleStoreError(f"Failed to fetch student profiles: {e}") from e
        return [self._to_profile(record) for record in records]

    async def upsert(self, profile: StudentAppProfile) -> None:
        """Insert or replace a student's profile.

        Raises:
            ScheduleStoreError: If the write fails.
        """
        try:
            async with AsyncSession(self.db_engine) as session:
                await session.merge(self._to_record(profile))
                await session.commit()
        except SQLAlchemyError as e:
            raise ScheduleStoreError(
                f"Failed to save profile for student {profile.student_id}: {e}",
                {"student_id": profile.student_id},
            ) from e
