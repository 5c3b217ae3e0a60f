"""Database models for the classroom tablet manager.

This module defines SQLModel classes for database persistence.
"""

from sqlmodel import Field, SQLModel


class StudentProfileRecord(SQLModel, table=True):
    """Database row holding one student's weekly schedule.

    Attributes:
        student_id: Directory id of the student; one row per student.
        location_id: Location the student belongs to.
        sessions_json: JSON object mapping day tokens to daily sessions,
            in the camelCase document shape (amSession, sessionLength, ...).
    """

    __tablename__ = "student_profiles"

    student_id: int = Field(primary_key=True)
    location_id: int = 0
    sessions_json: str = "{}"
