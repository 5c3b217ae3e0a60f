"""Weekly schedule data model and timeslot resolution.

A student's weekly schedule is a StudentAppProfile: a map from short day tokens
("Sun".."Sat") to DailySessions, each holding one Session per timeslot. The
functions here turn a wall-clock instant into the day token and timeslot used
to look those sessions up. Nothing in this module performs I/O.
"""

from datetime import datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_AM_START = 8
DEFAULT_AM_END = 12
DEFAULT_PM_START = 12
DEFAULT_PM_END = 17
DEFAULT_HOME_START = 17
DEFAULT_HOME_END = 24


class Timeslot(StrEnum):
    """Part of the day a session applies to."""

    AM = "am"
    PM = "pm"
    HOME = "home"
    BLOCKED = "blocked"

    @property
    def display_name(self) -> str:
        return {
            Timeslot.AM: "AM",
            Timeslot.PM: "PM",
            Timeslot.HOME: "Home",
            Timeslot.BLOCKED: "Overnight",
        }[self]

    @property
    def active_session_label(self) -> str:
        """Label used in active-session document ids."""
        return {
            Timeslot.AM: "morning",
            Timeslot.PM: "afternoon",
            Timeslot.HOME: "evening",
            Timeslot.BLOCKED: "blocked",
        }[self]


SCHEDULED_TIMESLOTS: tuple[Timeslot, ...] = (Timeslot.AM, Timeslot.PM, Timeslot.HOME)


class DayOfWeek(StrEnum):
    """Day tokens used as keys in StudentAppProfile.sessions."""

    SUNDAY = "Sun"
    MONDAY = "Mon"
    TUESDAY = "Tues"
    WEDNESDAY = "Wed"
    THURSDAY = "Thurs"
    FRIDAY = "Fri"
    SATURDAY = "Sat"

    @classmethod
    def from_weekday(cls, weekday: int) -> "DayOfWeek":
        """Map a Python weekday (Monday == 0) to its day token."""
        ordered = (
            cls.MONDAY,
            cls.TUESDAY,
            cls.WEDNESDAY,
            cls.THURSDAY,
            cls.FRIDAY,
            cls.SATURDAY,
            cls.SUNDAY,
        )
        return ordered[weekday]


class Session(BaseModel):
    """What a device should be doing during one timeslot.

    Attributes:
        apps: Ordered, duplicate-free app identifiers (bundle ids or numeric app ids).
        duration_minutes: How long the restriction lasts.
        single_app_lock: Lock the device into a single app. Only meaningful
            when ``apps`` has exactly one element; callers keep the two consistent.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    apps: list[str | int] = []
    duration_minutes: float = Field(default=0, ge=0, alias="sessionLength")
    single_app_lock: bool = Field(default=False, alias="oneAppLock")

    @field_validator("apps")
    @classmethod
    def _dedupe_apps(cls, apps: list[str | int]) -> list[str | int]:
        return list(dict.fromkeys(apps))


class DailySessions(BaseModel):
    """The three scheduled sessions of one day.

    Equality is structural: two values are equal iff all three sessions are equal.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    am: Session = Field(default_factory=Session, alias="amSession")
    pm: Session = Field(default_factory=Session, alias="pmSession")
    home: Session = Field(default_factory=Session, alias="homeSession")

    @classmethod
    def empty(cls) -> Self:
        return cls()

    def session_for(self, timeslot: Timeslot) -> Session:
        """Return the session scheduled for ``timeslot``.

        Raises:
            ValueError: If ``timeslot`` is BLOCKED, which carries no session.
        """
        if timeslot is Timeslot.BLOCKED:
            raise ValueError("The blocked timeslot has no session")
        return getattr(self, timeslot.value)

    def with_session(self, timeslot: Timeslot, session: Session) -> Self:
        """Return a copy with only ``timeslot`` replaced."""
        if timeslot is Timeslot.BLOCKED:
            raise ValueError("The blocked timeslot has no session")
        return self.model_copy(update={timeslot.value: session})


class StudentAppProfile(BaseModel):
    """A student's weekly schedule.

    Attributes:
        student_id: Directory id of the student.
        location_id: Location the student belongs to.
        sessions: Day token -> DailySessions. Need not contain all seven days.
    """

    model_config = ConfigDict(populate_by_name=True)

    student_id: int = Field(alias="id")
    location_id: int = Field(default=0, alias="locationId")
    sessions: dict[str, DailySessions] = {}

    @classmethod
    def empty(cls, student_id: int, location_id: int = 0) -> Self:
        return cls(student_id=student_id, location_id=location_id, sessions={})


class TimeslotSettings(BaseModel):
    """Configurable hour ranges, half-open ``[start, end)`` on a 24h clock.

    Hours outside all three ranges resolve to Timeslot.BLOCKED. Overlapping
    ranges are allowed; AM wins over PM, PM over HOME.
    """

    am_start: int = Field(default=DEFAULT_AM_START, ge=0, le=24)
    am_end: int = Field(default=DEFAULT_AM_END, ge=0, le=24)
    pm_start: int = Field(default=DEFAULT_PM_START, ge=0, le=24)
    pm_end: int = Field(default=DEFAULT_PM_END, ge=0, le=24)
    home_start: int = Field(default=DEFAULT_HOME_START, ge=0, le=24)
    home_end: int = Field(default=DEFAULT_HOME_END, ge=0, le=24)

    @model_validator(mode="after")
    def _ranges_are_ordered(self) -> Self:
        for timeslot in (Timeslot.AM, Timeslot.PM, Timeslot.HOME):
            start, end = self.range_for(timeslot)
            if start > end:
                raise ValueError(f"{timeslot.value} range start {start} is after end {end}")
        return self

    def range_for(self, timeslot: Timeslot) -> tuple[int, int]:
        if timeslot is Timeslot.BLOCKED:
            raise ValueError("The blocked timeslot has no configured range")
        prefix = timeslot.value
        return getattr(self, f"{prefix}_start"), getattr(self, f"{prefix}_end")

    def set_range(self, timeslot: Timeslot, start: int, end: int) -> None:
        """Adjust one timeslot's hour range.

        Raises:
            ValueError: If the range is outside 0..24 or ``start > end``.
        """
        if timeslot is Timeslot.BLOCKED:
            raise ValueError("The blocked timeslot has no configured range")
        if not (0 <= start <= 24 and 0 <= end <= 24):  # noqa: PLR2004
            raise ValueError(f"Hours must be within 0..24, got {start}..{end}")
        if start > end:
            raise ValueError(f"Range start {start} is after end {end}")
        setattr(self, f"{timeslot.value}_start", start)
        setattr(self, f"{timeslot.value}_end", end)

    def reset_to_defaults(self) -> None:
        defaults = TimeslotSettings()
        for name in type(self).model_fields:
            setattr(self, name, getattr(defaults, name))

    def time_range_string(self, timeslot: Timeslot) -> str:
        """Readable range for display, e.g. ``"8:00 AM - 11:59 AM"``."""
        if timeslot is Timeslot.BLOCKED:
            return "Overnight (No Access)"
        start, end = self.range_for(timeslot)
        if timeslot is Timeslot.HOME and end == 24:  # noqa: PLR2004
            end_display = "11:59 PM"
        else:
            end_display = _format_hour(end - 1, minute=59)
        return f"{_format_hour(start)} - {end_display}"


def _format_hour(hour: int, minute: int = 0) -> str:
    period = "AM" if hour < 12 else "PM"  # noqa: PLR2004
    display_hour = 12 if hour in (0, 24) else (hour - 12 if hour > 12 else hour)  # noqa: PLR2004
    return f"{display_hour}:{minute:02d} {period}"


def resolve_timeslot(hour: int, settings: TimeslotSettings | None = None) -> Timeslot:
    """Classify an hour of the day.

    Total over 0..23 and deterministic for unchanged settings.

    Args:
        hour: Hour on a 24h clock.
        settings: Hour ranges to classify against; defaults apply when omitted.

    Returns:
        The first of AM, PM, HOME whose range contains ``hour``, else BLOCKED.

    Raises:
        ValueError: If ``hour`` is not within 0..23.
    """
    if not 0 <= hour <= 23:  # noqa: PLR2004
        raise ValueError(f"Hour must be within 0..23, got {hour}")
    settings = settings or TimeslotSettings()
    for timeslot in SCHEDULED_TIMESLOTS:
        start, end = settings.range_for(timeslot)
        if start <= hour < end:
            return timeslot
    return Timeslot.BLOCKED


def current_day_token(now: datetime | None = None) -> str:
    """Day token for ``now`` (local wall clock when omitted)."""
    now = now or datetime.now()
    return DayOfWeek.from_weekday(now.weekday()).value


def active_session_id(
    company_id: int,
    location_id: int,
    student_id: int,
    date: datetime,
    timeslot: Timeslot,
) -> str:
    """Composite document id of a student's active login session.

    Example: ``2001128_1_9_20241216_afternoon``.
    """
    return f"{company_id}_{location_id}_{student_id}_{date:%Y%m%d}_{timeslot.active_session_label}"
