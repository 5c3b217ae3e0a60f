"""Schedule lookups and edits on top of a ScheduleStore.

ScheduleService keeps an in-memory cache of StudentAppProfile values loaded
from the store. Lookups read the cache only; edits go through
update_and_save_session (or the bulk and editor helpers built on it), which
write the whole profile back to the store.

Edits of one student are serialized by a per-student lock, so edits of
different timeslots never overwrite each other. Of two edits of the same
student, day and timeslot, the one applied last wins. Edits of different
students are independent.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from classroom_tablet_manager import events
from classroom_tablet_manager.schedule import (
    DailySessions,
    Session,
    StudentAppProfile,
    Timeslot,
    TimeslotSettings,
    current_day_token,
    resolve_timeslot,
)
from classroom_tablet_manager.schedule_store import ScheduleStore


@dataclass(frozen=True)
class ExistingProfile:
    """The student already has a profile."""

    profile: StudentAppProfile


@dataclass(frozen=True)
class MissingProfile:
    """The student has no profile yet; the first edit creates one."""

    student_id: int
    location_id: int = 0


ProfileLookup = ExistingProfile | MissingProfile


class ScheduleService:
    """Answers "which Session applies" and persists schedule edits.

    Attributes:
        store: Persistence for student profiles.
        timeslot_settings: Hour ranges used to resolve the current timeslot.
        event_bus: Optional channel notified after loads and saves.
        logger: Logger for service operations.
    """

    def __init__(
        self,
        store: ScheduleStore,
        timeslot_settings: TimeslotSettings | None = None,
        event_bus: events.EventBus | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.timeslot_settings = timeslot_settings or TimeslotSettings()
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)
        self._profiles: dict[int, StudentAppProfile] = {}
        self._student_locks: dict[int, asyncio.Lock] = {}

    @property
    def profiles(self) -> dict[int, StudentAppProfile]:
        """Cached profiles keyed by student id (a copy)."""
        return dict(self._profiles)

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, payload)

    async def load_profiles(self) -> int:
        """Replace the cache with every profile in the store.

        Returns:
            Number of profiles loaded.

        Raises:
            ScheduleStoreError: If the store cannot be read.
        """
        profiles = await self.store.fetch_all()
        self._profiles = {profile.student_id: profile for profile in profiles}
        self.logger.info("Loaded %d student profiles", len(self._profiles))
        await self._publish(events.PROFILES_LOADED, {"count": len(self._profiles)})
        return len(self._profiles)

    def has_profile(self, student_id: int) -> bool:
        return student_id in self._profiles

    def lookup_profile(self, student_id: int, location_id: int = 0) -> ProfileLookup:
        profile = self._profiles.get(student_id)
        if profile is None:
            return MissingProfile(student_id=student_id, location_id=location_id)
        return ExistingProfile(profile=profile)

    def get_daily_sessions(self, student_id: int, day: str) -> DailySessions | None:
        profile = self._profiles.get(student_id)
        if profile is None:
            return None
        return profile.sessions.get(day)

    def get_session(self, student_id: int, day: str, timeslot: Timeslot) -> Session | None:
        """Return the Session scheduled for a student on ``day`` at ``timeslot``.

        None means "no schedule": the student has no profile, the profile has
        no entry for ``day``, or ``timeslot`` is BLOCKED. An entry holding an
        empty Session is returned as that empty Session.
        """
        if timeslot is Timeslot.BLOCKED:
            return None
        daily = self.get_daily_sessions(student_id, day)
        if daily is None:
            return None
        return daily.session_for(timeslot)

    def current_session(self, student_id: int, now: datetime | None = None) -> Session | None:
        """Session that applies to a student at ``now`` (local wall clock when omitted)."""
        now = now or datetime.now()
        timeslot = resolve_timeslot(now.hour, self.timeslot_settings)
        return self.get_session(student_id, current_day_token(now), timeslot)

    def _lock_for(self, student_id: int) -> asyncio.Lock:
        return self._student_locks.setdefault(student_id, asyncio.Lock())

    async def _save_profile(self, profile: StudentAppProfile) -> None:
        await self.store.upsert(profile)
        self._profiles[profile.student_id] = profile
        await self._publish(events.PROFILE_SAVED, {"student_id": profile.student_id})

    @staticmethod
    def _profile_from(lookup: ProfileLookup) -> StudentAppProfile:
        match lookup:
            case ExistingProfile(profile=profile):
                return profile
            case MissingProfile(student_id=student_id, location_id=location_id):
                return StudentAppProfile.empty(student_id, location_id)

    @staticmethod
    def _with_daily(profile: StudentAppProfile, day: str, daily: DailySessions) -> StudentAppProfile:
        return profile.model_copy(update={"sessions": {**profile.sessions, day: daily}})

    async def update_and_save_session(
        self,
        student_id: int,
        day: str,
        timeslot: Timeslot,
        apps: list[str | int],
        duration_minutes: float,
        single_app_lock: bool = False,
        location_id: int = 0,
    ) -> StudentAppProfile:
        """Replace one timeslot's Session and persist the student's profile.

        A student without a profile gets an empty one first. Only the
        ``timeslot`` slot of ``day`` changes; the day's other two sessions and
        the other days are written back unchanged.

        Args:
            student_id: Student whose schedule is edited.
            day: Day token, e.g. "Mon".
            timeslot: AM, PM or HOME.
            apps: App identifiers for the new Session.
            duration_minutes: Session length.
            single_app_lock: Lock the device to the single app.
            location_id: Location recorded on a newly created profile.

        Returns:
            The saved profile.

        Raises:
            ValueError: If ``timeslot`` is BLOCKED.
            ScheduleStoreError: If the write fails; the cache is left unchanged.
        """
        if timeslot is Timeslot.BLOCKED:
            raise ValueError("Sessions cannot be scheduled in the blocked timeslot")
        session = Session(apps=apps, duration_minutes=duration_minutes, single_app_lock=single_app_lock)
        async with self._lock_for(student_id):
            lookup = self.lookup_profile(student_id, location_id)
            if isinstance(lookup, MissingProfile):
                self.logger.info("Creating schedule profile for student %d", student_id)
            profile = self._profile_from(lookup)

            daily = profile.sessions.get(day, DailySessions.empty()).with_session(timeslot, session)
            updated = self._with_daily(profile, day, daily)

            await self._save_profile(updated)
        self.logger.debug("Saved %s %s session for student %d", day, timeslot.value, student_id)
        return updated

    async def bulk_update(
        self,
        student_ids: Iterable[int],
        days: Iterable[str],
        timeslots: Iterable[Timeslot],
        apps: list[str | int],
        duration_minutes: float,
        single_app_lock: bool = False,
    ) -> list[StudentAppProfile]:
        """Apply the same Session to every day/timeslot pair for every student.

        Each student's profile is written once.

        Returns:
            The saved profiles, in ``student_ids`` order.
        """
        days = list(days)
        timeslots = list(timeslots)
        if Timeslot.BLOCKED in timeslots:
            raise ValueError("Sessions cannot be scheduled in the blocked timeslot")
        session = Session(apps=apps, duration_minutes=duration_minutes, single_app_lock=single_app_lock)

        saved: list[StudentAppProfile] = []
        for student_id in student_ids:
            async with self._lock_for(student_id):
                profile = self._profile_from(self.lookup_profile(student_id))
                for day in days:
                    daily = profile.sessions.get(day, DailySessions.empty())
                    for timeslot in timeslots:
                        daily = daily.with_session(timeslot, session)
                    profile = self._with_daily(profile, day, daily)
                await self._save_profile(profile)
            saved.append(profile)
        self.logger.info("Bulk schedule update saved %d profiles", len(saved))
        return saved

    def open_editor(self, student_id: int, day: str) -> "DailySessionsEditor":
        """Start editing a student's day, remembering the value as loaded."""
        original = self.get_daily_sessions(student_id, day) or DailySessions.empty()
        return DailySessionsEditor(student_id=student_id, day=day, original=original, current=original)

    async def save_daily_sessions(self, editor: "DailySessionsEditor") -> bool:
        """Persist an editor's day if it differs from the value at open time.

        Returns:
            True if a write happened, False for an unchanged day.
        """
        if not editor.is_modified:
            self.logger.debug("No changes for student %d on %s; skipping save", editor.student_id, editor.day)
            return False
        async with self._lock_for(editor.student_id):
            profile = self._profile_from(self.lookup_profile(editor.student_id))
            await self._save_profile(self._with_daily(profile, editor.day, editor.current))
        editor.original = editor.current
        return True


@dataclass
class DailySessionsEditor:
    """Working copy of one student's day for an editing surface.

    Attributes:
        student_id: Student being edited.
        day: Day token being edited.
        original: Value when the editor was opened or last saved.
        current: Value with the edits applied.
    """

    student_id: int
    day: str
    original: DailySessions
    current: DailySessions

    @property
    def is_modified(self) -> bool:
        return self.current != self.original

    def set_session(self, timeslot: Timeslot, session: Session) -> None:
        self.current = self.current.with_session(timeslot, session)
