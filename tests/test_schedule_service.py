"""Tests for schedule lookups and edits."""

import asyncio
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, Mock

from classroom_tablet_manager import events
from classroom_tablet_manager.exceptions import ScheduleStoreError
from classroom_tablet_manager.schedule import DailySessions, Session, StudentAppProfile, Timeslot, TimeslotSettings
from classroom_tablet_manager.schedule_service import ExistingProfile, MissingProfile, ScheduleService

READER_SESSION = Session(apps=["com.reader.app"], duration_minutes=20, single_app_lock=True)


def make_profile(student_id: int = 42, **days: DailySessions) -> StudentAppProfile:
    return StudentAppProfile(student_id=student_id, location_id=1, sessions=days)


class TestScheduleService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.mock_store = Mock()
        self.mock_store.fetch_all = AsyncMock(return_value=[make_profile(Mon=DailySessions(pm=READER_SESSION))])
        self.mock_store.upsert = AsyncMock()
        self.mock_logger = Mock()
        self.event_bus = events.EventBus()
        self.service = ScheduleService(
            store=self.mock_store,
            timeslot_settings=TimeslotSettings(),
            event_bus=self.event_bus,
            logger=self.mock_logger,
        )
        await self.service.load_profiles()

    async def test_get_session_end_to_end(self) -> None:
        """A stored Monday PM session is returned as-is; a missing day is None."""
        self.assertEqual(self.service.get_session(42, "Mon", Timeslot.PM), READER_SESSION)
        self.assertIsNone(self.service.get_session(42, "Tues", Timeslot.PM))

    async def test_get_session_distinguishes_no_schedule_from_empty(self) -> None:
        self.assertIsNone(self.service.get_session(7, "Mon", Timeslot.PM))
        self.assertEqual(self.service.get_session(42, "Mon", Timeslot.AM), Session())
        self.assertIsNone(self.service.get_session(42, "Mon", Timeslot.BLOCKED))

    async def test_lookup_profile_sum_type(self) -> None:
        self.assertIsInstance(self.service.lookup_profile(42), ExistingProfile)
        missing = self.service.lookup_profile(7, location_id=3)
        self.assertEqual(missing, MissingProfile(student_id=7, location_id=3))

    async def test_update_creates_missing_profile(self) -> None:
        saved = await self.service.update_and_save_session(
            7, "Wed", Timeslot.AM, ["com.math.app"], 15, location_id=3
        )

        self.assertEqual(saved.student_id, 7)
        self.assertEqual(saved.location_id, 3)
        self.assertEqual(saved.sessions["Wed"].am, Session(apps=["com.math.app"], duration_minutes=15))
        self.assertEqual(saved.sessions["Wed"].pm, Session())
        self.mock_store.upsert.assert_awaited_once_with(saved)
        self.assertTrue(self.service.has_profile(7))

    async def test_update_leaves_other_timeslots_unchanged(self) -> None:
        am = Session(apps=["a"], duration_minutes=10)
        home = Session(apps=["c"], duration_minutes=30)
        self.mock_store.fetch_all.return_value = [
            make_profile(Mon=DailySessions(am=am, pm=READER_SESSION, home=home), Fri=DailySessions(am=am))
        ]
        await self.service.load_profiles()

        saved = await self.service.update_and_save_session(42, "Mon", Timeslot.PM, ["com.paint.app"], 45)

        new_pm = Session(apps=["com.paint.app"], duration_minutes=45)
        self.assertEqual(saved.sessions["Mon"], DailySessions(am=am, pm=new_pm, home=home))
        self.assertEqual(saved.sessions["Fri"], DailySessions(am=am))

    async def test_sequential_edits_of_same_day_do_not_clobber(self) -> None:
        await self.service.update_and_save_session(42, "Mon", Timeslot.AM, ["a"], 10)
        await self.service.update_and_save_session(42, "Mon", Timeslot.HOME, ["c"], 30)

        daily = self.service.get_daily_sessions(42, "Mon")
        self.assertEqual(daily.am, Session(apps=["a"], duration_minutes=10))
        self.assertEqual(daily.pm, READER_SESSION)
        self.assertEqual(daily.home, Session(apps=["c"], duration_minutes=30))
        self.assertEqual(self.mock_store.upsert.await_count, 2)

    async def test_update_rejects_blocked_timeslot(self) -> None:
        with self.assertRaises(ValueError):
            await self.service.update_and_save_session(42, "Mon", Timeslot.BLOCKED, [], 0)
        self.mock_store.upsert.assert_not_awaited()

    async def test_failed_write_leaves_cache_unchanged(self) -> None:
        self.mock_store.upsert.side_effect = ScheduleStoreError("database is locked")

        with self.assertRaises(ScheduleStoreError):
            await self.service.update_and_save_session(42, "Mon", Timeslot.PM, ["com.paint.app"], 45)
        self.assertEqual(self.service.get_session(42, "Mon", Timeslot.PM), READER_SESSION)

    async def test_unmodified_editor_produces_no_write(self) -> None:
        editor = self.service.open_editor(42, "Mon")
        editor.set_session(Timeslot.PM, Session(apps=["com.reader.app"], duration_minutes=20, single_app_lock=True))

        written = await self.service.save_daily_sessions(editor)

        self.assertFalse(written)
        self.mock_store.upsert.assert_not_awaited()

    async def test_modified_editor_writes_once(self) -> None:
        editor = self.service.open_editor(42, "Mon")
        editor.set_session(Timeslot.AM, Session(apps=["com.math.app"], duration_minutes=15))

        self.assertTrue(await self.service.save_daily_sessions(editor))
        self.assertFalse(await self.service.save_daily_sessions(editor))
        self.mock_store.upsert.assert_awaited_once()
        self.assertEqual(self.service.get_session(42, "Mon", Timeslot.PM), READER_SESSION)

    async def test_bulk_update_writes_once_per_student(self) -> None:
        saved = await self.service.bulk_update(
            [42, 7], ["Mon", "Tues"], [Timeslot.AM, Timeslot.HOME], ["com.quiz.app"], 25
        )

        quiz = Session(apps=["com.quiz.app"], duration_minutes=25)
        self.assertEqual([profile.student_id for profile in saved], [42, 7])
        self.assertEqual(self.mock_store.upsert.await_count, 2)
        self.assertEqual(self.service.get_daily_sessions(42, "Mon"), DailySessions(am=quiz, pm=READER_SESSION, home=quiz))
        self.assertEqual(self.service.get_daily_sessions(7, "Tues"), DailySessions(am=quiz, home=quiz))

    async def test_current_session_uses_clock_day_and_timeslot(self) -> None:
        monday_afternoon = datetime(2024, 12, 16, 13, 30)
        monday_night = datetime(2024, 12, 16, 3, 0)

        self.assertEqual(self.service.current_session(42, monday_afternoon), READER_SESSION)
        self.assertIsNone(self.service.current_session(42, monday_night))

    async def test_save_publishes_event(self) -> None:
        handler = AsyncMock()
        self.event_bus.subscribe(events.PROFILE_SAVED, handler)

        await self.service.update_and_save_session(42, "Mon", Timeslot.AM, ["a"], 10)

        handler.assert_awaited_once()
        self.assertEqual(handler.await_args.args[0].payload, {"student_id": 42})

    async def test_concurrent_edits_of_one_student_keep_both_timeslots(self) -> None:
        async def slow_upsert(profile: StudentAppProfile) -> None:
            await asyncio.sleep(0.01)

        self.mock_store.upsert.side_effect = slow_upsert

        await asyncio.gather(
            self.service.update_and_save_session(42, "Mon", Timeslot.AM, ["a"], 10),
            self.service.update_and_save_session(42, "Mon", Timeslot.HOME, ["c"], 30),
        )

        daily = self.service.get_daily_sessions(42, "Mon")
        self.assertEqual(daily.am, Session(apps=["a"], duration_minutes=10))
        self.assertEqual(daily.pm, READER_SESSION)
        self.assertEqual(daily.home, Session(apps=["c"], duration_minutes=30))
        last_written = self.mock_store.upsert.await_args_list[-1].args[0]
        self.assertEqual(last_written.sessions["Mon"], daily)
