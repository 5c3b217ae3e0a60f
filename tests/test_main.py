"""Tests for the command line entry points."""

import asyncio
import pathlib
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from typer.testing import CliRunner

from classroom_tablet_manager.main import app
from classroom_tablet_manager.schedule import DailySessions, Session, StudentAppProfile, current_day_token
from classroom_tablet_manager.schedule_store import SQLScheduleStore

runner = CliRunner()


def test_timeslot_with_default_ranges() -> None:
    result = runner.invoke(app, ["timeslot", "13"])

    assert result.exit_code == 0
    assert result.output.strip() == "13:00 -> PM (12:00 PM - 4:59 PM)"


def test_timeslot_overnight() -> None:
    result = runner.invoke(app, ["timeslot", "3"])

    assert result.exit_code == 0
    assert "Overnight (No Access)" in result.output


def test_timeslot_rejects_invalid_hour() -> None:
    result = runner.invoke(app, ["timeslot", "24"])

    assert result.exit_code != 0


@pytest.fixture
def config_file(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    monkeypatch.setenv("DIRECTORY_BASE_URL", "https://school.example.com/api")
    monkeypatch.setenv("DIRECTORY_API_KEY", "test_api_key")
    monkeypatch.setenv("DIRECTORY_COMPANY_ID", "2001128")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'schedules.db'}")
    # Every hour of the day is PM so the test does not depend on the clock
    path = tmp_path / "config.yaml"
    path.write_text("timeslots:\n  am_start: 0\n  am_end: 0\n  pm_start: 0\n  pm_end: 24\n  home_start: 24\n")
    return path


def seed_profile(database_url: str, profile: StudentAppProfile) -> None:
    async def seed() -> None:
        engine = create_async_engine(database_url)
        store = SQLScheduleStore(engine)
        await store.create_tables()
        await store.upsert(profile)
        await engine.dispose()

    asyncio.run(seed())


def test_current_session_without_schedule(config_file: pathlib.Path) -> None:
    result = runner.invoke(app, ["current-session", "42", str(config_file)])

    assert result.exit_code == 0
    assert "no schedule" in result.output


def test_current_session_prints_apps(config_file: pathlib.Path, tmp_path: pathlib.Path) -> None:
    today = current_day_token(datetime.now())
    seed_profile(
        f"sqlite+aiosqlite:///{tmp_path / 'schedules.db'}",
        StudentAppProfile(
            student_id=42,
            sessions={today: DailySessions(pm=Session(apps=["com.reader.app"], duration_minutes=20))},
        ),
    )

    result = runner.invoke(app, ["current-session", "42", str(config_file)])

    assert result.exit_code == 0
    assert "com.reader.app for 20 min" in result.output
