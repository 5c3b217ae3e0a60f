"""Command line entry points for the classroom tablet manager.

Wires configuration, logging, the directory client, the schedule store and
the Redis token cache together for a few administrative commands. The
library can be used without this module.
"""

import asyncio
import pathlib
from datetime import datetime
from typing import Annotated

import redis.asyncio as redis
import typer
from sqlalchemy.ext.asyncio import create_async_engine

from classroom_tablet_manager import app_logger, config
from classroom_tablet_manager.directory_client import DirectoryClient
from classroom_tablet_manager.provisioning import ProvisioningContext, ProvisioningOrchestrator
from classroom_tablet_manager.schedule import TimeslotSettings, current_day_token, resolve_timeslot
from classroom_tablet_manager.schedule_service import ScheduleService
from classroom_tablet_manager.schedule_store import SQLScheduleStore
from classroom_tablet_manager.token_cache import RedisTokenCache

app = typer.Typer()

ConfigPath = Annotated[pathlib.Path, typer.Argument(envvar="CLASSROOM_TABLET_CONFIG_PATH")]


@app.command()
def bootstrap(config_path: ConfigPath) -> None:
    """Create missing reserved directory objects and authenticate the teacher account."""
    asyncio.run(run_bootstrap(config_path))


async def run_bootstrap(config_path: pathlib.Path) -> None:
    config_obj = config.load_config(config_path)
    logger = app_logger.get_logger(level=config_obj.log_level)

    # AIDEV-NOTE: Token cache TTL follows the staleness window so a cached token is never older than it
    redis_client = redis.from_url(config_obj.redis.url)
    token_cache = RedisTokenCache(redis_client, ttl_seconds=config_obj.token_max_age_minutes * 60)

    async with DirectoryClient(config_obj.directory) as client:
        orchestrator = ProvisioningOrchestrator(
            client,
            ProvisioningContext(),
            company_id=config_obj.directory.company_id,
            reserved_names=config_obj.reserved_names,
            default_location_id=config_obj.default_location_id,
            logger=logger,
            token_cache=token_cache,
        )
        try:
            index = await orchestrator.bootstrap()
        finally:
            await redis_client.aclose()

    for location in orchestrator.context.locations:
        typer.echo(
            f"{location.id}\t{location.name}\t"
            f"class={index.class_uuid.get(location.id, '-')}\t"
            f"teacher={index.teacher_user_id.get(location.id, '-')}\t"
            f"group={index.teacher_group_id.get(location.id, '-')}"
        )
    if orchestrator.failures:
        typer.echo(f"{len(orchestrator.failures)} location steps failed; see log", err=True)
        raise typer.Exit(code=1)


@app.command()
def timeslot(
    hour: Annotated[int | None, typer.Argument(min=0, max=23)] = None,
    config_path: Annotated[
        pathlib.Path | None, typer.Option("--config", envvar="CLASSROOM_TABLET_CONFIG_PATH")
    ] = None,
) -> None:
    """Print the timeslot an hour (default: now) falls into."""
    settings = config.load_config(config_path).timeslots if config_path else TimeslotSettings()
    if hour is None:
        hour = datetime.now().hour
    resolved = resolve_timeslot(hour, settings)
    typer.echo(f"{hour:02d}:00 -> {resolved.display_name} ({settings.time_range_string(resolved)})")


@app.command()
def current_session(student_id: int, config_path: ConfigPath) -> None:
    """Print the Session that applies to a student right now."""
    asyncio.run(show_current_session(student_id, config_path))


async def show_current_session(student_id: int, config_path: pathlib.Path) -> None:
    config_obj = config.load_config(config_path)
    logger = app_logger.get_logger(level=config_obj.log_level)

    db_engine_async = create_async_engine(config_obj.database.url)
    store = SQLScheduleStore(db_engine_async)
    await store.create_tables()

    service = ScheduleService(store, config_obj.timeslots, logger=logger)
    try:
        await service.load_profiles()
    finally:
        await db_engine_async.dispose()

    now = datetime.now()
    session = service.current_session(student_id, now)
    timeslot_now = resolve_timeslot(now.hour, config_obj.timeslots)
    label = f"{current_day_token(now)} {timeslot_now.display_name}"
    if session is None:
        typer.echo(f"Student {student_id}, {label}: no schedule")
        return
    apps = ", ".join(str(app_id) for app_id in session.apps) or "(none)"
    lock = " single-app lock" if session.single_app_lock else ""
    typer.echo(f"Student {student_id}, {label}: {apps} for {session.duration_minutes:g} min{lock}")


if __name__ == "__main__":
    app()
