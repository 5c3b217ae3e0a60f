"""Idempotent bootstrap of the directory objects scheduling depends on.

For every location the directory must hold a reserved "picture" class, a
reserved teacher account and a reserved teacher group, and the default
location's teacher must be a member of its teacher group. Bootstrap creates
whatever is missing (check-then-create, never duplicate), rebuilds the lookup
tables by querying again after each creation stage, and finally exchanges the
teacher's credentials for a session token.

Stages run strictly in order. Failures inside a per-location loop are logged
and the loop continues; failures to list or rebuild a whole table abort the
run with ProvisioningError. The check-then-create steps are not atomic on the
server, so two processes bootstrapping the same tenant at once can still race.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any

from classroom_tablet_manager import events
from classroom_tablet_manager.config import ReservedNames
from classroom_tablet_manager.directory_client import DirectoryClient
from classroom_tablet_manager.directory_models import DirectoryGroup, DirectoryUser, Location, SchoolClass
from classroom_tablet_manager.exceptions import (
    AuthenticationError,
    DirectoryAPIError,
    ProvisioningError,
    ProvisioningErrorKind,
)
from classroom_tablet_manager.token_cache import RedisTokenCache


@dataclass(frozen=True)
class DirectoryIndex:
    """Lookup tables built by bootstrap, all keyed by location id.

    The tables are read-only views; bootstrap builds a new index instead of
    editing one that readers may hold.
    """

    class_group_id: Mapping[int, int] = field(default_factory=dict)
    class_uuid: Mapping[int, str] = field(default_factory=dict)
    teacher_group_id: Mapping[int, int] = field(default_factory=dict)
    teacher_user_id: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("class_group_id", "class_uuid", "teacher_group_id", "teacher_user_id"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def missing_entries(self, location_ids: set[int]) -> dict[int, list[str]]:
        """Return, per location, the names of the tables lacking an entry for it."""
        tables = {
            "class_group_id": self.class_group_id,
            "class_uuid": self.class_uuid,
            "teacher_group_id": self.teacher_group_id,
            "teacher_user_id": self.teacher_user_id,
        }
        missing: dict[int, list[str]] = {}
        for location_id in sorted(location_ids):
            absent = [name for name, table in tables.items() if location_id not in table]
            if absent:
                missing[location_id] = absent
        return missing


class ProvisioningContext:
    """Process-wide directory index and session token.

    Only ProvisioningOrchestrator writes to a context (through the underscore
    methods); everything else reads. Readers always see a complete index
    because the orchestrator swaps in a new DirectoryIndex rather than
    mutating the current one.
    """

    def __init__(self) -> None:
        self._locations: list[Location] = []
        self._index = DirectoryIndex()
        self._token: str | None = None
        self._token_obtained_at: datetime | None = None
        self._is_loaded = False

    @property
    def locations(self) -> list[Location]:
        return list(self._locations)

    @property
    def index(self) -> DirectoryIndex:
        return self._index

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    @property
    def session_token(self) -> str | None:
        return self._token

    @property
    def token_obtained_at(self) -> datetime | None:
        return self._token_obtained_at

    def require_token(self) -> str:
        """Return the session token.

        Raises:
            AuthenticationError: If no token has been obtained yet.
        """
        if not self._token:
            raise AuthenticationError("No session token; run bootstrap or authenticate first")
        return self._token

    def token_is_stale(self, max_age: timedelta, now: datetime | None = None) -> bool:
        """True when there is no token or it is older than ``max_age``."""
        if self._token is None or self._token_obtained_at is None:
            return True
        now = now or datetime.now(UTC)
        return now - self._token_obtained_at >= max_age

    def _publish_index(self, locations: list[Location], index: DirectoryIndex) -> None:
        self._locations = list(locations)
        self._index = index
        self._is_loaded = True

    def _set_token(self, token: str | None, obtained_at: datetime | None) -> None:
        self._token = token
        self._token_obtained_at = obtained_at if token else None


class ProvisioningOrchestrator:
    """Runs the bootstrap sequence against a DirectoryClient.

    Attributes:
        client: Directory API client.
        context: Context this orchestrator is the sole writer of.
        company_id: Tenant id used when authenticating the teacher.
        reserved_names: Sentinel names of the objects bootstrap owns.
        default_location_id: Location whose teacher account is authenticated.
        failures: Per-location failures recorded by the most recent run.
    """

    def __init__(
        self,
        client: DirectoryClient,
        context: ProvisioningContext,
        company_id: int,
        reserved_names: ReservedNames | None = None,
        default_location_id: int = 0,
        logger: logging.Logger | None = None,
        event_bus: events.EventBus | None = None,
        token_cache: RedisTokenCache | None = None,
    ) -> None:
        self.client = client
        self.context = context
        self.company_id = company_id
        self.reserved_names = reserved_names or ReservedNames()
        self.default_location_id = default_location_id
        self.logger = logger or logging.getLogger(__name__)
        self.event_bus = event_bus
        self.token_cache = token_cache
        self.failures: list[ProvisioningError] = []
        self._lock = asyncio.Lock()

    async def bootstrap(self) -> DirectoryIndex:
        """Make the directory safe to schedule against and obtain a session token.

        Safe to run again after a partial failure: every creation step checks
        for an existing object first.

        Returns:
            The rebuilt DirectoryIndex, also published on the context.

        Raises:
            ProvisioningError: If locations cannot be listed or a table cannot be rebuilt.
            AuthenticationError: If the teacher credentials are rejected.
        """
        # AIDEV-NOTE: Serialized within the process; cross-process races remain possible.
        async with self._lock:
            self.failures = []

            locations = await self._fetch_locations()
            await self._ensure_classes(locations)
            class_group_id, class_uuid = await self._build_class_tables()

            users = await self._list_for_stage(self.client.list_users, "users")
            user_location_ids = {user.location_id for user in users}
            await self._ensure_teacher_users(users, user_location_ids)
            teacher_user_id = await self._build_teacher_user_table()

            await self._ensure_teacher_groups(user_location_ids)
            teacher_group_id = await self._build_teacher_group_table()

            index = DirectoryIndex(
                class_group_id=class_group_id,
                class_uuid=class_uuid,
                teacher_group_id=teacher_group_id,
                teacher_user_id=teacher_user_id,
            )
            self.context._publish_index(locations, index)

            missing = index.missing_entries(user_location_ids)
            for location_id, tables in missing.items():
                self.logger.error("Location %d is still missing %s after bootstrap", location_id, ", ".join(tables))

            await self._link_teacher_and_authenticate(index)

            self.logger.info(
                "Bootstrap complete: %d locations, %d per-location failures",
                len(locations),
                len(self.failures),
            )
            if self.event_bus is not None:
                await self.event_bus.publish(
                    events.BOOTSTRAP_COMPLETED,
                    {"locations": [location.id for location in locations], "failures": len(self.failures)},
                )
            return index

    # ------------------------------ stage 1

    async def _fetch_locations(self) -> list[Location]:
        try:
            locations = await self.client.list_locations()
        except DirectoryAPIError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.LOCATIONS_UNAVAILABLE, f"Failed to retrieve locations: {e.message}"
            ) from e
        self.logger.info("Fetched %d locations", len(locations))
        return locations

    async def _list_for_stage(self, fetch: Callable[[], Awaitable[list[Any]]], what: str) -> list[Any]:
        try:
            return await fetch()
        except DirectoryAPIError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.DICTIONARY_BUILD_FAILED, f"Failed to list {what}: {e.message}"
            ) from e

    def _record_failure(self, error: ProvisioningError) -> None:
        self.failures.append(error)
        self.logger.warning("%s", error)

    # ------------------------------ stages 2 and 3

    async def _ensure_classes(self, locations: list[Location]) -> None:
        classes = await self._list_for_stage(self.client.list_classes, "classes")
        location_ids = {location.id for location in locations} | {c.location_id for c in classes}
        users: list[DirectoryUser] | None = None

        for location_id in sorted(location_ids):
            exists = any(
                c.location_id == location_id and c.name == self.reserved_names.picture_class for c in classes
            )
            if exists:
                continue
            try:
                if users is None:
                    users = await self.client.list_users()
                await self._create_class(location_id, users)
            except ProvisioningError as e:
                self._record_failure(e)
            except DirectoryAPIError as e:
                self._record_failure(
                    ProvisioningError(
                        ProvisioningErrorKind.CLASS_CREATION_FAILED,
                        f"Failed to list users for class enrollment: {e.message}",
                        {"location_id": location_id},
                    )
                )

    async def _create_class(self, location_id: int, users: list[DirectoryUser]) -> SchoolClass:
        self.logger.info("Creating reserved class for location %d", location_id)
        try:
            school_class = await self.client.create_class(
                self.reserved_names.picture_class,
                location_id,
                description="Managed by the classroom tablet manager",
            )
            student_ids = [user.id for user in users if user.location_id == location_id]
            await self.client.assign_to_class(school_class.uuid, students=student_ids, teachers=[])
        except DirectoryAPIError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.CLASS_CREATION_FAILED,
                f"Failed to create class for location {location_id}: {e.message}",
                {"location_id": location_id, "object": "class"},
            ) from e
        return school_class

    async def _build_class_tables(self) -> tuple[dict[int, int], dict[int, str]]:
        classes = await self._list_for_stage(self.client.list_classes, "classes")
        reserved = sorted(
            (c for c in classes if c.name == self.reserved_names.picture_class),
            key=lambda c: (c.location_id, c.user_group_id),
            reverse=True,
        )
        # Reversed sort so the lowest user group id per location is written last and wins.
        class_group_id = {c.location_id: c.user_group_id for c in reserved}
        class_uuid = {c.location_id: c.uuid for c in reserved}
        for location_id, group_id in sorted(class_group_id.items()):
            self.logger.debug("Location %d: class group %d, uuid %s", location_id, group_id, class_uuid[location_id])
        return class_group_id, class_uuid

    # ------------------------------ stages 4 and 5

    async def _ensure_teacher_users(self, users: list[DirectoryUser], location_ids: set[int]) -> None:
        prefix = self.reserved_names.teacher_user_prefix
        for location_id in sorted(location_ids):
            username = f"{prefix}{location_id}"
            if any(user.location_id == location_id and user.username == username for user in users):
                continue
            self.logger.info("Creating teacher user for location %d", location_id)
            teacher = DirectoryUser.teacher_for_location(location_id, prefix)
            try:
                await self.client.create_user(teacher, self.reserved_names.default_teacher_password)
            except DirectoryAPIError as e:
                self._record_failure(
                    ProvisioningError(
                        ProvisioningErrorKind.CLASS_CREATION_FAILED,
                        f"Failed to create teacher user for location {location_id}: {e.message}",
                        {"location_id": location_id, "object": "teacher_user"},
                    )
                )

    async def _build_teacher_user_table(self) -> dict[int, int]:
        users = await self._list_for_stage(self.client.list_users, "users")
        prefix = self.reserved_names.teacher_user_prefix
        teacher_user_id: dict[int, int] = {}
        for user in sorted(users, key=lambda u: u.id):
            if user.username.startswith(prefix):
                teacher_user_id.setdefault(user.location_id, user.id)
        return teacher_user_id

    # ------------------------------ stages 6 and 7

    async def _ensure_teacher_groups(self, location_ids: set[int]) -> None:
        groups = await self._list_for_stage(self.client.list_groups, "groups")
        prefix = self.reserved_names.teacher_group_prefix
        for location_id in sorted(location_ids):
            name = f"{prefix}{location_id}"
            if any(group.location_id == location_id and group.name == name for group in groups):
                continue
            self.logger.info("Creating teacher group for location %d", location_id)
            try:
                group_id = await self.client.create_group(DirectoryGroup.teacher_group_for_location(location_id, prefix))
                self.logger.info("Created teacher group %d for location %d", group_id, location_id)
            except DirectoryAPIError as e:
                self._record_failure(
                    ProvisioningError(
                        ProvisioningErrorKind.CLASS_CREATION_FAILED,
                        f"Failed to create teacher group for location {location_id}: {e.message}",
                        {"location_id": location_id, "object": "teacher_group"},
                    )
                )

    async def _build_teacher_group_table(self) -> dict[int, int]:
        groups = await self._list_for_stage(self.client.list_groups, "groups")
        prefix = self.reserved_names.teacher_group_prefix
        teacher_group_id: dict[int, int] = {}
        for group in sorted(groups, key=lambda g: g.id):
            if group.name.startswith(prefix):
                teacher_group_id.setdefault(group.location_id, group.id)
        return teacher_group_id

    # ------------------------------ stage 8

    async def _default_teacher(self, index: DirectoryIndex) -> tuple[DirectoryUser, int]:
        location_id = self.default_location_id
        teacher_id = index.teacher_user_id.get(location_id)
        group_id = index.teacher_group_id.get(location_id)
        if teacher_id is None or group_id is None:
            raise ProvisioningError(
                ProvisioningErrorKind.DICTIONARY_BUILD_FAILED,
                f"No teacher user or teacher group for default location {location_id}",
                {"location_id": location_id},
            )
        try:
            teacher = await self.client.get_user(teacher_id)
        except DirectoryAPIError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.DICTIONARY_BUILD_FAILED,
                f"Failed to fetch teacher user {teacher_id}: {e.message}",
                {"location_id": location_id},
            ) from e
        return teacher, group_id

    async def _link_teacher_and_authenticate(self, index: DirectoryIndex) -> None:
        teacher, group_id = await self._default_teacher(index)
        if group_id not in teacher.group_ids:
            self.logger.info("Adding teacher group %d to teacher user %d", group_id, teacher.id)
            linked = teacher.model_copy(update={"group_ids": [*teacher.group_ids, group_id]})
            try:
                await self.client.update_user(linked, self.reserved_names.default_teacher_password)
            except DirectoryAPIError as e:
                raise ProvisioningError(
                    ProvisioningErrorKind.DICTIONARY_BUILD_FAILED,
                    f"Failed to add teacher group {group_id} to teacher user {teacher.id}: {e.message}",
                    {"location_id": self.default_location_id},
                ) from e
        await self._authenticate(teacher)

    async def _authenticate(self, teacher: DirectoryUser) -> str:
        response = await self.client.authenticate(
            self.company_id, teacher.username, self.reserved_names.default_teacher_password
        )
        obtained_at = datetime.now(UTC)
        self.context._set_token(response.token, obtained_at)
        self.logger.info("Obtained session token %s... for %s", response.token[:8], teacher.username)
        if self.token_cache is not None:
            await self.token_cache.save_token(response.token, obtained_at)
        return response.token

    async def refresh_token(self) -> str:
        """Authenticate the default location's teacher again.

        Requires a completed bootstrap. Does not touch the directory index.

        Raises:
            ProvisioningError: If the index has no teacher for the default location.
            AuthenticationError: If the credentials are rejected.
        """
        async with self._lock:
            teacher, _ = await self._default_teacher(self.context.index)
            token = await self._authenticate(teacher)
        if self.event_bus is not None:
            await self.event_bus.publish(events.TOKEN_REFRESHED, {"username": teacher.username})
        return token

    async def restore_cached_token(self, validate: bool = True) -> bool:
        """Load a previously cached token into the context.

        Args:
            validate: Ask the server whether the cached token is still valid.

        Returns:
            True if a usable token was restored.
        """
        if self.token_cache is None:
            return False
        cached = await self.token_cache.get_cached_token()
        if cached is None:
            return False
        if validate and not await self.client.validate_token(cached.token):
            self.logger.info("Cached session token was rejected; discarding it")
            await self.token_cache.clear()
            return False
        self.context._set_token(cached.token, cached.obtained_at)
        return True
