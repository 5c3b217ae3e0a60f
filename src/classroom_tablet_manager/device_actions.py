"""Batch device actions with per-device failure isolation.

Every operation takes a list of devices, runs one directory call per device
with bounded concurrency, waits for all of them to settle and reports a
BatchActionResult. A failing device never stops the others. Lock and unlock
act on the device's owner, so those batches first re-read every owner from
the directory's device listing. Devices without an owner are then excluded
before any call is made and do not count as failures; devices missing from
the listing count as failures.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

import jinja2

from classroom_tablet_manager import events
from classroom_tablet_manager.directory_client import DirectoryClient
from classroom_tablet_manager.directory_models import Device, DirectoryUser
from classroom_tablet_manager.exceptions import DeviceActionError, DirectoryAPIError
from classroom_tablet_manager.provisioning import ProvisioningContext
from classroom_tablet_manager.schedule import Session

DEFAULT_BATCH_CONCURRENCY = 4


class ActionKind(StrEnum):
    LOCK = "lock"
    UNLOCK = "unlock"
    RESTART = "restart"
    ASSIGN_OWNER = "assign_owner"

    @property
    def progress_verb(self) -> str:
        return {
            ActionKind.LOCK: "Locking",
            ActionKind.UNLOCK: "Unlocking",
            ActionKind.RESTART: "Restarting",
            ActionKind.ASSIGN_OWNER: "Assigning owner to",
        }[self]

    @property
    def requires_owner(self) -> bool:
        return self in (ActionKind.LOCK, ActionKind.UNLOCK)

    @property
    def requires_token(self) -> bool:
        return self in (ActionKind.LOCK, ActionKind.UNLOCK)


@dataclass(frozen=True)
class DeviceActionFailure:
    device_id: str
    error: DeviceActionError


@dataclass
class BatchActionResult:
    """Aggregate outcome of one batch operation.

    Attributes:
        action: The action that was run.
        success_count: Devices whose call succeeded.
        fail_count: Devices whose call failed.
        failures: Failed devices in the order they were passed in.
        excluded: UDIDs skipped because the action needs an owner and the device has none.
        not_attempted: UDIDs never attempted because the batch was cancelled.
        cancelled: Whether the batch was cancelled before every device was attempted.
    """

    action: ActionKind
    success_count: int = 0
    fail_count: int = 0
    failures: list[DeviceActionFailure] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted_count(self) -> int:
        return self.success_count + self.fail_count

    @property
    def is_full_success(self) -> bool:
        return self.fail_count == 0 and self.success_count > 0

    @property
    def is_partial_success(self) -> bool:
        return self.success_count > 0 and self.fail_count > 0


_NOT_ATTEMPTED = object()


class BatchActionExecutor:
    """Runs device actions over many devices at once.

    ``is_processing`` and ``progress_message`` describe the batch in flight for
    a presentation layer; they carry no correctness guarantees.

    Attributes:
        client: Directory API client performing the per-device calls.
        context: Source of the session token for owner-based actions.
        template_env: Jinja2 environment holding the progress templates.
        concurrency: Maximum number of per-device calls in flight.
        event_bus: Optional channel notified on batch start, progress and finish.
        logger: Logger for executor operations.
    """

    def __init__(
        self,
        client: DirectoryClient,
        context: ProvisioningContext,
        template_env: jinja2.Environment,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
        event_bus: events.EventBus | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {concurrency}")
        self.client = client
        self.context = context
        self.template_env = template_env
        self.concurrency = concurrency
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

        self.progress_message = ""
        self._active_batches = 0
        self._cancel_requested = asyncio.Event()

        self.templates: dict[str, jinja2.Template] = {}
        self._load_templates()

    def _load_templates(self) -> None:
        """Load the progress templates.

        Raises:
            RuntimeError: If a template cannot be loaded.
        """
        template_mappings = {
            "progress": "batch_progress.j2",
            "summary": "batch_summary.j2",
        }
        failed_templates = []
        for key, template_name in template_mappings.items():
            try:
                self.templates[key] = self.template_env.get_template(template_name)
            except jinja2.TemplateNotFound as e:
                self.logger.error("Failed to load template %s: %s", template_name, e)
                failed_templates.append(template_name)
        if failed_templates:
            raise RuntimeError(f"Critical templates failed to load: {', '.join(failed_templates)}")

    @property
    def is_processing(self) -> bool:
        return self._active_batches > 0

    def cancel(self) -> None:
        """Stop starting new device calls in the running batches.

        Calls already in flight finish and keep their results.
        """
        self._cancel_requested.set()

    def summarize(self, result: BatchActionResult) -> str:
        """Human-readable outcome, e.g. ``"2 succeeded, 1 failed"``."""
        return self.templates["summary"].render(result=result)

    async def _publish(self, event_type: str, payload: dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, payload)

    async def _with_listed_owners(self, devices: list[Device]) -> list[Device | DeviceActionError]:
        """Replace each device's owner with the one the directory currently lists.

        A device absent from the listing, or every device when the listing
        itself fails, comes back as a DeviceActionError.
        """
        try:
            listed = {device.udid: device for device in await self.client.list_devices()}
        except DirectoryAPIError as e:
            self.logger.error("Could not list devices: %s", e)
            return [DeviceActionError(device.udid, f"device listing failed: {e.message}") for device in devices]
        refreshed: list[Device | DeviceActionError] = []
        for device in devices:
            current = listed.get(device.udid)
            if current is None:
                refreshed.append(DeviceActionError(device.udid, "device not found in directory"))
            else:
                refreshed.append(device.model_copy(update={"owner": current.owner}))
        return refreshed

    async def _run(
        self,
        action: ActionKind,
        devices: list[Device],
        operation: Callable[[Device], Awaitable[None]],
    ) -> BatchActionResult:
        result = BatchActionResult(action=action)
        entries: list[Device | DeviceActionError] = list(devices)
        if action.requires_owner:
            entries = await self._with_listed_owners(devices)

        # (udid, index into targets) or (udid, failure found before any call)
        slots: list[tuple[str, int | DeviceActionError]] = []
        targets: list[Device] = []
        for entry in entries:
            if isinstance(entry, DeviceActionError):
                slots.append((entry.device_id, entry))
            elif action.requires_owner and entry.owner is None:
                result.excluded.append(entry.udid)
            else:
                slots.append((entry.udid, len(targets)))
                targets.append(entry)
        if result.excluded:
            self.logger.info("Excluding %d devices without an owner from %s", len(result.excluded), action.value)

        if self._active_batches == 0:
            self._cancel_requested.clear()
        self._active_batches += 1
        try:
            outcomes = await self._execute(action, targets, operation)
        finally:
            self._active_batches -= 1

        for udid, slot in slots:
            outcome = outcomes[slot] if isinstance(slot, int) else slot
            if outcome is None:
                result.success_count += 1
            elif outcome is _NOT_ATTEMPTED:
                result.not_attempted.append(udid)
            else:
                result.fail_count += 1
                result.failures.append(DeviceActionFailure(device_id=udid, error=outcome))
        result.cancelled = bool(result.not_attempted)

        self.progress_message = self.summarize(result)
        self.logger.info("Batch %s finished: %s", action.value, self.progress_message)
        await self._publish(
            events.BATCH_FINISHED,
            {
                "action": action.value,
                "success_count": result.success_count,
                "fail_count": result.fail_count,
                "cancelled": result.cancelled,
            },
        )
        return result

    async def _execute(
        self,
        action: ActionKind,
        targets: list[Device],
        operation: Callable[[Device], Awaitable[None]],
    ) -> list[object]:
        outcomes: list[object] = [_NOT_ATTEMPTED] * len(targets)
        if not targets:
            return outcomes

        if action.requires_token and self.context.session_token is None:
            self.logger.warning("No session token; failing %d %s calls", len(targets), action.value)
            for index, device in enumerate(targets):
                outcomes[index] = DeviceActionError(device.udid, "no session token")
            return outcomes

        total = len(targets)
        completed = 0
        semaphore = asyncio.Semaphore(self.concurrency)
        self.progress_message = self.templates["progress"].render(verb=action.progress_verb, completed=0, total=total)
        await self._publish(events.BATCH_STARTED, {"action": action.value, "total": total})

        async def run_one(index: int, device: Device) -> None:
            nonlocal completed
            async with semaphore:
                if self._cancel_requested.is_set():
                    return
                try:
                    await operation(device)
                    outcomes[index] = None
                except Exception as e:
                    self.logger.warning("%s failed for device %s: %s", action.value, device.udid, e)
                    outcomes[index] = DeviceActionError(device.udid, str(e), {"action": action.value})
            completed += 1
            self.progress_message = self.templates["progress"].render(
                verb=action.progress_verb, completed=completed, total=total
            )
            await self._publish(
                events.BATCH_PROGRESS, {"action": action.value, "completed": completed, "total": total}
            )

        async with asyncio.TaskGroup() as tg:
            for index, device in enumerate(targets):
                tg.create_task(run_one(index, device))
        return outcomes

    # ------------------------------ batch operations

    async def lock_to_app(
        self,
        devices: list[Device],
        app_identifier: str | int,
        duration_minutes: float | None = None,
    ) -> BatchActionResult:
        """Restrict every owned device to one app."""
        return await self.lock_to_apps(devices, [app_identifier], duration_minutes)

    async def lock_to_apps(
        self,
        devices: list[Device],
        apps: list[str | int],
        duration_minutes: float | None = None,
    ) -> BatchActionResult:
        async def lock(device: Device) -> None:
            await self.client.lock_device(device, apps, self.context.require_token(), duration_minutes)

        return await self._run(ActionKind.LOCK, devices, lock)

    async def unlock(self, devices: list[Device]) -> BatchActionResult:
        """Remove restrictions from every owned device."""

        async def unlock(device: Device) -> None:
            await self.client.unlock_device(device, self.context.require_token())

        return await self._run(ActionKind.UNLOCK, devices, unlock)

    async def restart(self, devices: list[Device]) -> BatchActionResult:
        """Restart every device, owned or not."""

        async def restart(device: Device) -> None:
            await self.client.restart_device(device.udid)

        return await self._run(ActionKind.RESTART, devices, restart)

    async def assign_owner(self, devices: list[Device], student: DirectoryUser | int) -> BatchActionResult:
        """Make ``student`` the owner of every device."""
        student_id = student.id if isinstance(student, DirectoryUser) else student

        async def assign(device: Device) -> None:
            await self.client.set_device_owner(device.udid, student_id)

        return await self._run(ActionKind.ASSIGN_OWNER, devices, assign)

    async def apply_session(self, devices: list[Device], session: Session) -> BatchActionResult:
        """Lock owned devices to a Session's apps for its duration; unlock for an empty app set."""
        if not session.apps:
            return await self.unlock(devices)
        return await self.lock_to_apps(devices, session.apps, session.duration_minutes or None)

    # ------------------------------ single-device forms

    async def lock_device_to_app(
        self,
        device: Device,
        app_identifier: str | int,
        duration_minutes: float | None = None,
    ) -> BatchActionResult:
        return await self.lock_to_app([device], app_identifier, duration_minutes)

    async def unlock_device(self, device: Device) -> BatchActionResult:
        return await self.unlock([device])

    async def restart_device(self, device: Device) -> BatchActionResult:
        return await self.restart([device])

    async def assign_owner_to_device(self, device: Device, student: DirectoryUser | int) -> BatchActionResult:
        return await self.assign_owner([device], student)
