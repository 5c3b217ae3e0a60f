"""Tests for batch device actions."""

import asyncio
import unittest
from unittest.mock import AsyncMock, Mock

import jinja2

from classroom_tablet_manager import events
from classroom_tablet_manager.device_actions import ActionKind, BatchActionExecutor, BatchActionResult
from classroom_tablet_manager.directory_models import Device, DirectoryUser, Owner
from classroom_tablet_manager.exceptions import DirectoryAPIError
from classroom_tablet_manager.provisioning import ProvisioningContext
from classroom_tablet_manager.schedule import Session


def create_device(udid: str, owner_id: int | None = None) -> Device:
    owner = Owner(id=owner_id, location_id=0, name=f"Student {owner_id}") if owner_id is not None else None
    return Device(udid=udid, serial_number=f"SN-{udid}", name=f"iPad {udid}", owner=owner)


class TestBatchActionExecutor(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.mock_client = Mock()
        self.mock_client.lock_device = AsyncMock()
        self.mock_client.unlock_device = AsyncMock()
        self.mock_client.restart_device = AsyncMock()
        self.mock_client.set_device_owner = AsyncMock()
        self.context = ProvisioningContext()
        self.context._set_token("session-token", None)
        self.template_env = jinja2.Environment(
            loader=jinja2.PackageLoader(
                "classroom_tablet_manager",
                "templates",
            )
        )
        self.event_bus = events.EventBus()
        self.executor = BatchActionExecutor(
            client=self.mock_client,
            context=self.context,
            template_env=self.template_env,
            concurrency=2,
            event_bus=self.event_bus,
            logger=Mock(),
        )
        self.devices = [create_device("A", 9), create_device("B", 10), create_device("C", 11)]
        self.mock_client.list_devices = AsyncMock(
            return_value=self.devices + [create_device("D"), create_device("E")]
        )

    async def test_lock_partial_failure(self) -> None:
        async def lock(device: Device, apps: list, token: str, clear_after: float | None) -> None:
            if device.udid == "B":
                raise DirectoryAPIError("Directory HTTP error 500", status_code=500)

        self.mock_client.lock_device.side_effect = lock

        result = await self.executor.lock_to_app(self.devices, "com.reader.app")

        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.fail_count, 1)
        self.assertTrue(result.is_partial_success)
        self.assertFalse(result.is_full_success)
        self.assertEqual([failure.device_id for failure in result.failures], ["B"])
        self.assertEqual(result.failures[0].error.device_id, "B")
        self.assertEqual(self.mock_client.lock_device.await_count, 3)
        self.assertEqual(self.executor.summarize(result), "2 succeeded, 1 failed")

    async def test_lock_passes_token_and_apps(self) -> None:
        result = await self.executor.lock_to_app([self.devices[0]], "com.reader.app", duration_minutes=20)

        self.assertTrue(result.is_full_success)
        self.mock_client.lock_device.assert_awaited_once_with(
            self.devices[0], ["com.reader.app"], "session-token", 20
        )

    async def test_unlock_excludes_unowned_devices(self) -> None:
        devices = [create_device("A", 9), create_device("D")]

        result = await self.executor.unlock(devices)

        self.mock_client.unlock_device.assert_awaited_once_with(devices[0], "session-token")
        self.assertEqual(result.success_count + result.fail_count, 1)
        self.assertEqual(result.excluded, ["D"])
        self.assertTrue(result.is_full_success)
        self.assertEqual(self.executor.summarize(result), "1 succeeded, 0 failed, 1 skipped without an owner")

    async def test_all_unowned_is_neither_success_nor_failure(self) -> None:
        result = await self.executor.lock_to_app([create_device("D"), create_device("E")], "com.reader.app")

        self.mock_client.lock_device.assert_not_awaited()
        self.assertEqual(result.attempted_count, 0)
        self.assertFalse(result.is_full_success)
        self.assertFalse(result.is_partial_success)

    async def test_lock_uses_owner_from_device_listing(self) -> None:
        self.mock_client.list_devices.return_value = [create_device("A", 9), create_device("D", 50)]
        stale = [create_device("A", 99), create_device("D")]

        result = await self.executor.lock_to_app(stale, "com.reader.app")

        self.mock_client.list_devices.assert_awaited_once()
        locked_owners = {
            call.args[0].udid: call.args[0].owner.id for call in self.mock_client.lock_device.await_args_list
        }
        self.assertEqual(locked_owners, {"A": 9, "D": 50})
        self.assertEqual(result.excluded, [])
        self.assertTrue(result.is_full_success)

    async def test_unlock_excludes_device_whose_owner_was_removed(self) -> None:
        self.mock_client.list_devices.return_value = [create_device("A")]

        result = await self.executor.unlock([create_device("A", 9)])

        self.mock_client.unlock_device.assert_not_awaited()
        self.assertEqual(result.excluded, ["A"])

    async def test_device_missing_from_listing_counts_as_failure(self) -> None:
        result = await self.executor.lock_to_app(
            [create_device("A", 9), create_device("Z", 12), create_device("B", 10)], "com.reader.app"
        )

        self.assertEqual(self.mock_client.lock_device.await_count, 2)
        self.assertEqual((result.success_count, result.fail_count), (2, 1))
        self.assertEqual([failure.device_id for failure in result.failures], ["Z"])
        self.assertEqual(result.failures[0].error.message, "device not found in directory")

    async def test_failed_device_listing_fails_every_device(self) -> None:
        self.mock_client.list_devices.side_effect = DirectoryAPIError("Directory HTTP error 503", status_code=503)

        result = await self.executor.unlock(self.devices)

        self.mock_client.unlock_device.assert_not_awaited()
        self.assertEqual(result.fail_count, 3)
        self.assertEqual([failure.device_id for failure in result.failures], ["A", "B", "C"])

    async def test_restart_ignores_ownership(self) -> None:
        devices = [create_device("A", 9), create_device("D")]

        result = await self.executor.restart(devices)

        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.excluded, [])
        self.assertEqual({call.args[0] for call in self.mock_client.restart_device.await_args_list}, {"A", "D"})
        self.mock_client.list_devices.assert_not_awaited()

    async def test_assign_owner_to_unowned_device(self) -> None:
        student = DirectoryUser(id=42, location_id=0, username="student42")

        result = await self.executor.assign_owner_to_device(create_device("D"), student)

        self.mock_client.set_device_owner.assert_awaited_once_with("D", 42)
        self.assertIsInstance(result, BatchActionResult)
        self.assertEqual(result.action, ActionKind.ASSIGN_OWNER)
        self.assertEqual(result.success_count, 1)

    async def test_single_device_form_has_batch_shape(self) -> None:
        self.mock_client.unlock_device.side_effect = DirectoryAPIError("timeout")

        result = await self.executor.unlock_device(self.devices[0])

        self.assertIsInstance(result, BatchActionResult)
        self.assertEqual((result.success_count, result.fail_count), (0, 1))
        self.assertFalse(result.is_partial_success)

    async def test_missing_token_fails_every_owned_device(self) -> None:
        self.context._set_token(None, None)

        result = await self.executor.lock_to_app(self.devices + [create_device("D")], "com.reader.app")

        self.mock_client.lock_device.assert_not_awaited()
        self.assertEqual(result.fail_count, 3)
        self.assertEqual(result.excluded, ["D"])
        self.assertTrue(all(failure.error.message == "no session token" for failure in result.failures))

    async def test_apply_session_locks_with_duration(self) -> None:
        session = Session(apps=["com.reader.app", "com.math.app"], duration_minutes=20, single_app_lock=False)

        await self.executor.apply_session([self.devices[0]], session)

        self.mock_client.lock_device.assert_awaited_once_with(
            self.devices[0], ["com.reader.app", "com.math.app"], "session-token", 20
        )

    async def test_apply_empty_session_unlocks(self) -> None:
        result = await self.executor.apply_session([self.devices[0]], Session())

        self.assertEqual(result.action, ActionKind.UNLOCK)
        self.mock_client.unlock_device.assert_awaited_once()
        self.mock_client.lock_device.assert_not_awaited()

    async def test_concurrency_is_bounded(self) -> None:
        in_flight = 0
        peak = 0

        async def restart(udid: str) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        self.mock_client.restart_device.side_effect = restart
        devices = [create_device(str(n)) for n in range(6)]

        result = await self.executor.restart(devices)

        self.assertEqual(result.success_count, 6)
        self.assertEqual(peak, 2)

    async def test_cancel_keeps_completed_results(self) -> None:
        async def restart(udid: str) -> None:
            if udid == "1":
                self.executor.cancel()
            await asyncio.sleep(0.01)

        self.mock_client.restart_device.side_effect = restart
        devices = [create_device(str(n)) for n in range(5)]

        result = await self.executor.restart(devices)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.not_attempted, ["2", "3", "4"])
        self.assertIn("(cancelled)", self.executor.summarize(result))

    async def test_progress_state_and_events(self) -> None:
        seen: list[tuple[bool, str]] = []

        async def on_progress(event: events.Event) -> None:
            seen.append((self.executor.is_processing, self.executor.progress_message))

        finished = AsyncMock()
        self.event_bus.subscribe(events.BATCH_PROGRESS, on_progress)
        self.event_bus.subscribe(events.BATCH_FINISHED, finished)

        await self.executor.unlock(self.devices)

        self.assertEqual(len(seen), 3)
        self.assertTrue(all(processing for processing, _ in seen))
        self.assertEqual(seen[-1][1], "Unlocking 3 of 3...")
        self.assertFalse(self.executor.is_processing)
        self.assertEqual(self.executor.progress_message, "3 succeeded, 0 failed")
        finished.assert_awaited_once()

    def test_rejects_zero_concurrency(self) -> None:
        with self.assertRaises(ValueError):
            BatchActionExecutor(self.mock_client, self.context, self.template_env, concurrency=0)

    def test_missing_template_raises(self) -> None:
        with self.assertRaises(RuntimeError):
            BatchActionExecutor(self.mock_client, self.context, jinja2.Environment(loader=jinja2.DictLoader({})))
