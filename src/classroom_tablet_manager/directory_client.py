"""Async HTTP client for the directory/device-management service.

Admin calls, device restart and owner assignment included, authenticate
with the configured API key. Teacher calls (lock, unlock) additionally pass
the teacher session token as a ``token`` query parameter. Every non-2xx
response and every transport failure surfaces as DirectoryAPIError; the
authentication endpoint raises AuthenticationError.
"""

import logging
from typing import Any, Self, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from classroom_tablet_manager.config import DirectorySettings
from classroom_tablet_manager.directory_models import (
    AuthenticationResponse,
    Device,
    DirectoryGroup,
    DirectoryUser,
    Location,
    SchoolClass,
)
from classroom_tablet_manager.exceptions import AuthenticationError, DirectoryAPIError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CLASSES_PROTOCOL_VERSION = 3


class DirectoryClient:
    """Client for the directory REST API.

    Attributes:
        settings: Base URL, credentials and timeouts.
    """

    def __init__(self, settings: DirectorySettings, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize the client.

        Args:
            settings: Directory API settings.
            http_client: Optional preconfigured client (tests pass one with a mock transport).
        """
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self._http = http_client

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _headers(self, protocol_version: int | None) -> dict[str, str]:
        return {
            "Authorization": self.settings.api_key,
            "X-Server-Protocol-Version": str(protocol_version or self.settings.protocol_version),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        protocol_version: int | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._get_http().request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(protocol_version),
            )
        except httpx.HTTPError as e:
            raise DirectoryAPIError(
                f"Directory request failed for {method} {path}: {e}", method=method, path=path
            ) from e

        if response.status_code >= 400:  # noqa: PLR2004
            logger.debug("Directory error %s for %s %s: %s", response.status_code, method, path, response.text)
            raise DirectoryAPIError(
                f"Directory HTTP error {response.status_code} for {method} {path}",
                status_code=response.status_code,
                method=method,
                path=path,
                body_text=response.text,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise DirectoryAPIError(
                f"Directory returned invalid JSON for {method} {path}",
                status_code=response.status_code,
                method=method,
                path=path,
                body_text=response.text,
            ) from e
        return payload if isinstance(payload, dict) else {"items": payload}

    @staticmethod
    def _parse_list(model: type[ModelT], payload: dict[str, Any], key: str, path: str) -> list[ModelT]:
        try:
            return [model.model_validate(item) for item in payload.get(key, [])]
        except ValidationError as e:
            raise DirectoryAPIError(f"Unexpected response shape from {path}: {e}", path=path) from e

    @staticmethod
    def _parse_id(payload: dict[str, Any], path: str) -> int:
        try:
            return int(payload["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise DirectoryAPIError(f"Create response from {path} has no id", path=path) from e

    # ------------------------------ locations / classes

    async def list_locations(self) -> list[Location]:
        payload = await self._request("GET", "/locations")
        return self._parse_list(Location, payload, "locations", "/locations")

    async def list_classes(self, location_id: int | None = None) -> list[SchoolClass]:
        """List classes, optionally only those of one location."""
        payload = await self._request("GET", "/classes", protocol_version=CLASSES_PROTOCOL_VERSION)
        classes = self._parse_list(SchoolClass, payload, "classes", "/classes")
        if location_id is None:
            return classes
        return [school_class for school_class in classes if school_class.location_id == location_id]

    async def create_class(self, name: str, location_id: int, description: str = "") -> SchoolClass:
        """Create a class.

        The create response only carries the new class uuid; callers that need
        the backing user group id must list classes again.
        """
        payload = await self._request(
            "POST",
            "/classes",
            json={"name": name, "description": description, "locationId": str(location_id)},
            protocol_version=CLASSES_PROTOCOL_VERSION,
        )
        uuid = payload.get("uuid")
        if not uuid:
            raise DirectoryAPIError("Create class response has no uuid", method="POST", path="/classes")
        return SchoolClass(uuid=uuid, name=name, location_id=location_id, description=description)

    async def assign_to_class(self, class_uuid: str, students: list[int], teachers: list[int]) -> None:
        await self._request(
            "PUT",
            f"/classes/{class_uuid}/users",
            json={"students": students, "teachers": teachers},
            protocol_version=CLASSES_PROTOCOL_VERSION,
        )

    # ------------------------------ users / groups

    async def list_users(self) -> list[DirectoryUser]:
        payload = await self._request("GET", "/users")
        return self._parse_list(DirectoryUser, payload, "users", "/users")

    async def get_user(self, user_id: int) -> DirectoryUser:
        path = f"/users/{user_id}"
        payload = await self._request("GET", path)
        try:
            return DirectoryUser.model_validate(payload.get("user", payload))
        except ValidationError as e:
            raise DirectoryAPIError(f"Unexpected response shape from {path}: {e}", path=path) from e

    @staticmethod
    def _user_body(user: DirectoryUser, password: str) -> dict[str, Any]:
        return {
            "username": user.username,
            "password": password,
            "email": user.email,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "memberOf": user.group_ids,
            "teacher": user.teacher_groups,
            "notes": user.notes,
            "locationId": user.location_id,
        }

    async def create_user(self, user: DirectoryUser, password: str) -> int:
        """Create a user and return its id."""
        payload = await self._request("POST", "/users", json=self._user_body(user, password))
        return self._parse_id(payload, "/users")

    async def update_user(self, user: DirectoryUser, password: str) -> None:
        await self._request("PUT", f"/users/{user.id}", json=self._user_body(user, password))

    async def list_groups(self) -> list[DirectoryGroup]:
        payload = await self._request("GET", "/users/groups")
        return self._parse_list(DirectoryGroup, payload, "groups", "/users/groups")

    async def create_group(self, group: DirectoryGroup) -> int:
        """Create a user group and return its id."""
        payload = await self._request(
            "POST",
            "/users/groups",
            json={
                "name": group.name,
                "description": group.description,
                "locationId": group.location_id,
                "acl": group.acl.model_dump(),
            },
        )
        return self._parse_id(payload, "/users/groups")

    # ------------------------------ teacher authentication

    async def authenticate(self, company: int | str, username: str, password: str) -> AuthenticationResponse:
        """Exchange teacher credentials for a session token.

        Raises:
            AuthenticationError: If the credentials are rejected or the call fails.
        """
        try:
            payload = await self._request(
                "POST",
                "/teacher/authenticate",
                json={"company": str(company), "username": username, "password": password},
            )
            return AuthenticationResponse.model_validate(payload)
        except DirectoryAPIError as e:
            raise AuthenticationError(
                f"Authentication failed for {username}", {"status_code": e.status_code}
            ) from e
        except ValidationError as e:
            raise AuthenticationError(f"Authentication response for {username} has no token") from e

    async def validate_token(self, token: str) -> bool:
        """Check a session token with the server.

        Returns:
            False only when the server rejects the token (401/403 or an invalid
            response code). Other failures trust the token.
        """
        try:
            payload = await self._request("GET", "/teacher/validate", params={"token": token})
        except DirectoryAPIError as e:
            if e.status_code in (401, 403):
                return False
            logger.warning("Token validation error (trusting cached token): %s", e)
            return True
        return payload.get("code") == 200 and payload.get("message") == "ValidToken"  # noqa: PLR2004

    # ------------------------------ devices

    async def list_devices(self, asset_tag: str | None = None) -> list[Device]:
        params = {"assettag": asset_tag} if asset_tag else None
        payload = await self._request("GET", "/devices", params=params)
        return self._parse_list(Device, payload, "devices", "/devices")

    async def clear_restrictions(self, student_id: int, token: str) -> None:
        """Stop any lesson restriction applied to a student's devices."""
        await self._request(
            "POST",
            "/teacher/lessons/stop",
            params={"token": token},
            json={"students": str(student_id)},
        )

    async def apply_app_lock(
        self,
        student_id: int,
        apps: list[str | int],
        token: str,
        clear_after_minutes: float | None = None,
    ) -> None:
        body: dict[str, Any] = {"students": str(student_id), "apps": ",".join(str(app) for app in apps)}
        if clear_after_minutes:
            body["clearAfter"] = str(int(clear_after_minutes))
        await self._request("POST", "/teacher/apply/applock", params={"token": token}, json=body)

    async def lock_device(
        self,
        device: Device,
        apps: list[str | int],
        token: str,
        clear_after_minutes: float | None = None,
    ) -> None:
        """Lock a device's owner into ``apps``, clearing earlier restrictions first.

        Raises:
            ValueError: If the device has no owner.
        """
        if device.owner is None:
            raise ValueError(f"Device {device.udid} has no owner")
        await self.clear_restrictions(device.owner.id, token)
        await self.apply_app_lock(device.owner.id, apps, token, clear_after_minutes)

    async def unlock_device(self, device: Device, token: str) -> None:
        """Remove restrictions from a device's owner.

        Raises:
            ValueError: If the device has no owner.
        """
        if device.owner is None:
            raise ValueError(f"Device {device.udid} has no owner")
        await self.clear_restrictions(device.owner.id, token)

    async def restart_device(self, udid: str) -> None:
        """Restart a device. An admin call: the API key suffices, no session token is sent."""
        await self._request("POST", f"/devices/{udid}/restart")

    async def set_device_owner(self, udid: str, user_id: int) -> None:
        await self._request("PUT", f"/devices/{udid}/owner", json={"user": user_id})
