"""Exception hierarchy for the classroom tablet manager.

- ClassroomTabletError: base for everything raised by this package
- DirectoryAPIError: the remote directory/device-management service failed
- AuthenticationError: teacher credentials could not be exchanged for a token
- ProvisioningError: bootstrap could not complete (see ProvisioningErrorKind)
- ScheduleStoreError: weekly schedules could not be read or written
- DeviceActionError: a single device action failed inside a batch
"""

from enum import StrEnum
from typing import Any


class ClassroomTabletError(Exception):
    """Base exception for all classroom tablet manager errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class DirectoryAPIError(ClassroomTabletError):
    """HTTP or transport error from the directory service.

    Attributes:
        status_code: HTTP status code, or None when no response was received.
        method: HTTP method of the failed request.
        path: Request path relative to the API base URL.
        body_text: Raw response body if available.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str = "",
        path: str = "",
        body_text: str = "",
    ) -> None:
        super().__init__(message, {"status_code": status_code, "method": method, "path": path})
        self.status_code = status_code
        self.method = method
        self.path = path
        self.body_text = body_text or ""


class AuthenticationError(ClassroomTabletError):
    """Teacher credentials were rejected or the authentication call failed."""


class ProvisioningErrorKind(StrEnum):
    """Reasons a bootstrap run can abort."""

    LOCATIONS_UNAVAILABLE = "locations_unavailable"
    CLASS_CREATION_FAILED = "class_creation_failed"
    DICTIONARY_BUILD_FAILED = "dictionary_build_failed"


class ProvisioningError(ClassroomTabletError):
    """Bootstrap aborted; the directory index is incomplete.

    Attributes:
        kind: Which stage of the bootstrap failed.
    """

    def __init__(self, kind: ProvisioningErrorKind, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.kind = kind


class ScheduleStoreError(ClassroomTabletError):
    """Reading or writing student app profiles failed."""


class DeviceActionError(ClassroomTabletError):
    """A device action failed for one device.

    Attributes:
        device_id: UDID of the device the action targeted.
    """

    def __init__(self, device_id: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.device_id = device_id
