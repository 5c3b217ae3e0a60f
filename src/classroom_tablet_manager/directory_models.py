"""Pydantic models for objects held by the directory/device-management service.

Field names are snake_case in Python and camelCase on the wire; models accept
either when constructed.
"""

import random

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DirectoryModel(BaseModel):
    """Base model mapping snake_case attributes to camelCase API fields."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Location(DirectoryModel):
    id: int
    name: str = ""


class SchoolClass(DirectoryModel):
    """A class as returned by the class listing.

    Attributes:
        uuid: Class identifier used by class endpoints.
        user_group_id: Id of the user group backing the class.
    """

    uuid: str
    name: str
    location_id: int
    user_group_id: int = 0
    description: str = ""


class DirectoryUser(DirectoryModel):
    id: int = 0
    location_id: int
    username: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    notes: str = ""
    group_ids: list[int] = []
    teacher_groups: list[int] = []

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def teacher_for_location(cls, location_id: int, username_prefix: str) -> "DirectoryUser":
        """Build the reserved teacher account for a location (not yet created)."""
        suffix = random.randint(1, 1_000_000)  # noqa: S311
        return cls(
            location_id=location_id,
            username=f"{username_prefix}{location_id}",
            email=f"classroomTeacher{location_id}and{suffix}@example.com",
            first_name=username_prefix,
            last_name=username_prefix,
        )


class GroupAcl(DirectoryModel):
    teacher: str = "allow"
    parent: str = "inherit"


class DirectoryGroup(DirectoryModel):
    id: int = 0
    location_id: int
    name: str
    description: str = ""
    user_count: int = 0
    acl: GroupAcl = Field(default_factory=GroupAcl)

    @classmethod
    def teacher_group_for_location(cls, location_id: int, name_prefix: str) -> "DirectoryGroup":
        """Build the reserved teacher group for a location (not yet created)."""
        return cls(
            location_id=location_id,
            name=f"{name_prefix}{location_id}",
            description="Teacher group managed by the classroom tablet manager",
            acl=GroupAcl(teacher="allow"),
        )


class Owner(DirectoryModel):
    """The student a device is assigned to."""

    id: int
    location_id: int = 0
    name: str = ""
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class Device(DirectoryModel):
    """A managed tablet. ``owner`` is None when the device is unassigned."""

    udid: str = Field(alias="UDID")
    serial_number: str = ""
    name: str = ""
    asset_tag: str = ""
    location_id: int = 0
    owner: Owner | None = None
    battery_level: float = 0.0


class AuthenticatedAs(DirectoryModel):
    id: int
    company_id: int = 0
    username: str = ""
    name: str = ""


class AuthenticationResponse(DirectoryModel):
    code: int = 200
    token: str
    authenticated_as: AuthenticatedAs | None = None
