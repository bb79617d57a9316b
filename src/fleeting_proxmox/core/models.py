"""Core data models for fleeting-proxmox."""

from dataclasses import dataclass, field
from typing import Any

import pyotp
from pydantic import BaseModel, ConfigDict, Field, field_validator

QEMU_MEMBER_TYPE = "qemu"


class Credentials(BaseModel):
    """Credential record read from the credentials file.

    A non-empty ``token`` selects API token authentication, in which case
    ``password`` holds the token secret. Otherwise ``password`` is the user
    password used for an interactive ticket login.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str
    password: str = Field(..., repr=False)
    token: str = ""
    otpsecret: str = Field("", repr=False)
    path: str = ""
    privs: str = ""
    realm: str = ""

    @field_validator("token", "otpsecret", "path", "privs", "realm", mode="before")
    @classmethod
    def _none_is_absent(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def uses_api_token(self) -> bool:
        """Whether the record selects API token authentication."""
        return self.token != ""

    @property
    def api_token_id(self) -> str:
        """Full token identifier in ``user@realm!tokenid`` form."""
        return f"{self.username}@{self.realm}!{self.token}"

    def otp(self) -> str | None:
        """Current TOTP code derived from ``otpsecret``, if one is configured."""
        if not self.otpsecret:
            return None
        return pyotp.TOTP(self.otpsecret).now()


@dataclass(frozen=True)
class SessionTicket:
    """Authentication ticket issued by ``/access/ticket``."""

    username: str
    ticket: str = field(repr=False)
    csrf_token: str = field(repr=False)


class PoolMember(BaseModel):
    """Single resource listed in a pool."""

    model_config = ConfigDict(extra="ignore")

    type: str
    vmid: int | None = Field(None, ge=0)
    node: str = ""
    id: str = ""
    name: str | None = None

    @property
    def is_virtual_machine(self) -> bool:
        """Whether the member is a QEMU virtual machine."""
        return self.type == QEMU_MEMBER_TYPE


class Pool(BaseModel):
    """Resource pool with its current membership."""

    model_config = ConfigDict(extra="ignore")

    poolid: str
    comment: str | None = None
    members: list[PoolMember] = Field(default_factory=list)

    def virtual_machines(self) -> list[PoolMember]:
        """Members that are QEMU virtual machines, in API order."""
        return [member for member in self.members if member.is_virtual_machine]


class Node(BaseModel):
    """Cluster node as reported by ``/nodes/{node}/status``."""

    model_config = ConfigDict(extra="ignore")

    name: str
    uptime: int | None = None
    cpu: float | None = None
    pveversion: str | None = None


class VirtualMachine(BaseModel):
    """Handle to a virtual machine scoped to the node hosting it."""

    model_config = ConfigDict(extra="ignore")

    vmid: int = Field(..., ge=0)
    node: str
    name: str | None = None
    status: str | None = None
    template: bool = False

    @field_validator("template", mode="before")
    @classmethod
    def _template_flag(cls, value: Any) -> Any:
        # The API reports template as 0/1 or omits it
        return bool(value) if value is not None else False
