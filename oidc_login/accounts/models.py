"""
Local account domain model.

An account is the local identity that external OpenID Connect subjects
are bound to. Bindings themselves are held by the repository.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AccountStatus(str, Enum):
    """Whether the account may log in."""

    ACTIVE = "active"
    BLOCKED = "blocked"


class Account(BaseModel):
    """
    Account domain model.

    Created on first login through a provider (when registration policy
    allows it) or pre-existing and connected later.
    """

    uid: str = Field(
        default_factory=lambda: uuid4().hex, description="Local account id"
    )
    name: str = Field(description="Unique login name")
    mail: EmailStr | None = Field(default=None, description="E-mail address")
    status: AccountStatus = Field(default=AccountStatus.ACTIVE)
    roles: list[str] = Field(default_factory=lambda: ["authenticated"])
    properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Profile properties mapped from provider claims",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Account creation timestamp",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Last update timestamp",
    )

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @property
    def is_blocked(self) -> bool:
        return self.status == AccountStatus.BLOCKED

    def set_property(self, name: str, value: Any) -> None:
        """Set a mapped profile property."""
        self.properties[name] = value
        self.updated_at = datetime.now(UTC)
