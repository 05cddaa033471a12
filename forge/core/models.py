"""forge.core.models

Core domain models.

A donation's status is derived from what it holds, never stored beside it.
A completed donation is immutable. Nothing here is ever deleted.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field

from forge.core.events import LegType, canonical_json


class DonationStatus(StrEnum):
    PENDING_INITIATE = "pending-initiate"
    PENDING_PROCESSOR = "pending-processor"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in (DonationStatus.COMPLETED, DonationStatus.EXPIRED)


def derive_status(
    *,
    initiate_tx_id: str | None,
    hyperpay_tx_id: str | None,
    expired_at: datetime | str | None,
) -> DonationStatus:
    if expired_at is not None:
        return DonationStatus.EXPIRED
    if initiate_tx_id is not None and hyperpay_tx_id is not None:
        return DonationStatus.COMPLETED
    if initiate_tx_id is not None:
        return DonationStatus.PENDING_PROCESSOR
    return DonationStatus.PENDING_INITIATE


class Donation(BaseModel):
    """Aggregate root. One row per correlated pair of legs."""

    id: str
    user_id: str
    galaxy_id: str
    counter: int
    initiate_tx_id: str | None = None
    hyperpay_tx_id: str | None = None
    sunshines_amount: float | None = None
    spend_usd_amount: float | None = None
    memo: str | None = None
    issue_id: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    expired_at: datetime | None = None
    reward_applied_at: datetime | None = None

    model_config = {"frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> DonationStatus:
        return derive_status(
            initiate_tx_id=self.initiate_tx_id,
            hyperpay_tx_id=self.hyperpay_tx_id,
            expired_at=self.expired_at,
        )

    def tx_id_for(self, leg_type: LegType) -> str | None:
        return self.initiate_tx_id if leg_type == LegType.INITIATE else self.hyperpay_tx_id


class LegRecord(BaseModel):
    """A leg as the ledger stored it."""

    id: str
    leg_type: LegType
    leg_tx_id: str
    counter: int
    user_id: str
    galaxy_id: str
    received_at: datetime
    payload: dict[str, Any]
    payload_hash: str
    donation_id: str | None = None
    rejection: str | None = None
    prev_hash: str | None = None
    hash: str

    @property
    def reconciled(self) -> bool:
        return self.donation_id is not None or self.rejection is not None

    model_config = {"frozen": True}


class Balance(BaseModel):
    """Running totals for a user or a galaxy."""

    owner_type: Literal["user", "galaxy"]
    owner_id: str
    sunshines: float = 0.0
    stars: float = 0.0
    donations: int = 0
    updated_at: datetime | None = None


class SolarForgeModel(BaseModel):
    id: str
    solar_forge_type: Literal["issue"] = "issue"
    issue_id: str
    users: list[str] = Field(default_factory=list)
    sunshines: float = 0.0
    created_time: int


class SolarUser(BaseModel):
    id: str
    roles: list[str] = Field(default_factory=list)
    stars: float = 0.0


class SolarForgeByIssueResult(BaseModel):
    users: list[SolarUser] = Field(default_factory=list)
    solar_forge_id: str = ""
    error: str | None = None


class SolarForgeByVersionResult(BaseModel):
    users: list[SolarUser] = Field(default_factory=list)
    total_issues: int = 0
    total_sunshines: float = 0.0
    total_stars: float = 0.0
    error: str | None = None


class AllStarStats(BaseModel):
    total_galaxies: int = 0
    total_stars: float = 0.0
    total_users: int = 0
    total_sunshines: float = 0.0


class Patch(BaseModel):
    id: str
    completed: bool = False
    title: str = ""


class Version(BaseModel):
    id: str
    galaxy_id: str
    tag: str = ""
    status: Literal["completed", "active", "planned"] = "planned"
    patches: list[Patch] = Field(default_factory=list)


class Notification(BaseModel):
    id: int
    type: str
    payload: dict[str, Any]
    created_at: datetime
    dispatched_at: datetime | None = None


def compute_leg_hash(
    *,
    prev_hash: str | None,
    leg_type: LegType,
    leg_tx_id: str,
    payload: dict[str, Any],
    received_at: datetime,
    leg_id: str,
) -> str:
    """Compute the canonical SHA-256 leg hash.

    Hash = sha256(prev_hash | received_at | leg_id | leg_type | leg_tx_id | canonical_payload_json)
    """

    header_parts = [
        prev_hash or "",
        received_at.isoformat(),
        leg_id,
        str(leg_type),
        leg_tx_id,
    ]

    data = "|".join(header_parts) + "|" + canonical_json(payload)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
