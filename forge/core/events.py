"""forge.core.events

The leg contract is the primitive.

Two independent confirmations arrive, in any order, possibly more than once.
Each is a tagged variant with a strict schema; anything else is rejected at
the boundary before it can touch the ledger.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from forge.core.exceptions import MalformedLegError
from forge.core.time import utc_now

# Largest counter SQLite stores as INTEGER.
MAX_COUNTER = 2**63 - 1


class LegType(StrEnum):
    INITIATE = "initiate"
    PROCESSOR = "processor"


class EventType(StrEnum):
    """Canonical event type registry.

    Naming: ``{category}.{domain}.{version}``.
    """

    # Inbound legs (ledger)
    LEG_INITIATE_V1 = "leg.initiate.v1"
    LEG_PROCESSOR_V1 = "leg.processor.v1"

    # Donation lifecycle (outbox)
    DONATION_PENDING_V1 = "donation.pending.v1"
    DONATION_COMPLETED_V1 = "donation.completed.v1"
    DONATION_EXPIRED_V1 = "donation.expired.v1"

    # Rewards (outbox)
    REWARD_APPLIED_V1 = "reward.applied.v1"

    # Integrity
    CORRELATION_ANOMALY_V1 = "correlation.anomaly.v1"


# -----------------
# Leg payloads
# -----------------


class _LegBase(BaseModel):
    leg_tx_id: str = Field(min_length=1)
    counter: int = Field(ge=0, le=MAX_COUNTER)
    user_id: str = Field(min_length=1)
    galaxy_id: str = Field(min_length=1)
    issue_id: str | None = None
    received_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True, "extra": "forbid"}

    @property
    def triple(self) -> tuple[str, str, int]:
        return (self.user_id, self.galaxy_id, self.counter)

    def content(self) -> dict[str, Any]:
        """Delivery-independent content. Two deliveries of one leg share it."""

        return self.model_dump(mode="json", exclude={"received_at"})


class InitiateLeg(_LegBase):
    """On-chain initiation confirmation. Amount, when present, is advisory."""

    leg_type: Literal["initiate"] = "initiate"
    spend_usd_amount: float | None = Field(default=None, ge=0, allow_inf_nan=False)

    @property
    def event_type(self) -> EventType:
        return EventType.LEG_INITIATE_V1


class ProcessorLeg(_LegBase):
    """Payment processor confirmation. Authoritative for amounts."""

    leg_type: Literal["processor"] = "processor"
    spend_usd_amount: float = Field(ge=0, allow_inf_nan=False)
    sunshines_amount: float = Field(ge=0, allow_inf_nan=False)
    memo: str | None = Field(default=None, max_length=1000)

    @property
    def event_type(self) -> EventType:
        return EventType.LEG_PROCESSOR_V1


LegEvent = Annotated[InitiateLeg | ProcessorLeg, Field(discriminator="leg_type")]

_leg_adapter: TypeAdapter[InitiateLeg | ProcessorLeg] = TypeAdapter(LegEvent)


def validate_leg(obj: Any) -> InitiateLeg | ProcessorLeg:
    """Validate a raw leg payload into its variant.

    Raises:
        MalformedLegError: on any schema violation.
    """

    try:
        return _leg_adapter.validate_python(obj)
    except ValidationError as e:
        raise MalformedLegError(str(e)) from e


# -----------------
# Outbox payloads
# -----------------


class DonationPendingPayload(BaseModel):
    donation_id: str
    user_id: str
    galaxy_id: str
    counter: int
    status: str


class DonationCompletedPayload(BaseModel):
    donation_id: str
    user_id: str
    galaxy_id: str
    counter: int
    initiate_tx_id: str
    hyperpay_tx_id: str
    sunshines_amount: float
    spend_usd_amount: float
    issue_id: str | None = None


class DonationExpiredPayload(BaseModel):
    donation_id: str
    user_id: str
    galaxy_id: str
    counter: int
    status_before: str


class RewardAppliedPayload(BaseModel):
    donation_id: str
    user_id: str
    galaxy_id: str
    sunshines: float
    stars: float
    issue_id: str | None = None
    user_sunshines_total: float
    user_stars_total: float
    galaxy_sunshines_total: float
    galaxy_stars_total: float


class CorrelationAnomalyPayload(BaseModel):
    kind: Literal["tx_mismatch", "payload_mismatch", "amount_mismatch"]
    leg_type: LegType
    leg_tx_id: str
    user_id: str
    galaxy_id: str
    counter: int
    donation_id: str | None = None
    detail: str = ""


def canonical_json(data: Any) -> str:
    """Canonical JSON serialization used for hashing and dedupe."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_hash(payload: BaseModel | dict[str, Any]) -> str:
    """SHA-256 hash of canonical payload JSON."""

    obj = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
