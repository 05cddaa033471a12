from __future__ import annotations

from pydantic import BaseModel, Field

from forge.core.events import MAX_COUNTER
from forge.core.models import Donation
from forge.service import LegOutcome


class InitiateLegRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Verified user id from the session provider")
    galaxy_id: str = Field(..., min_length=1)
    counter: int = Field(..., ge=0, le=MAX_COUNTER, description="Client-side correlation counter")
    tx_id: str = Field(..., min_length=1, description="On-chain initiation transaction id")
    issue_id: str | None = None
    spend_usd_amount: float | None = Field(None, ge=0, description="Advisory; cross-checked against the processor")


class ProcessorLegRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    galaxy_id: str = Field(..., min_length=1)
    counter: int = Field(..., ge=0, le=MAX_COUNTER)
    tx_id: str = Field(..., min_length=1, description="Processor (hyperpay) transaction id")
    spend_usd_amount: float = Field(..., ge=0)
    sunshines_amount: float = Field(..., ge=0)
    memo: str | None = Field(None, max_length=1000)
    issue_id: str | None = None


class LegOutcomeResponse(BaseModel):
    result: str
    transition: str
    donation: Donation | None = None
    anomalies: list[str] = []

    @classmethod
    def from_outcome(cls, outcome: LegOutcome) -> LegOutcomeResponse:
        return cls(
            result=str(outcome.result),
            transition=str(outcome.transition),
            donation=outcome.donation,
            anomalies=list(outcome.anomalies),
        )
