from __future__ import annotations

from fastapi import APIRouter, Depends

from api.auth import AuthDep
from api.deps import get_service
from api.schemas.legs import InitiateLegRequest, LegOutcomeResponse, ProcessorLegRequest
from forge.service import DonationService

router = APIRouter(prefix="/legs", dependencies=[AuthDep])


@router.post("/initiate", response_model=LegOutcomeResponse)
def notify_initiate(req: InitiateLegRequest, service: DonationService = Depends(get_service)) -> LegOutcomeResponse:
    outcome = service.notify_initiate_leg(
        req.user_id,
        req.galaxy_id,
        req.counter,
        req.tx_id,
        issue_id=req.issue_id,
        spend_usd_amount=req.spend_usd_amount,
    )
    return LegOutcomeResponse.from_outcome(outcome)


@router.post("/processor", response_model=LegOutcomeResponse)
def notify_processor(req: ProcessorLegRequest, service: DonationService = Depends(get_service)) -> LegOutcomeResponse:
    outcome = service.notify_processor_leg(
        req.user_id,
        req.galaxy_id,
        req.counter,
        req.tx_id,
        req.spend_usd_amount,
        req.sunshines_amount,
        req.memo,
        issue_id=req.issue_id,
    )
    return LegOutcomeResponse.from_outcome(outcome)
