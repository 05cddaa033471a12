from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.auth import AuthDep
from api.deps import get_queries
from forge.core.models import Notification
from forge.donations.queries import DonationQueries

router = APIRouter(prefix="/notifications", dependencies=[AuthDep])


@router.get("", response_model=list[Notification])
def list_notifications(
    queries: DonationQueries = Depends(get_queries),
    after_id: int = Query(0, ge=0, description="Return rows with id greater than this cursor"),
    limit: int = Query(100, ge=1, le=500),
) -> list[Notification]:
    return queries.get_notifications(after_id=after_id, limit=limit)
