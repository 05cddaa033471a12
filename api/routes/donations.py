from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.auth import AuthDep
from api.deps import get_queries
from api.schemas.common import PaginatedResponse, paginate
from forge.core.exceptions import DonationNotFoundError
from forge.core.models import Donation
from forge.donations.queries import DonationQueries

router = APIRouter(dependencies=[AuthDep])


@router.get("/galaxies/{galaxy_id}/donations", response_model=PaginatedResponse[Donation])
def list_galaxy_donations(
    galaxy_id: str,
    queries: DonationQueries = Depends(get_queries),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> PaginatedResponse[Donation]:
    donations = queries.get_donations_by_galaxy_id(galaxy_id)
    return PaginatedResponse[Donation](**paginate(donations, limit=limit, offset=offset))


@router.get("/donations/{donation_id}", response_model=Donation)
def get_donation(donation_id: str, queries: DonationQueries = Depends(get_queries)) -> Donation:
    donation = queries.get_donation(donation_id)
    if donation is None:
        raise DonationNotFoundError(f"donation not found: {donation_id}")
    return donation
