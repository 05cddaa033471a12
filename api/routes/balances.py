from __future__ import annotations

from fastapi import APIRouter, Depends

from api.auth import AuthDep
from api.deps import get_queries
from forge.core.models import AllStarStats, Balance
from forge.donations.queries import DonationQueries

router = APIRouter(dependencies=[AuthDep])


@router.get("/users/{user_id}/balance", response_model=Balance)
def user_balance(user_id: str, queries: DonationQueries = Depends(get_queries)) -> Balance:
    return queries.get_user_balance(user_id)


@router.get("/galaxies/{galaxy_id}/balance", response_model=Balance)
def galaxy_balance(galaxy_id: str, queries: DonationQueries = Depends(get_queries)) -> Balance:
    return queries.get_galaxy_balance(galaxy_id)


@router.get("/stats", response_model=AllStarStats)
def all_star_stats(queries: DonationQueries = Depends(get_queries)) -> AllStarStats:
    return queries.get_all_star_stats()
