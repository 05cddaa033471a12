"""forge.donations.queries

Query Façade. The only read surface presentation layers see.

Reads never raise into the caller: a failed read is logged and comes back
empty or error-shaped.
"""

from __future__ import annotations

import logging

from forge.core.database import Database
from forge.core.exceptions import SolarForgeError
from forge.core.models import (
    AllStarStats,
    Balance,
    Donation,
    DonationStatus,
    Notification,
    SolarForgeByIssueResult,
    SolarForgeModel,
    SolarForgeByVersionResult,
)
from forge.core.notifications import list_notifications
from forge.donations.views import AggregationViews

logger = logging.getLogger(__name__)


class DonationQueries:
    def __init__(self, db: Database, views: AggregationViews) -> None:
        self._db = db
        self._views = views

    def get_donations_by_galaxy_id(self, galaxy_id: str) -> list[Donation]:
        """Completed donations for a galaxy, newest first."""

        try:
            return self._views.donations_by_galaxy(galaxy_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "donations_by_galaxy", "error": str(e)})
            return []

    def get_donation(self, donation_id: str) -> Donation | None:
        """A completed donation by id. Pending and expired rows read as absent."""

        try:
            donation = self._views.get_donation(donation_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "donation", "error": str(e)})
            return None
        if donation is None or donation.status != DonationStatus.COMPLETED:
            return None
        return donation

    def get_solar_forge(self, issue_id: str) -> SolarForgeModel | None:
        try:
            return self._views.solar_forge(issue_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "solar_forge", "error": str(e)})
            return None

    def get_solar_forge_by_issue(self, issue_id: str) -> SolarForgeByIssueResult:
        try:
            return self._views.solar_forge_by_issue(issue_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "solar_forge_by_issue", "error": str(e)})
            return SolarForgeByIssueResult(error=str(e))

    def get_solar_forge_by_version(self, version_id: str) -> SolarForgeByVersionResult:
        try:
            return self._views.solar_forge_by_version(version_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "solar_forge_by_version", "error": str(e)})
            return SolarForgeByVersionResult(error=str(e))

    def check_solar_forge_by_issue(self, issue_id: str) -> bool:
        try:
            return self._views.check_solar_forge_by_issue(issue_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "check_solar_forge", "error": str(e)})
            return False

    def get_user_balance(self, user_id: str) -> Balance:
        try:
            return self._views.user_balance(user_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "user_balance", "error": str(e)})
            return Balance(owner_type="user", owner_id=user_id)

    def get_galaxy_balance(self, galaxy_id: str) -> Balance:
        try:
            return self._views.galaxy_balance(galaxy_id)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "galaxy_balance", "error": str(e)})
            return Balance(owner_type="galaxy", owner_id=galaxy_id)

    def get_all_star_stats(self) -> AllStarStats:
        try:
            return self._views.all_star_stats()
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "all_star_stats", "error": str(e)})
            return AllStarStats()

    def get_notifications(self, *, after_id: int = 0, limit: int = 100) -> list[Notification]:
        """Outbox rows after ``after_id``, oldest first. A polling read model."""

        try:
            return list_notifications(self._db, after_id=after_id, limit=limit)
        except SolarForgeError as e:
            logger.error("query_failed", extra={"query": "notifications", "error": str(e)})
            return []
