"""forge.donations.views

Aggregation Views.

Read-time folds over persisted reward state. Issue and version views read
inside one snapshot so totals and contributors agree with each other.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from forge.core.database import DONATION_COLUMNS, Database, row_to_donation
from forge.core.models import (
    AllStarStats,
    Balance,
    Donation,
    DonationStatus,
    Patch,
    SolarForgeByIssueResult,
    SolarForgeByVersionResult,
    SolarForgeModel,
    SolarUser,
    Version,
)
from forge.core.time import dt_to_iso, utc_now
from forge.donations.rewards import read_balance, to_stars

logger = logging.getLogger(__name__)


# -----------------
# Collaborators
# -----------------


@runtime_checkable
class UserDirectory(Protocol):
    def roles_for(self, user_id: str) -> list[str]: ...


@runtime_checkable
class VersionSource(Protocol):
    def get_version(self, version_id: str) -> Version | None: ...


class StaticUserDirectory:
    """In-memory directory. Unknown users have no roles."""

    def __init__(self, roles: Mapping[str, Sequence[str]] | None = None) -> None:
        self._roles = {k: list(v) for k, v in (roles or {}).items()}

    def roles_for(self, user_id: str) -> list[str]:
        return list(self._roles.get(user_id, []))

    def set_roles(self, user_id: str, roles: Sequence[str]) -> None:
        self._roles[user_id] = list(roles)


class SqliteVersionSource:
    """Stores the patch-completion facts the roadmap hands over."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def put_version(self, version: Version) -> Version:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO versions (id, galaxy_id, tag, status, updated_at) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    galaxy_id = excluded.galaxy_id,
                    tag = excluded.tag,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (version.id, version.galaxy_id, version.tag, version.status, dt_to_iso(utc_now())),
            )
            conn.execute("DELETE FROM version_patches WHERE version_id = ?", (version.id,))
            conn.executemany(
                "INSERT INTO version_patches (version_id, patch_id, completed, title, position) "
                "VALUES (?, ?, ?, ?, ?)",
                [(version.id, p.id, int(p.completed), p.title, i) for i, p in enumerate(version.patches)],
            )
        logger.info("version_stored", extra={"version_id": version.id, "patches": len(version.patches)})
        return version

    def get_version(self, version_id: str) -> Version | None:
        with self._db.snapshot() as conn:
            row = conn.execute(
                "SELECT id, galaxy_id, tag, status FROM versions WHERE id = ?", (version_id,)
            ).fetchone()
            if row is None:
                return None
            patches = conn.execute(
                "SELECT patch_id, completed, title FROM version_patches "
                "WHERE version_id = ? ORDER BY position ASC",
                (version_id,),
            ).fetchall()
        return Version(
            id=str(row["id"]),
            galaxy_id=str(row["galaxy_id"]),
            tag=str(row["tag"]),
            status=str(row["status"]),  # type: ignore[arg-type]
            patches=[
                Patch(id=str(p["patch_id"]), completed=bool(p["completed"]), title=str(p["title"]))
                for p in patches
            ],
        )


# -----------------
# Views
# -----------------


class AggregationViews:
    def __init__(
        self,
        db: Database,
        *,
        user_directory: UserDirectory | None = None,
        version_source: VersionSource | None = None,
    ) -> None:
        self._db = db
        self.user_directory = user_directory or StaticUserDirectory()
        self.version_source = version_source or SqliteVersionSource(db)

    def check_solar_forge_by_issue(self, issue_id: str) -> bool:
        rows = self._db.execute("SELECT 1 FROM solar_forges WHERE issue_id = ?", (issue_id,))
        return bool(rows)

    def solar_forge(self, issue_id: str) -> SolarForgeModel | None:
        with self._db.snapshot() as conn:
            row = conn.execute(
                "SELECT id, solar_forge_type, issue_id, sunshines, created_time FROM solar_forges WHERE issue_id = ?",
                (issue_id,),
            ).fetchone()
            if row is None:
                return None
            members = conn.execute(
                "SELECT user_id FROM solar_forge_users WHERE issue_id = ? ORDER BY joined_at ASC, user_id ASC",
                (issue_id,),
            ).fetchall()
        return SolarForgeModel(
            id=str(row["id"]),
            solar_forge_type=str(row["solar_forge_type"]),  # type: ignore[arg-type]
            issue_id=str(row["issue_id"]),
            users=[str(m["user_id"]) for m in members],
            sunshines=float(row["sunshines"]),
            created_time=int(row["created_time"]),
        )

    def solar_forge_by_issue(self, issue_id: str) -> SolarForgeByIssueResult:
        with self._db.snapshot() as conn:
            forge = conn.execute("SELECT id FROM solar_forges WHERE issue_id = ?", (issue_id,)).fetchone()
            if forge is None:
                return SolarForgeByIssueResult(error=f"solar forge not found for issue {issue_id}")
            members = conn.execute(
                "SELECT user_id FROM solar_forge_users WHERE issue_id = ? ORDER BY joined_at ASC, user_id ASC",
                (issue_id,),
            ).fetchall()
            stars = {str(m["user_id"]): read_balance(conn, "user", str(m["user_id"])).stars for m in members}

        return SolarForgeByIssueResult(
            users=[
                SolarUser(id=user_id, roles=self.user_directory.roles_for(user_id), stars=s)
                for user_id, s in stars.items()
            ],
            solar_forge_id=str(forge["id"]),
        )

    def solar_forge_by_version(self, version_id: str) -> SolarForgeByVersionResult:
        if isinstance(self.version_source, SqliteVersionSource):
            # Version facts and forge rows share one read transaction.
            with self._db.snapshot():
                return self._fold_version(version_id)
        return self._fold_version(version_id)

    def _fold_version(self, version_id: str) -> SolarForgeByVersionResult:
        version = self.version_source.get_version(version_id)
        if version is None:
            return SolarForgeByVersionResult(error=f"version not found: {version_id}")

        issue_ids = list(dict.fromkeys(p.id for p in version.patches if p.completed))
        if not issue_ids:
            return SolarForgeByVersionResult()

        marks = ",".join("?" for _ in issue_ids)
        with self._db.snapshot() as conn:
            forges = conn.execute(
                f"SELECT issue_id, sunshines FROM solar_forges WHERE issue_id IN ({marks})", issue_ids
            ).fetchall()
            contributions = conn.execute(
                f"SELECT user_id, SUM(sunshines) AS sunshines FROM solar_forge_users "
                f"WHERE issue_id IN ({marks}) GROUP BY user_id",
                issue_ids,
            ).fetchall()

        total_sunshines = sum(float(f["sunshines"]) for f in forges)
        users = [
            SolarUser(
                id=str(c["user_id"]),
                roles=self.user_directory.roles_for(str(c["user_id"])),
                stars=to_stars(float(c["sunshines"])),
            )
            for c in contributions
        ]
        users.sort(key=lambda u: (-u.stars, u.id))
        return SolarForgeByVersionResult(
            users=users,
            total_issues=len(issue_ids),
            total_sunshines=total_sunshines,
            total_stars=sum(to_stars(float(f["sunshines"])) for f in forges),
        )

    def donations_by_galaxy(self, galaxy_id: str, *, include_pending: bool = False) -> list[Donation]:
        rows = self._db.execute(
            f"SELECT {DONATION_COLUMNS} FROM donations WHERE galaxy_id = ?", (galaxy_id,)
        )
        donations = [row_to_donation(r) for r in rows]
        if include_pending:
            donations = [d for d in donations if d.status != DonationStatus.EXPIRED]
        else:
            donations = [d for d in donations if d.status == DonationStatus.COMPLETED]
        donations.sort(key=lambda d: d.created_at, reverse=True)
        return donations

    def get_donation(self, donation_id: str) -> Donation | None:
        rows = self._db.execute(f"SELECT {DONATION_COLUMNS} FROM donations WHERE id = ?", (donation_id,))
        return row_to_donation(rows[0]) if rows else None

    def user_balance(self, user_id: str) -> Balance:
        with self._db.snapshot() as conn:
            return read_balance(conn, "user", user_id)

    def galaxy_balance(self, galaxy_id: str) -> Balance:
        with self._db.snapshot() as conn:
            return read_balance(conn, "galaxy", galaxy_id)

    def all_star_stats(self) -> AllStarStats:
        with self._db.snapshot() as conn:
            galaxies = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(stars), 0) AS stars, COALESCE(SUM(sunshines), 0) AS sunshines "
                "FROM galaxy_balances"
            ).fetchone()
            users = conn.execute("SELECT COUNT(*) AS n FROM user_balances").fetchone()
        return AllStarStats(
            total_galaxies=int(galaxies["n"]),
            total_stars=float(galaxies["stars"]),
            total_users=int(users["n"]),
            total_sunshines=float(galaxies["sunshines"]),
        )