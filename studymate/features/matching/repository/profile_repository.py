"""
Read-side persistence for the matching feature.

Profiles live in ``users``; like/pass edges live in ``matches``. The
pipeline only reads them here; edge writes go through
RelationshipRepository.
"""

from collections.abc import Iterable, Sequence

from studymate.db.helpers import fetch_all, fetch_one, with_db_retry
from studymate.db.pool import DatabasePoolManager
from studymate.features.matching.domain import Profile, Relationship, RelationshipStatus
from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PROFILE_SELECT_COLUMNS = """
    id, first_name, last_name, university, major, year, bio, avatar,
    interests, skills, study_goals, preferred_study_time, languages,
    total_matches, successful_matches, average_rating, gpa,
    created_at, last_active
"""

RELATIONSHIP_SELECT_COLUMNS = "id, sender_id, receiver_id, status, created_at"


def row_to_profile(row: dict | None) -> Profile | None:
    if not row:
        return None

    return Profile(
        id=str(row["id"]),
        university=row.get("university") or "",
        major=row.get("major") or "",
        year=row.get("year") or 1,
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        bio=row.get("bio"),
        avatar=row.get("avatar"),
        interests=row.get("interests") or [],
        skills=row.get("skills") or [],
        study_goals=row.get("study_goals") or [],
        preferred_study_time=row.get("preferred_study_time") or [],
        languages=row.get("languages") or [],
        total_matches=row.get("total_matches") or 0,
        successful_matches=row.get("successful_matches") or 0,
        average_rating=float(row.get("average_rating") or 0.0),
        gpa=float(row["gpa"]) if row.get("gpa") is not None else None,
        created_at=row.get("created_at"),
        last_active=row.get("last_active"),
    )


def row_to_relationship(row: dict | None) -> Relationship | None:
    if not row:
        return None

    return Relationship(
        id=str(row["id"]),
        sender_id=str(row["sender_id"]),
        receiver_id=str(row["receiver_id"]),
        status=RelationshipStatus(row["status"]),
        created_at=row.get("created_at"),
    )


class ProfileRepository:
    """Postgres-backed profile store."""

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    @with_db_retry()
    async def find_user_by_id(self, user_id: str) -> Profile | None:
        query = f"SELECT {PROFILE_SELECT_COLUMNS} FROM users WHERE id::text = %s"
        row = await fetch_one(self.pool, query, (user_id,))
        return row_to_profile(row)

    @with_db_retry()
    async def find_candidates(
        self, exclude_ids: Iterable[str], limit: int, active_days: int
    ) -> list[Profile]:
        """
        Public profiles active within ``active_days``, most recent first.
        """
        query = f"""
            SELECT {PROFILE_SELECT_COLUMNS}
            FROM users
            WHERE NOT (id::text = ANY(%s::text[]))
              AND is_profile_public = TRUE
              AND last_active >= NOW() - make_interval(days => %s)
            ORDER BY last_active DESC
            LIMIT %s
        """
        rows = await fetch_all(self.pool, query, (list(exclude_ids), active_days, limit))
        profiles = [row_to_profile(row) for row in rows]

        logger.debug("Candidate profiles loaded", count=len(profiles), limit=limit)
        return profiles

    @with_db_retry()
    async def find_related_user_ids(
        self, user_id: str, statuses: Sequence[RelationshipStatus]
    ) -> set[str]:
        """Partners on either side of an edge whose status is in ``statuses``."""
        query = """
            SELECT receiver_id::text AS partner_id
            FROM matches
            WHERE sender_id::text = %s AND status = ANY(%s::text[])
            UNION
            SELECT sender_id::text AS partner_id
            FROM matches
            WHERE receiver_id::text = %s AND status = ANY(%s::text[])
        """
        status_values = [RelationshipStatus(s).value for s in statuses]
        rows = await fetch_all(
            self.pool, query, (user_id, status_values, user_id, status_values)
        )
        return {row["partner_id"] for row in rows}

    @with_db_retry()
    async def find_active_user_ids(self, active_days: int, limit: int) -> list[str]:
        query = """
            SELECT id::text AS id
            FROM users
            WHERE is_profile_public = TRUE
              AND last_active >= NOW() - make_interval(days => %s)
            ORDER BY last_active DESC
            LIMIT %s
        """
        rows = await fetch_all(self.pool, query, (active_days, limit))
        return [row["id"] for row in rows]

    @with_db_retry()
    async def find_relationship(self, user_a: str, user_b: str) -> Relationship | None:
        """Any edge between the two users, in either direction."""
        query = f"""
            SELECT {RELATIONSHIP_SELECT_COLUMNS}
            FROM matches
            WHERE (sender_id::text = %s AND receiver_id::text = %s)
               OR (sender_id::text = %s AND receiver_id::text = %s)
            ORDER BY created_at DESC
            LIMIT 1
        """
        row = await fetch_one(self.pool, query, (user_a, user_b, user_b, user_a))
        return row_to_relationship(row)
