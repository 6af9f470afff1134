"""
Write-side persistence for like / pass edges.
"""

from studymate.db.helpers import DatabaseError, execute_query, fetch_one
from studymate.db.pool import DatabasePoolManager
from studymate.features.matching.domain import Relationship, RelationshipStatus
from studymate.infrastructure.observability.logging import get_logger

from .profile_repository import RELATIONSHIP_SELECT_COLUMNS, row_to_relationship

logger = get_logger(__name__)


class RelationshipRepositoryError(DatabaseError):
    """More specific exception for edge write failures."""


class RelationshipRepository:
    """Postgres-backed relationship store."""

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def create_edge(
        self, sender_id: str, receiver_id: str, status: RelationshipStatus
    ) -> Relationship:
        query = f"""
            INSERT INTO matches (sender_id, receiver_id, status, created_at)
            VALUES (%s, %s, %s, NOW())
            RETURNING {RELATIONSHIP_SELECT_COLUMNS}
        """
        row = await fetch_one(
            self.pool, query, (sender_id, receiver_id, RelationshipStatus(status).value)
        )
        if not row:
            raise RelationshipRepositoryError(
                "Failed to create relationship edge", operation="create_edge", recoverable=False
            )

        logger.info(
            "Relationship edge created",
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=RelationshipStatus(status).value,
        )
        return row_to_relationship(row)

    async def update_edge_status(self, edge_id: str, status: RelationshipStatus) -> None:
        query = """
            UPDATE matches
            SET status = %s,
                responded_at = NOW()
            WHERE id::text = %s
        """
        updated = await execute_query(self.pool, query, (RelationshipStatus(status).value, edge_id))
        if updated == 0:
            raise RelationshipRepositoryError(
                f"Relationship {edge_id} not found",
                operation="update_edge_status",
                recoverable=False,
            )

        logger.info("Relationship edge updated", edge_id=edge_id, status=RelationshipStatus(status).value)
