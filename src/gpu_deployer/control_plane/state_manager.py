"""
State Manager

Persists deployment session state so pending teardowns survive restarts.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .models import DeploymentRecord, DeploymentStatus

logger = logging.getLogger(__name__)


class StateManager:
    """
    Records lifecycle transitions of deployment sessions.

    Persistence errors are logged and reported through return values; they
    never abort a running deployment.
    """

    def __init__(self, db):
        """
        Args:
            db: Database instance (provides async sessions)
        """
        self.db = db

    async def create_session(self, record: DeploymentRecord) -> bool:
        try:
            async with self.db.session() as session:
                session.add(record)
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error recording deployment {record.id} (dseq {record.dseq}): {e}")
            return False

    async def get(self, session_id: str) -> Optional[DeploymentRecord]:
        try:
            async with self.db.session() as session:
                return await session.get(DeploymentRecord, session_id)
        except SQLAlchemyError as e:
            logger.error(f"Error loading deployment {session_id}: {e}")
            return None

    async def update_status(
        self,
        session_id: str,
        status: DeploymentStatus,
        error: Optional[str] = None,
        **fields,
    ) -> bool:
        """
        Move a session to ``status``.

        Args:
            session_id: The session ID
            status: New status
            error: Optional error message
            **fields: Additional columns to set (uri, close_at, closed_at, ...)
        """
        try:
            async with self.db.session() as session:
                record = await session.get(DeploymentRecord, session_id)
                if not record:
                    logger.error(f"Deployment {session_id} not found for status update")
                    return False

                record.status = status
                if error is not None:
                    record.error = error
                for name, value in fields.items():
                    setattr(record, name, value)

                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating deployment {session_id} to {status.value}: {e}")
            return False

        logger.info(f"Deployment {session_id} -> {status.value}")
        return True

    async def pending_teardowns(self) -> List[DeploymentRecord]:
        """Active deployments whose teardown has not run yet."""
        try:
            async with self.db.session() as session:
                statement = select(DeploymentRecord).where(
                    DeploymentRecord.status == DeploymentStatus.ACTIVE,
                    DeploymentRecord.close_at.is_not(None),
                ).order_by(DeploymentRecord.close_at)
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error loading pending teardowns: {e}")
            return []

    async def count_by_status(self) -> Dict[str, int]:
        try:
            async with self.db.session() as session:
                statement = select(DeploymentRecord.status, func.count()).group_by(DeploymentRecord.status)
                result = await session.execute(statement)
                return {
                    (status.value if isinstance(status, DeploymentStatus) else str(status)): count
                    for status, count in result.all()
                }
        except SQLAlchemyError as e:
            logger.error(f"Error counting deployments: {e}")
            return {}
