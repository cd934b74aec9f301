"""
Deployment record storage.
"""
import os
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from .config import DeployerSettings
from .control_plane.models import DeploymentRecord  # noqa: F401  (registers the table)

logger = structlog.get_logger(__name__)


def _engine_options(dsn: str) -> Dict[str, Any]:
    # SQLite files get the default pool; sizing only applies to server databases
    if dsn.startswith("sqlite"):
        return {"echo": False}
    return {"echo": False, "pool_pre_ping": True, "pool_size": 5, "max_overflow": 15}


class Database:
    """Async engine plus session factory for the ``deployments`` table."""

    def __init__(self, settings: DeployerSettings) -> None:
        dsn = settings.database_dsn
        self._engine = create_async_engine(dsn, **_engine_options(dsn))
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False, class_=AsyncSession)
        self.backend = dsn.split(":", 1)[0]

    def session(self) -> AsyncSession:
        return self._session_factory()

    async def init_models(self) -> None:
        """Create tables unless SKIP_INIT_MODELS=true (schema owned by migrations)."""
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("init_models_skipped", backend=self.backend)
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("deployments_table_ready", backend=self.backend)

    async def dispose(self) -> None:
        await self._engine.dispose()
        logger.info("database_disposed", backend=self.backend)
