"""Versioned output column configuration store."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.calculators.columns import ColumnConfig, build_config
from payroll_batch.exceptions import NotFoundError
from payroll_batch.models import PayrollConfiguration

logger = logging.getLogger(__name__)


class ConfigService:
    """Saves and loads immutable output column configurations.

    Saving never edits a stored version; it appends the next version number.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save_columns(
        self,
        payload: list[dict[str, Any]],
        actor_id: UUID | None = None,
    ) -> ColumnConfig:
        """Validate and store a new configuration version.

        Raises ColumnConfigError listing every problem when invalid.
        """
        next_version = (await self._latest_version() or 0) + 1
        config = build_config(payload, version=next_version)

        self.session.add(
            PayrollConfiguration(
                version=next_version,
                columns_json=config.to_payload(),
                created_by=actor_id,
            )
        )
        await self.session.flush()
        logger.info("Saved output column configuration v%d (%d columns)", next_version, len(config.columns))
        return config

    async def get_active(self) -> ColumnConfig:
        """Load the latest configuration, or an empty one if none was saved."""
        version = await self._latest_version()
        if version is None:
            return ColumnConfig(version=0, columns=())
        return await self.get_version(version)

    async def get_version(self, version: int) -> ColumnConfig:
        if version == 0:
            return ColumnConfig(version=0, columns=())
        result = await self.session.execute(
            select(PayrollConfiguration).where(PayrollConfiguration.version == version)
        )
        stored = result.scalar_one_or_none()
        if stored is None:
            raise NotFoundError("Output column configuration", version)
        return build_config(stored.columns_json, version=stored.version)

    async def _latest_version(self) -> int | None:
        result = await self.session.execute(select(func.max(PayrollConfiguration.version)))
        return result.scalar_one_or_none()
