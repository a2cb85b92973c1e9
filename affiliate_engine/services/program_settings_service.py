"""Read and update per-clinic affiliate program settings."""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.models.program_settings import AffiliateProgramSettings
from affiliate_engine.schemas.program_settings import (
    ProgramSettings,
    ProgramSettingsUpdate,
    merge_program_settings,
)

logger = logging.getLogger(__name__)


class ProgramSettingsService:
    """Singleton-per-clinic settings with defaults merged under stored overrides."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self, clinic_id: uuid.UUID) -> Optional[AffiliateProgramSettings]:
        result = await self.db.execute(
            select(AffiliateProgramSettings).where(AffiliateProgramSettings.clinic_id == clinic_id)
        )
        return result.scalar_one_or_none()

    async def get_settings(self, clinic_id: uuid.UUID) -> ProgramSettings:
        row = await self._get_row(clinic_id)
        return merge_program_settings(row.overrides if row else None)

    async def update_settings(
        self,
        clinic_id: uuid.UUID,
        update: ProgramSettingsUpdate,
        updated_by: Optional[uuid.UUID] = None,
    ) -> ProgramSettings:
        """
        Apply a partial update.

        The merged result is validated as a whole before anything is
        stored; only explicitly set keys are persisted as overrides.
        """
        row = await self._get_row(clinic_id)
        overrides = dict(row.overrides or {}) if row else {}
        overrides.update(update.model_dump(exclude_unset=True, mode="json"))

        effective = merge_program_settings(overrides)

        if row is None:
            row = AffiliateProgramSettings(clinic_id=clinic_id, overrides=overrides, updated_by=updated_by)
            self.db.add(row)
        else:
            row.overrides = overrides
            row.updated_by = updated_by
        await self.db.flush()

        logger.info(f"Affiliate program settings updated for clinic {clinic_id}: {sorted(update.model_fields_set)}")
        return effective
