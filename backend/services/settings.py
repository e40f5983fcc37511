from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.errors import ValidationError
from db.loyalty import LoyaltySetting

LOYALTY_ENABLED = "loyalty_enabled"
POINTS_PER_UNIT = "points_per_unit_currency"
MINIMUM_REDEMPTION = "minimum_points_redemption"


@dataclass(frozen=True)
class LoyaltySettings:
    enabled: bool
    points_per_unit: Decimal
    minimum_redemption: int

    def to_dict(self) -> dict:
        return {
            LOYALTY_ENABLED: self.enabled,
            POINTS_PER_UNIT: float(self.points_per_unit),
            MINIMUM_REDEMPTION: self.minimum_redemption,
        }


class SettingsProvider:
    """Loyalty settings: rows in loyalty_settings override the environment defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _raw(self) -> dict:
        res = await self.db.execute(select(LoyaltySetting))
        return {s.setting_key: s.setting_value for s in res.scalars().all()}

    async def loyalty(self) -> LoyaltySettings:
        raw = await self._raw()
        enabled = settings.loyalty_enabled
        if LOYALTY_ENABLED in raw:
            enabled = raw[LOYALTY_ENABLED].strip().lower() == "true"
        rate = settings.loyalty_points_per_unit
        if POINTS_PER_UNIT in raw:
            try:
                rate = Decimal(raw[POINTS_PER_UNIT])
            except InvalidOperation:
                raise ValidationError(f"Bad {POINTS_PER_UNIT} setting: {raw[POINTS_PER_UNIT]!r}")
        minimum = settings.loyalty_minimum_redemption
        if MINIMUM_REDEMPTION in raw:
            minimum = int(raw[MINIMUM_REDEMPTION])
        return LoyaltySettings(enabled=enabled, points_per_unit=rate, minimum_redemption=minimum)

    async def update(
        self,
        *,
        enabled: Optional[bool] = None,
        points_per_unit: Optional[Decimal] = None,
        minimum_redemption: Optional[int] = None,
    ) -> LoyaltySettings:
        values = {}
        if enabled is not None:
            values[LOYALTY_ENABLED] = "true" if enabled else "false"
        if points_per_unit is not None:
            if Decimal(str(points_per_unit)) < 0:
                raise ValidationError("Points rate cannot be negative")
            values[POINTS_PER_UNIT] = str(Decimal(str(points_per_unit)))
        if minimum_redemption is not None:
            if minimum_redemption < 0:
                raise ValidationError("Minimum redemption cannot be negative")
            values[MINIMUM_REDEMPTION] = str(int(minimum_redemption))

        for key, value in values.items():
            row = await self.db.get(LoyaltySetting, key)
            if row is None:
                self.db.add(LoyaltySetting(setting_key=key, setting_value=value))
            else:
                row.setting_value = value
        await self.db.flush()
        return await self.loyalty()
