from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from core.errors import ValidationError

QUANTUM = Decimal("0.001")

_ALIASES = {
    "milliliter": "ml", "milliliters": "ml", "millilitre": "ml", "millilitres": "ml",
    "centiliter": "cl", "centiliters": "cl",
    "liter": "l", "liters": "l", "litre": "l", "litres": "l",
    "gram": "g", "grams": "g", "gr": "g",
    "kilogram": "kg", "kilograms": "kg", "kilo": "kg", "kilos": "kg",
    "milligram": "mg", "milligrams": "mg",
    "pound": "lb", "pounds": "lb", "lbs": "lb",
    "cups": "cup", "pumps": "pump", "shots": "shot",
    "pc": "pcs", "piece": "pcs", "pieces": "pcs", "unit": "pcs", "units": "pcs",
}

# Base unit per family: ml for volume, g for weight, pcs for count.
_VOLUME = {
    "ml": Decimal("1"),
    "cl": Decimal("10"),
    "l": Decimal("1000"),
    "oz": Decimal("29.5735"),  # US fluid ounce
    "cup": Decimal("240"),
    "pump": Decimal("15"),
    "shot": Decimal("25"),
}
_WEIGHT = {
    "mg": Decimal("0.001"),
    "g": Decimal("1"),
    "kg": Decimal("1000"),
    "lb": Decimal("453.592"),
    "oz_wt": Decimal("28.3495"),
}
_COUNT = {
    "pcs": Decimal("1"),
}
_FAMILIES = (_VOLUME, _WEIGHT, _COUNT)


def normalize_unit(unit: Optional[str]) -> str:
    u = (unit or "").strip().lower()
    return _ALIASES.get(u, u)


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(QUANTUM, rounding=ROUND_HALF_UP)


def convert(amount: Decimal, from_unit: Optional[str], to_unit: Optional[str]) -> Decimal:
    """Convert `amount` between units of the same family.

    Raises ValidationError when either unit is unknown or the units belong to
    different families (ml -> g has no meaning without a density).
    """
    src = normalize_unit(from_unit)
    dst = normalize_unit(to_unit)
    amount = Decimal(amount)
    if src == dst:
        return amount
    for family in _FAMILIES:
        if src in family and dst in family:
            return amount * family[src] / family[dst]
    raise ValidationError(f"Cannot convert from '{from_unit}' to '{to_unit}'")
