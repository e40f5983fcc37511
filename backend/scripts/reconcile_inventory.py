import asyncio
import sys
from pathlib import Path

"""
Replay the inventory movement ledger and report drift from current stock.

Exits with status 1 when any ingredient is inconsistent, so it can run from cron
or CI.

- backend/: `python scripts/reconcile_inventory.py`
- repo root: `python backend/scripts/reconcile_inventory.py`
"""

# Allow running from repo root by ensuring `backend/` is on sys.path
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from db.database import async_session_maker
from services.ledger import MovementLedger


async def main() -> int:
    async with async_session_maker() as session:
        result = await MovementLedger(session).reconcile()

    print(f"Checked {result.ingredients_checked} ingredients, {result.movements_checked} movements")
    if result.is_consistent:
        print("Ledger is consistent")
        return 0

    for issue in result.issues:
        where = f" (movement {issue.movement_id})" if issue.movement_id is not None else ""
        print(f"- {issue.ingredient_name}{where}: {issue.problem}, expected {issue.expected}, found {issue.actual}")
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
