"""
Inventory ledger.

Models:
- InventoryMovement (append-only record of every change to Ingredient.quantity)

Current stock lives on db.ingredient.Ingredient.quantity; replaying the movements
of an ingredient from its first row must reproduce that value.
"""
