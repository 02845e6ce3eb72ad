import sqlite3
from typing import cast

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from backend.config import LOW_STOCK_DEFAULT_LEVEL
from database.store import (
    InventoryStatus,
    SupplierInUseError,
    add_inventory_item,
    add_recipe,
    add_supplier,
    delete_supplier,
    get_inventory_item,
    get_supplier,
    list_inventory,
    list_low_stock,
    list_recipes,
    list_stock_transactions,
    list_suppliers,
    set_inventory_status,
    set_supplier_active,
    update_inventory_item,
    update_supplier,
)

router = APIRouter()

INVENTORY_STATUSES = ("active", "inactive", "expired")


class SupplierIn(BaseModel):
    name: str
    contact_person: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    supply_category: str | None = None


class SupplierUpdate(BaseModel):
    name: str | None = None
    contact_person: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    supply_category: str | None = None


class ActiveFlag(BaseModel):
    is_active: bool


class InventoryIn(BaseModel):
    food_item: str
    category: str = "other"
    unit: str = "kg"
    current_stock: float = 0
    consumption_per_student: float = 0
    supplier_id: int | None = None
    unit_price: float | None = None
    batch_number: str | None = None
    min_stock_level: float = 0
    storage_condition: str | None = None


class InventoryUpdate(BaseModel):
    food_item: str | None = None
    category: str | None = None
    unit: str | None = None
    current_stock: float | None = None
    consumption_per_student: float | None = None
    supplier_id: int | None = None
    unit_price: float | None = None
    batch_number: str | None = None
    min_stock_level: float | None = None
    storage_condition: str | None = None


class InventoryStatusChange(BaseModel):
    status: str


class IngredientLine(BaseModel):
    food_item_id: int
    quantity_required: float
    unit: str = "kg"


class RecipeIn(BaseModel):
    dish_name: str
    description: str | None = None
    category: str = "main"
    ingredients: list[IngredientLine] = []


# -----------------------------
# Suppliers
# -----------------------------
@router.get("/suppliers")
def suppliers(active_only: bool = False):
    return list_suppliers(active_only=active_only)


@router.post("/suppliers")
def create_supplier(payload: SupplierIn):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Supplier name is required.")
    try:
        supplier_id = add_supplier(**{**payload.model_dump(), "name": name})
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Supplier already exists.")
    return get_supplier(supplier_id)


@router.put("/suppliers/{supplier_id}")
def edit_supplier(supplier_id: int, payload: SupplierUpdate):
    updates = payload.model_dump(exclude_unset=True)
    if "name" in updates and not (updates["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Supplier name is required.")
    try:
        found = update_supplier(supplier_id, updates)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Supplier already exists.")
    if not found:
        raise HTTPException(status_code=404, detail="Supplier not found.")
    return get_supplier(supplier_id)


@router.post("/suppliers/{supplier_id}/status")
def change_supplier_status(supplier_id: int, payload: ActiveFlag):
    if not set_supplier_active(supplier_id, payload.is_active):
        raise HTTPException(status_code=404, detail="Supplier not found.")
    return {"ok": True, "id": supplier_id, "is_active": payload.is_active}


@router.delete("/suppliers/{supplier_id}")
def remove_supplier(supplier_id: int):
    try:
        deleted = delete_supplier(supplier_id)
    except SupplierInUseError:
        raise HTTPException(status_code=409, detail="Supplier is used by inventory items; deactivate it instead.")
    if not deleted:
        raise HTTPException(status_code=404, detail="Supplier not found.")
    return {"ok": True}


# -----------------------------
# Inventory
# -----------------------------
def _check_stock_fields(fields: dict) -> None:
    for name in ("current_stock", "consumption_per_student", "min_stock_level", "unit_price"):
        value = fields.get(name)
        if value is not None and value < 0:
            raise HTTPException(status_code=400, detail=f"{name.replace('_', ' ').capitalize()} cannot be negative.")
    supplier_id = fields.get("supplier_id")
    if supplier_id is not None and not get_supplier(supplier_id):
        raise HTTPException(status_code=404, detail="Supplier not found.")


@router.get("/inventory")
def inventory(category: str | None = None, status: str | None = None, search: str | None = None):
    if status and status not in INVENTORY_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid inventory status.")
    return list_inventory(category=category, status=cast(InventoryStatus | None, status), search=search)


@router.get("/inventory/low-stock")
def low_stock():
    return list_low_stock(LOW_STOCK_DEFAULT_LEVEL)


@router.post("/inventory")
def register_stock(payload: InventoryIn):
    fields = payload.model_dump()
    fields["food_item"] = fields["food_item"].strip()
    if not fields["food_item"]:
        raise HTTPException(status_code=400, detail="Food item name is required.")
    _check_stock_fields(fields)
    item_id = add_inventory_item(**fields)
    return get_inventory_item(item_id)


@router.put("/inventory/{item_id}")
def edit_inventory_item(item_id: int, payload: InventoryUpdate):
    updates = payload.model_dump(exclude_unset=True)
    if "food_item" in updates and not (updates["food_item"] or "").strip():
        raise HTTPException(status_code=400, detail="Food item name is required.")
    _check_stock_fields(updates)
    if not update_inventory_item(item_id, updates):
        raise HTTPException(status_code=404, detail="Inventory item not found.")
    return get_inventory_item(item_id)


@router.post("/inventory/{item_id}/status")
def change_inventory_status(item_id: int, payload: InventoryStatusChange):
    status = payload.status.strip().lower()
    if status not in INVENTORY_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid inventory status.")
    if not set_inventory_status(item_id, cast(InventoryStatus, status)):
        raise HTTPException(status_code=404, detail="Inventory item not found.")
    return {"ok": True, "id": item_id, "status": status}


@router.get("/inventory/{item_id}/transactions")
def inventory_transactions(item_id: int, limit: int = Query(default=100, ge=1, le=500)):
    if not get_inventory_item(item_id):
        raise HTTPException(status_code=404, detail="Inventory item not found.")
    return list_stock_transactions(item_id, limit)


# -----------------------------
# Recipes
# -----------------------------
@router.get("/recipes")
def recipes():
    return list_recipes()


@router.post("/recipes")
def create_recipe(payload: RecipeIn):
    dish_name = payload.dish_name.strip()
    if not dish_name:
        raise HTTPException(status_code=400, detail="Dish name is required.")
    if not payload.ingredients:
        raise HTTPException(status_code=400, detail="Add at least one ingredient.")
    for line in payload.ingredients:
        if line.quantity_required <= 0:
            raise HTTPException(status_code=400, detail="Ingredient quantity must be greater than zero.")
        if not get_inventory_item(line.food_item_id):
            raise HTTPException(status_code=404, detail=f"Inventory item {line.food_item_id} not found.")

    try:
        recipe_id = add_recipe(
            dish_name=dish_name,
            description=payload.description,
            category=payload.category,
            ingredients=[line.model_dump() for line in payload.ingredients],
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Recipe already exists.")
    return next(r for r in list_recipes() if r["id"] == recipe_id)
