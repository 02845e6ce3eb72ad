"""Bookkeeping tables: suppliers, food inventory, stock transactions, recipes, council, complaints."""

import sqlite3
from datetime import date
from typing import Any, Iterable, Literal

from database.db import _row, _rows, connect_db

InventoryStatus = Literal["active", "inactive", "expired"]
ComplaintStatus = Literal["pending", "in_progress", "resolved"]

COMPLAINT_STATUSES: tuple[ComplaintStatus, ...] = ("pending", "in_progress", "resolved")

SUPPLIER_COLUMNS = ("name", "contact_person", "phone", "email", "address", "supply_category")
INVENTORY_COLUMNS = (
    "food_item",
    "category",
    "unit",
    "current_stock",
    "consumption_per_student",
    "supplier_id",
    "unit_price",
    "batch_number",
    "min_stock_level",
    "storage_condition",
)


class SupplierInUseError(Exception):
    """Raised when deleting a supplier that inventory items still reference."""


# -----------------------------
# Suppliers
# -----------------------------
def add_supplier(**fields: Any) -> int:
    values = {col: fields.get(col) for col in SUPPLIER_COLUMNS}
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            INSERT INTO suppliers ({", ".join(SUPPLIER_COLUMNS)})
            VALUES ({", ".join("?" for _ in SUPPLIER_COLUMNS)})
            """,
            list(values.values()),
        )
        supplier_id = int(cur.lastrowid)
        conn.commit()
        return supplier_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_supplier(supplier_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM suppliers WHERE id = ?", (supplier_id,))
    row = _row(cur)
    conn.close()
    if row:
        row["is_active"] = bool(row["is_active"])
    return row


def list_suppliers(*, active_only: bool = False) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    query = "SELECT * FROM suppliers"
    if active_only:
        query += " WHERE is_active = 1"
    cur.execute(query + " ORDER BY name")
    rows = _rows(cur)
    conn.close()
    for row in rows:
        row["is_active"] = bool(row["is_active"])
    return rows


def update_supplier(supplier_id: int, updates: dict[str, Any]) -> bool:
    clean = {k: v for k, v in updates.items() if k in SUPPLIER_COLUMNS}
    if not clean:
        return get_supplier(supplier_id) is not None
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            UPDATE suppliers
            SET {", ".join(f"{col} = ?" for col in clean)},
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            [*clean.values(), supplier_id],
        )
        changed = cur.rowcount > 0
        conn.commit()
        return changed
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_supplier_active(supplier_id: int, is_active: bool) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE suppliers
        SET is_active = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (1 if is_active else 0, supplier_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def delete_supplier(supplier_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("SELECT COUNT(1) FROM food_inventory WHERE supplier_id = ?", (supplier_id,))
        if int(cur.fetchone()[0] or 0) > 0:
            raise SupplierInUseError("Supplier is referenced by inventory items.")
        cur.execute("DELETE FROM suppliers WHERE id = ?", (supplier_id,))
        deleted = cur.rowcount > 0
        conn.commit()
        return deleted
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Food inventory + stock transactions
# -----------------------------
def _insert_transaction(
    cur: sqlite3.Cursor,
    food_item_id: int,
    transaction_type: Literal["in", "out"],
    quantity: float,
    unit_price: float | None,
    notes: str,
) -> None:
    total_value = round(quantity * unit_price, 2) if unit_price is not None else None
    cur.execute(
        """
        INSERT INTO stock_transactions (food_item_id, transaction_type, quantity, unit_price, total_value, notes)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (food_item_id, transaction_type, quantity, unit_price, total_value, notes),
    )


def add_inventory_item(**fields: Any) -> int:
    """Register a food item; opening stock is booked as an `in` transaction."""
    values = {col: fields.get(col) for col in INVENTORY_COLUMNS}
    values["category"] = values["category"] or "other"
    values["unit"] = values["unit"] or "kg"
    values["current_stock"] = float(values["current_stock"] or 0)
    values["consumption_per_student"] = float(values["consumption_per_student"] or 0)
    values["min_stock_level"] = float(values["min_stock_level"] or 0)

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            INSERT INTO food_inventory ({", ".join(INVENTORY_COLUMNS)})
            VALUES ({", ".join("?" for _ in INVENTORY_COLUMNS)})
            """,
            list(values.values()),
        )
        item_id = int(cur.lastrowid)
        if values["current_stock"] > 0:
            _insert_transaction(
                cur,
                item_id,
                "in",
                values["current_stock"],
                values["unit_price"],
                "Initial stock registration",
            )
        conn.commit()
        return item_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_inventory_item(item_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT fi.*, s.name AS supplier_name
        FROM food_inventory fi
        LEFT JOIN suppliers s ON s.id = fi.supplier_id
        WHERE fi.id = ?
        """,
        (item_id,),
    )
    row = _row(cur)
    conn.close()
    return row


def list_inventory(
    *,
    category: str | None = None,
    status: InventoryStatus | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if category:
        where.append("fi.category = ?")
        params.append(category)
    if status:
        where.append("fi.status = ?")
        params.append(status)
    if search:
        where.append("LOWER(fi.food_item) LIKE ?")
        params.append(f"%{search.strip().lower()}%")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT fi.*, s.name AS supplier_name
        FROM food_inventory fi
        LEFT JOIN suppliers s ON s.id = fi.supplier_id
        WHERE {" AND ".join(where)}
        ORDER BY fi.food_item
        """,
        params,
    )
    rows = _rows(cur)
    conn.close()
    return rows


def list_low_stock(default_level: float = 0.0) -> list[dict[str, Any]]:
    """Active items at or below their minimum level (or `default_level` when unset)."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT fi.*, s.name AS supplier_name
        FROM food_inventory fi
        LEFT JOIN suppliers s ON s.id = fi.supplier_id
        WHERE fi.status = 'active'
          AND fi.current_stock <= CASE WHEN fi.min_stock_level > 0 THEN fi.min_stock_level ELSE ? END
        ORDER BY fi.current_stock ASC, fi.food_item
        """,
        (default_level,),
    )
    rows = _rows(cur)
    conn.close()
    return rows


def update_inventory_item(item_id: int, updates: dict[str, Any]) -> bool:
    """
    Update an inventory item. A change to `current_stock` is booked as an
    `in`/`out` adjustment transaction for the difference.
    """
    clean = {k: v for k, v in updates.items() if k in INVENTORY_COLUMNS}
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("SELECT current_stock, unit_price FROM food_inventory WHERE id = ?", (item_id,))
        existing = cur.fetchone()
        if existing is None:
            return False
        if not clean:
            return True

        cur.execute(
            f"""
            UPDATE food_inventory
            SET {", ".join(f"{col} = ?" for col in clean)},
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            [*clean.values(), item_id],
        )

        if "current_stock" in clean:
            diff = round(float(clean["current_stock"]) - float(existing[0] or 0), 6)
            if diff != 0:
                unit_price = clean.get("unit_price", existing[1])
                _insert_transaction(
                    cur,
                    item_id,
                    "in" if diff > 0 else "out",
                    abs(diff),
                    unit_price,
                    "Stock adjustment",
                )
        conn.commit()
        return True
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_inventory_status(item_id: int, status: InventoryStatus) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE food_inventory
        SET status = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (status, item_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def list_stock_transactions(item_id: int, limit: int = 100) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, food_item_id, transaction_type, quantity, unit_price, total_value, notes, created_at
        FROM stock_transactions
        WHERE food_item_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (item_id, max(1, min(int(limit), 500))),
    )
    rows = _rows(cur)
    conn.close()
    return rows


# -----------------------------
# Recipes
# -----------------------------
def add_recipe(
    *,
    dish_name: str,
    ingredients: Iterable[dict[str, Any]],
    description: str | None = None,
    category: str = "main",
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO recipes (dish_name, description, category)
            VALUES (?, ?, ?)
            """,
            (dish_name, description, category),
        )
        recipe_id = int(cur.lastrowid)
        cur.executemany(
            """
            INSERT INTO recipe_ingredients (recipe_id, food_item_id, quantity_required, unit)
            VALUES (?, ?, ?, ?)
            """,
            [
                (recipe_id, int(line["food_item_id"]), float(line["quantity_required"]), line.get("unit") or "kg")
                for line in ingredients
            ],
        )
        conn.commit()
        return recipe_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_recipes() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id, dish_name, description, category, created_at FROM recipes ORDER BY dish_name")
    recipes = _rows(cur)
    cur.execute(
        """
        SELECT ri.recipe_id, ri.food_item_id, fi.food_item, ri.quantity_required, ri.unit
        FROM recipe_ingredients ri
        LEFT JOIN food_inventory fi ON fi.id = ri.food_item_id
        ORDER BY ri.id
        """
    )
    lines = _rows(cur)
    conn.close()

    by_recipe: dict[int, list[dict[str, Any]]] = {}
    for line in lines:
        by_recipe.setdefault(int(line.pop("recipe_id")), []).append(line)
    for recipe in recipes:
        recipe["ingredients"] = by_recipe.get(int(recipe["id"]), [])
    return recipes


# -----------------------------
# Council members
# -----------------------------
def add_council_member(
    *,
    student_id: str,
    working_type: str,
    position: str,
    start_date: str,
    academic_year: str | None = None,
    responsibilities: str | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO council_members (student_id, working_type, position, academic_year, responsibilities, start_date)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (student_id, working_type, position, academic_year, responsibilities, start_date),
        )
        member_id = int(cur.lastrowid)
        conn.commit()
        return member_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_council_members(*, active_only: bool = True) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    query = """
        SELECT
            cm.id,
            cm.student_id,
            s.first_name,
            s.last_name,
            s.department,
            cm.working_type,
            cm.position,
            cm.academic_year,
            cm.responsibilities,
            cm.start_date,
            cm.end_date,
            cm.is_active
        FROM council_members cm
        LEFT JOIN students s ON s.student_id = cm.student_id
    """
    if active_only:
        query += " WHERE cm.is_active = 1"
    cur.execute(query + " ORDER BY cm.working_type, cm.position")
    rows = _rows(cur)
    conn.close()
    for row in rows:
        row["is_active"] = bool(row["is_active"])
    return rows


def deactivate_council_member(member_id: int, today: date | None = None) -> bool:
    end_date = (today or date.today()).isoformat()
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE council_members
        SET is_active = 0,
            end_date = ?
        WHERE id = ? AND is_active = 1
        """,
        (end_date, member_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Complaints
# -----------------------------
def add_complaint(student_id: str, message: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO complaints (student_id, message)
            VALUES (?, ?)
            """,
            (student_id, message),
        )
        complaint_id = int(cur.lastrowid)
        conn.commit()
        return complaint_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_complaints(*, status: ComplaintStatus | None = None) -> list[dict[str, Any]]:
    """Complaints newest first, with the student's name and department."""
    conn = connect_db()
    cur = conn.cursor()
    query = """
        SELECT
            c.id,
            c.student_id,
            s.first_name,
            s.last_name,
            s.department,
            c.message,
            c.status,
            c.response,
            c.created_at,
            c.resolved_at
        FROM complaints c
        LEFT JOIN students s ON s.student_id = c.student_id
    """
    params: list[Any] = []
    if status:
        query += " WHERE c.status = ?"
        params.append(status)
    cur.execute(query + " ORDER BY c.created_at DESC, c.id DESC", params)
    rows = _rows(cur)
    conn.close()
    return rows


def get_complaint(complaint_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, student_id, message, status, response, created_at, resolved_at
        FROM complaints
        WHERE id = ?
        """,
        (complaint_id,),
    )
    row = _row(cur)
    conn.close()
    return row


def respond_to_complaint(complaint_id: int, response: str, resolved_at: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE complaints
        SET response = ?,
            status = 'resolved',
            resolved_at = ?
        WHERE id = ?
        """,
        (response, resolved_at, complaint_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def set_complaint_status(complaint_id: int, status: ComplaintStatus) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("UPDATE complaints SET status = ? WHERE id = ?", (status, complaint_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed
