"""Stock lots and their aggregation.

A logical item is the group of lots sharing ``(name, color)``. On-hand
quantity and value are sums over the group. Purchases and manual additions
insert positive lots; corrections insert signed adjustment lots. Sales
consume the oldest lots first, deleting a lot that reaches zero and
decrementing it otherwise. Nothing prevents an item from going negative:
unmet demand is recorded as a negative lot.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from . import core_logic, log
from .constants import Collection
from .core_logic import ZERO, RuntimeContext
from .errors import NotFoundError, ValidationError
from .record_store import Record


STOCK = Collection.STOCK.value
ADJUSTMENT_NOTE = "Stock adjustment"
SHORTFALL_NOTE = "Stock shortfall"


@dataclass(frozen=True)
class StockLotCommand:
    """User intent for adding a lot by hand."""

    name: str
    quantity: int
    price: Decimal
    color: str = ""
    lot_date: Optional[date] = None
    note: Optional[str] = None


def _group_key(record: Dict[str, Any]) -> Tuple[str, str]:
    return (str(record.get("name") or ""), str(record.get("color") or ""))


def _lock_key(name: str, color: str) -> str:
    return f"stock:{name}:{color}"


def _fifo_order(record: Dict[str, Any]) -> Tuple[str, str]:
    return (str(record.get("date") or ""), str(record.get("createdAt") or ""))


def insert_lot(
    context: RuntimeContext,
    *,
    name: str,
    color: str,
    quantity: int,
    price: Any,
    lot_date: Optional[date] = None,
    note: Optional[str] = None,
) -> Record:
    """Insert a signed lot without validation; used by the orchestrators."""

    record: Dict[str, Any] = {
        "name": name,
        "color": color or "",
        "quantity": int(quantity),
        "price": core_logic.to_money(price),
        "date": core_logic.resolve_date(lot_date),
        "createdAt": core_logic.timestamp_iso(),
    }
    if note:
        record["note"] = note
    stored = context.store.insert(STOCK, record)
    log.info("Inserted stock lot '%s' for %s/%s (quantity=%s)", stored["_id"], name, color or "-", quantity)
    return stored


def add_stock_lot(context: RuntimeContext, command: StockLotCommand) -> Record:
    """Add a lot by hand.

    Raises:
        ValidationError: If the name is blank or quantity/price are not
            positive.
    """

    name = core_logic.require_text(command.name, "Item name")
    quantity = core_logic.require_positive_quantity(command.quantity)
    price = core_logic.require_positive_money(command.price, "Price")
    return insert_lot(
        context,
        name=name,
        color=(command.color or "").strip(),
        quantity=quantity,
        price=price,
        lot_date=command.lot_date,
        note=command.note,
    )


def list_lots(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, STOCK)


def get_stock_history(context: RuntimeContext, name: str, color: str = "") -> List[Record]:
    """Return every lot of an item, oldest first."""

    lots = [lot for lot in list_lots(context) if _group_key(lot) == (name, color or "")]
    return sorted(lots, key=_fifo_order)


def on_hand(context: RuntimeContext, name: str, color: str = "") -> int:
    return sum(core_logic.to_quantity(lot.get("quantity")) for lot in get_stock_history(context, name, color))


def consume_stock_fifo(context: RuntimeContext, name: str, color: str, quantity: int) -> List[Dict[str, Any]]:
    """Consume ``quantity`` units from the oldest positive lots first.

    A lot that reaches zero is deleted; otherwise its quantity is reduced.
    Demand left after every lot is exhausted is recorded as one negative lot
    priced at zero.

    Args:
        context (RuntimeContext): Active runtime context.
        name (str): Item name.
        color (str): Item color.
        quantity (int): Units to consume; must be positive.

    Returns:
        list[dict[str, Any]]: One ``{"lotId", "taken"}`` entry per lot touched.
    """

    remaining = core_logic.require_positive_quantity(quantity)
    color = color or ""
    touched: List[Dict[str, Any]] = []
    with context.locks.hold(_lock_key(name, color)):
        for lot in get_stock_history(context, name, color):
            if remaining <= 0:
                break
            available = core_logic.to_quantity(lot.get("quantity"))
            if available <= 0:
                continue
            taken = min(available, remaining)
            if available - taken == 0:
                context.store.remove(STOCK, {"_id": lot["_id"]})
            else:
                context.store.update(STOCK, {"_id": lot["_id"]}, {"quantity": available - taken})
            touched.append({"lotId": lot["_id"], "taken": taken})
            remaining -= taken

        if remaining > 0:
            log.warning("Stock for %s/%s short by %d units", name, color or "-", remaining)
            shortfall = insert_lot(
                context, name=name, color=color, quantity=-remaining, price=ZERO, note=SHORTFALL_NOTE
            )
            touched.append({"lotId": shortfall["_id"], "taken": remaining})

    log.info("Consumed %s units of %s/%s across %d lot(s)", quantity, name, color or "-", len(touched))
    return touched


def summarize_stock(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Group lots by ``(name, color)``.

    Returns:
        list[dict[str, Any]]: Rows with ``name``, ``color``,
            ``totalQuantity``, ``totalValue`` and ``averagePrice``, sorted by
            name then color.
    """

    groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for lot in list_lots(context):
        key = _group_key(lot)
        row = groups.setdefault(
            key, {"name": key[0], "color": key[1], "totalQuantity": 0, "totalValue": ZERO}
        )
        quantity = core_logic.to_quantity(lot.get("quantity"))
        row["totalQuantity"] += quantity
        row["totalValue"] += core_logic.to_money(lot.get("price")) * quantity

    rows = []
    for key in sorted(groups):
        row = groups[key]
        row["averagePrice"] = (
            row["totalValue"] / row["totalQuantity"] if row["totalQuantity"] else ZERO
        )
        rows.append(row)
    return rows


def list_low_stock(context: RuntimeContext, threshold: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return summary rows below ``threshold`` (the configured default), lowest first."""

    limit = context.settings.low_stock_threshold if threshold is None else threshold
    low = [row for row in summarize_stock(context) if row["totalQuantity"] < limit]
    return sorted(low, key=lambda row: row["totalQuantity"])


def adjust_stock_group(
    context: RuntimeContext,
    name: str,
    color: str,
    *,
    new_quantity: int,
    new_name: Optional[str] = None,
    new_color: Optional[str] = None,
) -> Dict[str, Any]:
    """Correct an item's on-hand quantity and optionally rename it.

    The difference between ``new_quantity`` and the current total is booked
    as one adjustment lot priced at the group's average price. Every lot of
    the group is then renamed when a new name or color is given.

    Raises:
        NotFoundError: If the item has no lots.
        ValidationError: If ``new_quantity`` is negative.
    """

    color = color or ""
    target_name = core_logic.require_text(new_name, "Item name") if new_name is not None else name
    target_color = (new_color if new_color is not None else color).strip()
    if core_logic.to_quantity(new_quantity) < 0:
        raise ValidationError("Quantity cannot be negative")

    with context.locks.hold(_lock_key(name, color)):
        lots = get_stock_history(context, name, color)
        if not lots:
            log.warning("Stock adjustment failed: no lots for %s/%s", name, color or "-")
            raise NotFoundError(f"Unknown stock item: {name} ({color or '-'})")

        current_total = sum(core_logic.to_quantity(lot.get("quantity")) for lot in lots)
        total_value = sum(
            (core_logic.to_money(lot.get("price")) * core_logic.to_quantity(lot.get("quantity")) for lot in lots),
            ZERO,
        )
        average = total_value / current_total if current_total else core_logic.to_money(lots[-1].get("price"))
        difference = core_logic.to_quantity(new_quantity) - current_total
        if difference:
            insert_lot(
                context,
                name=name,
                color=color,
                quantity=difference,
                price=average,
                note=ADJUSTMENT_NOTE,
            )

        if (target_name, target_color) != (name, color):
            context.store.update(STOCK, {"name": name, "color": color}, {"name": target_name, "color": target_color})
            # lots written before colors were normalised carry no color key
            if not color:
                context.store.update(STOCK, {"name": name, "color": None}, {"name": target_name, "color": target_color})

    log.info(
        "Adjusted stock %s/%s to %s/%s (quantity %s -> %s)",
        name,
        color or "-",
        target_name,
        target_color or "-",
        current_total,
        new_quantity,
    )
    return {"name": target_name, "color": target_color, "totalQuantity": core_logic.to_quantity(new_quantity)}


def delete_stock_group(context: RuntimeContext, name: str, color: str = "") -> int:
    """Delete every lot of an item and return how many were removed."""

    removed = 0
    with context.locks.hold(_lock_key(name, color or "")):
        for lot in get_stock_history(context, name, color):
            removed += context.store.remove(STOCK, {"_id": lot["_id"]})
    log.info("Deleted %d lot(s) of %s/%s", removed, name, color or "-")
    return removed


def update_stock_lot(context: RuntimeContext, lot_id: str, command: StockLotCommand) -> Record:
    """Overwrite one lot's name, color, quantity, price and date.

    Unlike :func:`adjust_stock_group` no adjustment lot is booked; the lot is
    corrected in place. A quantity of zero is allowed and keeps the lot.

    Raises:
        NotFoundError: If the lot does not exist.
        ValidationError: If the name is blank, the quantity negative or the
            price not positive.
    """

    name = core_logic.require_text(command.name, "Item name")
    quantity = core_logic.to_quantity(command.quantity)
    if quantity < 0:
        log.warning("Stock lot update rejected: negative quantity %s", command.quantity)
        raise ValidationError("Quantity cannot be negative")
    price = core_logic.require_positive_money(command.price, "Price")

    current = context.store.get_one(STOCK, {"_id": lot_id})
    if current is None:
        log.warning("Cannot update unknown stock lot '%s'", lot_id)
        raise NotFoundError(f"Unknown stock lot: {lot_id}")

    changes: Dict[str, Any] = {
        "name": name,
        "color": (command.color or "").strip(),
        "quantity": quantity,
        "price": price,
        "date": core_logic.resolve_date(command.lot_date) if command.lot_date else current.get("date"),
        "updatedAt": core_logic.timestamp_iso(),
    }
    with context.locks.hold(_lock_key(*_group_key(current))):
        context.store.update(STOCK, {"_id": lot_id}, changes)
    log.info("Updated stock lot '%s' (%s/%s, quantity=%s)", lot_id, name, changes["color"] or "-", quantity)
    return {**current, **changes}


def delete_stock_lot(context: RuntimeContext, lot_id: str) -> None:
    if not context.store.remove(STOCK, {"_id": lot_id}):
        log.warning("Cannot delete unknown stock lot '%s'", lot_id)
        raise NotFoundError(f"Unknown stock lot: {lot_id}")
    log.info("Deleted stock lot '%s'", lot_id)


def stock_value(context: RuntimeContext) -> Decimal:
    return sum((row["totalValue"] for row in summarize_stock(context)), ZERO)
