"""Bill arithmetic and the predefined menu catalog."""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from bill_archive import Breakdown

ZERO = Decimal("0")
HUNDRED = Decimal("100")

DISCOUNT_TYPES = ("percentage", "fixed")


def safe_decimal(value: Any) -> Decimal:
    """Numeric input as Decimal; blanks, junk and non-finite values become 0."""
    if isinstance(value, bool) or value is None:
        return ZERO
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return ZERO
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    return result if result.is_finite() else ZERO


def clamp_non_negative(value: Decimal) -> Decimal:
    return max(ZERO, value)


def calculate_line_total(quantity: Any, unit_price: Any) -> Decimal:
    return clamp_non_negative(safe_decimal(quantity)) * clamp_non_negative(safe_decimal(unit_price))


def calculate_subtotal(line_items: Iterable[Any]) -> Decimal:
    return sum((calculate_line_total(item.quantity, item.unit_price) for item in line_items), ZERO)


def calculate_breakdown(line_items, tax_rate: Any, discount_type: str, discount_value: Any) -> Breakdown:
    """Subtotal, tax, discount and final total for a set of line items.

    A fixed discount never exceeds the subtotal and the final total never
    drops below zero.
    """
    if discount_type not in DISCOUNT_TYPES:
        raise ValueError(f"Unknown discount type: {discount_type}")
    subtotal = calculate_subtotal(line_items)
    rate = clamp_non_negative(safe_decimal(tax_rate))
    value = clamp_non_negative(safe_decimal(discount_value))

    tax_amount = subtotal * rate / HUNDRED
    if discount_type == "percentage":
        discount_amount = subtotal * value / HUNDRED
    else:
        discount_amount = min(value, subtotal)

    final_total = max(ZERO, subtotal + tax_amount - discount_amount)
    return Breakdown(subtotal, tax_amount, discount_amount, final_total)


# ---------- CATALOG ----------
@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    unit_price: Decimal
    category: Optional[str] = None
    out_of_stock: bool = False

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "unitPrice": str(self.unit_price),
            "category": self.category,
            "outOfStock": self.out_of_stock,
        }


def _item(item_id: str, name: str, price: int, category: str) -> CatalogItem:
    return CatalogItem(item_id, name, Decimal(price), category)


PREDEFINED_CATALOG: List[CatalogItem] = [
    _item("idli", "Idli (2 pcs)", 40, "South Indian"),
    _item("dosa-plain", "Plain Dosa", 50, "South Indian"),
    _item("dosa-masala", "Masala Dosa", 70, "South Indian"),
    _item("vada", "Medu Vada (2 pcs)", 45, "South Indian"),
    _item("uttapam", "Uttapam", 65, "South Indian"),
    _item("chapati", "Chapati (2 pcs)", 30, "North Indian"),
    _item("naan", "Butter Naan", 40, "North Indian"),
    _item("paratha", "Aloo Paratha", 60, "North Indian"),
    _item("kulcha", "Kulcha", 50, "North Indian"),
    _item("rice-plain", "Plain Rice", 50, "Rice & Biryani"),
    _item("biryani-veg", "Veg Biryani", 150, "Rice & Biryani"),
    _item("biryani-chicken", "Chicken Biryani", 200, "Rice & Biryani"),
    _item("biryani-mutton", "Mutton Biryani", 250, "Rice & Biryani"),
    _item("pulao", "Veg Pulao", 120, "Rice & Biryani"),
    _item("dal-tadka", "Dal Tadka", 100, "Curries"),
    _item("dal-makhani", "Dal Makhani", 130, "Curries"),
    _item("paneer-butter-masala", "Paneer Butter Masala", 180, "Curries"),
    _item("palak-paneer", "Palak Paneer", 170, "Curries"),
    _item("chicken-curry", "Chicken Curry", 200, "Curries"),
    _item("samosa", "Samosa (2 pcs)", 30, "Snacks"),
    _item("pakora", "Pakora (6 pcs)", 50, "Snacks"),
    _item("pav-bhaji", "Pav Bhaji", 80, "Snacks"),
    _item("chaat", "Chaat", 60, "Snacks"),
    _item("chai", "Masala Chai", 20, "Beverages"),
    _item("lassi", "Lassi", 40, "Beverages"),
    _item("coffee", "Filter Coffee", 30, "Beverages"),
    _item("gulab-jamun", "Gulab Jamun (2 pcs)", 50, "Desserts"),
    _item("rasgulla", "Rasgulla (2 pcs)", 50, "Desserts"),
    _item("kheer", "Kheer", 60, "Desserts"),
]


def normalize_label(label: str) -> str:
    return (label or "").strip().lower()


def find_matching_line_item(catalog_name: str, line_items: Iterable[Any]):
    """First line item whose label matches ``catalog_name`` (trimmed, case-insensitive)."""
    wanted = normalize_label(catalog_name)
    if not wanted:
        return None
    for item in line_items:
        if item.label.strip() and normalize_label(item.label) == wanted:
            return item
    return None


def added_count_for_catalog_item(catalog_name: str, line_items: Iterable[Any]) -> Decimal:
    wanted = normalize_label(catalog_name)
    total = ZERO
    for item in line_items:
        if not item.label.strip() or normalize_label(item.label) != wanted:
            continue
        qty = safe_decimal(item.quantity)
        if qty > 0:
            total += qty
    return total
