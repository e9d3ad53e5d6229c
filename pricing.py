"""
Server-side cart pricing.

Client carts carry an advisory ``finalPrice`` per line; it is never used. Every
price is recomputed from the catalog here, immediately before any call that
moves money.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional

from catalog import choice_label, choice_price
from config import PRICE_EPSILON, TAX_RATE
from errors import ItemNotFound, ItemUnavailable, PriceMismatch
from models import MenuItem

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ValidatedLine:
    menu_item_id: int
    name: str
    unit_price: Decimal
    quantity: int
    customizations: Dict[str, object]
    special_instructions: str
    subtotal: Decimal
    preparation_time: int

    def to_snapshot(self) -> dict:
        return {
            "menuItemId": self.menu_item_id,
            "name": self.name,
            "unitPrice": str(self.unit_price),
            "quantity": self.quantity,
            "customizations": self.customizations,
            "specialInstructions": self.special_instructions,
            "subtotal": str(self.subtotal),
            "prepTime": self.preparation_time,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "ValidatedLine":
        return cls(
            menu_item_id=int(data["menuItemId"]),
            name=data["name"],
            unit_price=Decimal(data["unitPrice"]),
            quantity=int(data["quantity"]),
            customizations=data.get("customizations") or {},
            special_instructions=data.get("specialInstructions") or "",
            subtotal=Decimal(data["subtotal"]),
            preparation_time=int(data.get("prepTime") or 0),
        )


@dataclass
class ValidatedCart:
    lines: List[ValidatedLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")

    @property
    def total_minor_units(self) -> int:
        return int((self.total * 100).to_integral_value(rounding=ROUND_HALF_UP))


def resolve_customizations(item: MenuItem, selections: Dict[str, object]):
    """Match selections against the item's own customization groups.

    Returns ``(price_delta, matched)``. Unknown groups and labels that are not
    choices of the group are ignored; only matched selections are kept.
    """
    delta = Decimal("0")
    matched = {}
    for group in item.customization_options or []:
        name = group.get("name")
        selected = (selections or {}).get(name)
        if not selected:
            continue
        labels = selected if isinstance(selected, list) else [selected]
        choices = {choice_label(c): c for c in group.get("choices", [])}
        kept = []
        for label in labels:
            choice = choices.get(label)
            if choice is None:
                continue
            delta += choice_price(choice)
            kept.append(label)
        if kept:
            matched[name] = kept if isinstance(selected, list) else kept[0]
    return delta, matched


def price_line(item: MenuItem, customizations, quantity, special_instructions="") -> ValidatedLine:
    delta, matched = resolve_customizations(item, customizations)
    unit_price = to_cents(Decimal(item.price) + delta)
    return ValidatedLine(
        menu_item_id=item.id,
        name=item.name,
        unit_price=unit_price,
        quantity=quantity,
        customizations=matched,
        special_instructions=special_instructions or "",
        subtotal=unit_price * quantity,
        preparation_time=item.preparation_time or 0,
    )


def totals_for(lines: List[ValidatedLine]) -> ValidatedCart:
    subtotal = to_cents(sum((line.subtotal for line in lines), Decimal("0")))
    total = to_cents(subtotal * (1 + TAX_RATE))
    return ValidatedCart(lines=lines, subtotal=subtotal, tax=total - subtotal, total=total)


def validate_cart(cart_lines, lookup: Callable[[int], Optional[MenuItem]]) -> ValidatedCart:
    """Price every cart line from the catalog; reject the whole cart on the first bad line."""
    lines = []
    for cart_line in cart_lines:
        item = lookup(cart_line.menu_item_id)
        if item is None:
            raise ItemNotFound(
                f"Menu item {cart_line.menu_item_id} not found",
                menuItemId=cart_line.menu_item_id,
            )
        if not item.is_available:
            raise ItemUnavailable(
                f'"{item.name}" is currently unavailable',
                menuItemId=item.id, itemName=item.name,
            )
        lines.append(price_line(
            item, cart_line.customizations, cart_line.quantity,
            cart_line.special_instructions,
        ))
    return totals_for(lines)


def check_declared_total(declared_total: Decimal, cart: ValidatedCart):
    difference = abs(Decimal(declared_total) - cart.total)
    if difference > PRICE_EPSILON:
        logger.warning(
            f"Price mismatch detected: client={declared_total} server={cart.total} "
            f"difference={difference}"
        )
        raise PriceMismatch(
            "Price mismatch detected. Please refresh and try again.",
            expectedTotal=float(cart.total),
        )
