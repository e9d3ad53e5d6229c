from decimal import Decimal

from sqlalchemy import select

from errors import NotFound, ValidationError
from models import MENU_CATEGORIES, MenuItem


def get_item(session, item_id):
    return session.get(MenuItem, item_id)


def require_item(session, item_id):
    item = get_item(session, item_id)
    if item is None:
        raise NotFound("Menu item not found", menuItemId=item_id)
    return item


def list_available(session, category=None, available=True):
    stmt = select(MenuItem)
    if category:
        if category not in MENU_CATEGORIES:
            raise ValidationError(f"Unknown category: {category}")
        stmt = stmt.where(MenuItem.category == category)
    if available is not None:
        stmt = stmt.where(MenuItem.is_available == available)
    stmt = stmt.order_by(MenuItem.category, MenuItem.name)
    return session.execute(stmt).scalars().all()


def set_availability(session, item_id, is_available):
    item = require_item(session, item_id)
    item.is_available = is_available
    session.commit()
    return item


def choice_price(choice):
    """Price delta of a customization choice; bare string choices cost nothing."""
    if isinstance(choice, dict):
        return Decimal(str(choice.get("price") or 0))
    return Decimal("0")


def choice_label(choice):
    if isinstance(choice, dict):
        return choice.get("label")
    return choice


def menu_item_to_dict(item):
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "price": float(item.price),
        "category": item.category,
        "image": item.image_url,
        "isAvailable": item.is_available,
        "preparationTime": item.preparation_time,
        "customizationOptions": [
            {
                "name": group.get("name"),
                "required": bool(group.get("required", False)),
                "choices": [
                    {"label": choice_label(c), "price": float(choice_price(c))}
                    for c in group.get("choices", [])
                ],
            }
            for group in item.customization_options or []
        ],
    }
