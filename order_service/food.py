"""Food classification helpers used by cancellation and notification."""

import re
from typing import Any, Dict, Iterable, Optional

VEG = "veg"
NON_VEG = "nonveg"
MIXED = "mixed"

VEG_FLAG_KEYS = ("isVeg", "veg", "isVegetarian")

SWEET_CATEGORIES = (
    "cake",
    "cakes",
    "dessert",
    "desserts",
    "desert",
    "deserts",
    "sweets",
    "sweet",
)
SWEET_NAME_PATTERN = re.compile(
    r"cake|dessert|ice cream|ice-cream|gelato|baklava|tiramisu|pastry|pudding|sweet",
    re.IGNORECASE,
)


def _veg_flag(item: Dict[str, Any]) -> Optional[bool]:
    for key in VEG_FLAG_KEYS:
        if isinstance(item.get(key), bool):
            return item[key]
    category = item.get("category")
    if isinstance(category, str):
        category = category.lower()
        if "veg" in category and "non" not in category:
            return True
        if "non-veg" in category or "non veg" in category:
            return False
    return None


def food_category(items: Iterable[Dict[str, Any]]) -> str:
    """Return ``veg``, ``nonveg`` or ``mixed`` for a list of order items."""
    has_veg = False
    has_non_veg = False
    for item in items or []:
        if not item:
            continue
        flag = _veg_flag(item)
        if flag is True:
            has_veg = True
        elif flag is False:
            has_non_veg = True

    if has_veg and not has_non_veg:
        return VEG
    if has_non_veg and not has_veg:
        return NON_VEG
    return MIXED


def is_veg_only(items: Iterable[Dict[str, Any]]) -> bool:
    items = list(items or [])
    if not items:
        return True
    for item in items:
        if not item:
            continue
        if isinstance(item.get("isVeg"), bool):
            if not item["isVeg"]:
                return False
            continue
        category = str(item.get("category") or item.get("type") or "").lower()
        if "non-veg" in category or "nonveg" in category or category == "nv":
            return False
    return True


def has_sweets(items: Iterable[Dict[str, Any]]) -> bool:
    for item in items or []:
        if not item:
            continue
        category = str(item.get("category") or item.get("section") or item.get("type") or "").lower()
        if any(keyword in category for keyword in SWEET_CATEGORIES):
            return True
        if SWEET_NAME_PATTERN.search(str(item.get("name") or "")):
            return True
    return False


def veg_only_for_notification(category: Optional[str], items: Iterable[Dict[str, Any]]) -> bool:
    """Diet restriction to apply when offering a cancelled order.

    An explicit ``veg`` category means veg-only; ``nonveg`` and ``mixed``
    mean not. Only a missing category falls back to inspecting the items.
    """
    if category == VEG:
        return True
    if category in (NON_VEG, MIXED):
        return False
    return is_veg_only(items)
