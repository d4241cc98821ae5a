from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DeliveryAddress:
    """Delivery address as submitted at checkout.

    Clients send one of several name shapes (first/last, ``name`` or
    ``fullName``); the rest of the address is kept untouched in ``extra``.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    full_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DeliveryAddress":
        raw = dict(raw or {})
        return cls(
            first_name=raw.pop("firstName", None),
            last_name=raw.pop("lastName", None),
            name=raw.pop("name", None),
            full_name=raw.pop("fullName", None),
            extra=raw,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key, value in (
            ("firstName", self.first_name),
            ("lastName", self.last_name),
            ("name", self.name),
            ("fullName", self.full_name),
        ):
            if value is not None:
                data[key] = value
        return data

    def resolved_display_name(self) -> str:
        # first + last, then name, then fullName
        if self.first_name:
            return f"{self.first_name} {self.last_name or ''}".strip()
        return (self.name or self.full_name or "").strip()
