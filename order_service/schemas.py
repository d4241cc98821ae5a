# --- Request Models ---
# Field names follow the JSON contract used by the web clients (camelCase).
# Business validation (required order fields, rating range, status names)
# happens in the services so that failures share the response envelope.

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel


class PlaceOrderRequest(BaseModel):
    """Checkout payload for both card and cash-on-delivery orders."""
    items: Optional[List[Dict[str, Any]]] = None
    amount: Optional[float] = None
    address: Optional[Dict[str, Any]] = None


class OrderIdRequest(BaseModel):
    orderId: str


class StatusRequest(BaseModel):
    """Admin status change; ``status`` is matched case-insensitively."""
    orderId: str
    status: Optional[str] = None


class VerifyRequest(BaseModel):
    """Payment gateway redirect result."""
    orderId: str
    success: Union[bool, str, None] = None


class AssignShelterRequest(BaseModel):
    orderId: Optional[str] = None
    shelterId: Optional[str] = None


class RateRequest(BaseModel):
    orderId: Optional[str] = None
    rating: Any = None
    feedback: Optional[str] = None


class RerouteDecisionRequest(BaseModel):
    by: Optional[str] = None
    reason: Optional[str] = None
