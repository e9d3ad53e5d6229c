"""
Request bodies for the ordering API.

JSON fields are camelCase on the wire (``cartLines``, ``declaredTotal``);
python attributes stay snake_case.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import SPECIAL_INSTRUCTIONS_MAX

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartLine(CamelModel):
    menu_item_id: int = Field(..., description="MenuItem id")
    # group name -> choice label, or list of labels for multi-select groups
    customizations: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    quantity: int = Field(..., ge=1, le=99)
    special_instructions: str = Field("", max_length=SPECIAL_INSTRUCTIONS_MAX)
    # advisory only, never used for pricing
    final_price: Optional[Decimal] = None


class DeliveryAddress(CamelModel):
    street: str = Field(..., min_length=1, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    state: str = Field(..., min_length=1, max_length=50)
    zip_code: str = Field(..., pattern=r"^\d{5}(-\d{4})?$|^\d{6}$")
    country: str = Field(..., min_length=1, max_length=50)


class CheckoutIntentRequest(CamelModel):
    cart_lines: List[CartLine] = Field(..., min_length=1)
    declared_total: Decimal = Field(..., ge=0)
    delivery_address: DeliveryAddress
    # client-side checkout start (epoch ms); a retried request reuses it
    checkout_started_at: Optional[int] = Field(None, ge=0)


class ConfirmPaymentRequest(CamelModel):
    # provider-specific proof fields, e.g. razorpayOrderId/razorpayPaymentId/
    # razorpaySignature or paymentIntentId
    payment_proof: Dict[str, str]
    cart_lines: List[CartLine] = Field(default_factory=list)
    declared_total: Optional[Decimal] = Field(None, ge=0)
    delivery_address: Optional[DeliveryAddress] = None


class StatusUpdateRequest(CamelModel):
    status: str


class AvailabilityUpdateRequest(CamelModel):
    is_available: bool


class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=r"^[a-zA-Z\s]+$")
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8)
    phone: Optional[str] = Field(None, max_length=32)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1)
