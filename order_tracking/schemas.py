"""
Pydantic Schemas for Records, Change Events and API Responses

Rows coming from the data service (REST query results and change feed
images) are validated here, at the boundary. Order rows use the storefront's
column names (``user_id``, ``metadata.clientId``, ``customer_*``,
``order_items``); they are mapped onto the pipeline's field names so the rest
of the code never looks at raw columns.

Keys absent from a row stay *unset* on the model (see ``model_fields_set``),
which is what lets a partial update payload merge field-by-field into an
order we already hold.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ACTIVE_ORDER_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.ARRIVED,
})


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


def _as_str(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


# =============================================================================
# RECORDS
# =============================================================================

class OwnerRef(BaseModel):
    """Which visitor created an order: an authenticated user or an anonymous client."""
    user_id: Optional[str] = None
    client_id: Optional[str] = None

    coerce_ids = field_validator("user_id", "client_id", mode="before")(_as_str)


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class OrderItem(BaseModel):
    """Single line item of an order."""
    id: str
    product_name: str = ""
    quantity: int = 1
    product_price: float = 0.0
    subtotal: float = 0.0
    special_requests: Optional[str] = None
    toppings: Optional[Union[str, list[str]]] = None

    coerce_ids = field_validator("id", mode="before")(_as_str)


_ORDER_FIELDS = (
    "id",
    "order_number",
    "customer_info",
    "total_amount",
    "status",
    "payment_status",
    "owner_ref",
    "admin_read_at",
    "admin_done_at",
    "created_at",
    "updated_at",
    "items",
)


class Order(BaseModel):
    """
    An order as tracked by the pipeline.

    Accepts either its own field names or a raw ``orders`` row (optionally
    joined with ``order_items``).
    """
    id: str
    order_number: Optional[str] = None
    customer_info: Optional[CustomerInfo] = None
    total_amount: Optional[float] = None
    status: Optional[OrderStatus] = None
    payment_status: Optional[str] = None
    owner_ref: Optional[OwnerRef] = None
    admin_read_at: Optional[datetime] = None
    admin_done_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: list[OrderItem] = Field(default_factory=list)

    coerce_ids = field_validator("id", "order_number", mode="before")(_as_str)

    @model_validator(mode="before")
    @classmethod
    def map_row_columns(cls, data: Any) -> Any:
        """Translate storefront column names onto model fields."""
        if not isinstance(data, dict):
            return data

        fields = {key: data[key] for key in _ORDER_FIELDS if key in data}

        # Legacy rows carry the status in ``order_status``
        if fields.get("status") is None and data.get("order_status") is not None:
            fields["status"] = data["order_status"]

        if "customer_info" not in fields:
            customer = {
                part: data[f"customer_{part}"]
                for part in ("name", "email", "phone", "address")
                if f"customer_{part}" in data
            }
            if customer:
                fields["customer_info"] = customer

        if "owner_ref" not in fields and ("user_id" in data or "metadata" in data):
            metadata = data.get("metadata")
            client_id = metadata.get("clientId") if isinstance(metadata, dict) else None
            fields["owner_ref"] = {"user_id": data.get("user_id"), "client_id": client_id}

        if "items" not in fields and "order_items" in data:
            fields["items"] = data["order_items"] or []

        return fields

    @property
    def is_active(self) -> bool:
        """Still in the kitchen/delivery workflow and not closed by staff."""
        return self.status in ACTIVE_ORDER_STATUSES and self.admin_done_at is None


class Notification(BaseModel):
    """An order notification row."""
    id: str
    order_id: Optional[str] = None
    type: str = Field(
        default="new_order",
        validation_alias=AliasChoices("type", "notification_type"),
    )
    title: Optional[str] = None
    message: str = ""
    is_read: bool = False
    is_acknowledged: bool = False
    created_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None

    coerce_ids = field_validator("id", "order_id", mode="before")(_as_str)

    @field_validator("is_read", "is_acknowledged", mode="before")
    @classmethod
    def null_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def customer_name(self) -> Optional[str]:
        if self.metadata:
            return self.metadata.get("customer_name")
        return None


# =============================================================================
# CHANGE FEED EVENTS
# =============================================================================

class OrderChange(BaseModel):
    """INSERT/UPDATE of an ``orders`` row (full new row image)."""
    table: Literal["orders"]
    event_type: ChangeType = Field(validation_alias=AliasChoices("event_type", "eventType"))
    record: Order = Field(validation_alias=AliasChoices("record", "new"))


class NotificationChange(BaseModel):
    """INSERT/UPDATE of an ``order_notifications`` row."""
    table: Literal["order_notifications"]
    event_type: ChangeType = Field(validation_alias=AliasChoices("event_type", "eventType"))
    record: Notification = Field(validation_alias=AliasChoices("record", "new"))


ChangeEvent = Annotated[Union[OrderChange, NotificationChange], Field(discriminator="table")]

_change_event_adapter = TypeAdapter(ChangeEvent)


def parse_change_event(raw: Any) -> Optional[Union[OrderChange, NotificationChange]]:
    """
    Validate a raw change feed event.

    Returns None (and logs) for malformed events instead of guessing at
    their shape.
    """
    try:
        return _change_event_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Dropping malformed change event: {e.error_count()} error(s): {e.errors()[:1]}")
        return None


# =============================================================================
# API SCHEMAS
# =============================================================================

class PipelineErrorResponse(BaseModel):
    kind: str
    message: str
    occurred_at: datetime
    dismissed: bool = False


class AlertStateResponse(BaseModel):
    """Current alert state, as shown by the console's alert button."""
    phase: str
    is_playing: bool
    is_sound_enabled: bool
    user_manually_silenced: bool
    playback_mode: str
    unread_count: int


class NotificationListResponse(BaseModel):
    unread_count: int
    notifications: list[Notification]
    alert: AlertStateResponse
    feed_status: str
    errors: list[PipelineErrorResponse]


class OrderListResponse(BaseModel):
    total: int
    orders: list[Order]


class SessionResponse(BaseModel):
    client_id: str
    client_created_at: datetime
    identity_persisted: bool
    authenticated_user_id: Optional[str] = None
    feed_status: str
    background_agent: Optional[str] = None
    background_notifications_enabled: bool = False


class LoginRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)


class AcknowledgementResponse(BaseModel):
    success: bool
    message: str
    unread_count: int
    alert: AlertStateResponse


class TestNotificationRequest(BaseModel):
    """Request to insert a test notification row."""
    title: str = Field(default="Test Notification!", max_length=200)
    message: Optional[str] = Field(default=None, max_length=500)


class TestNotificationResponse(BaseModel):
    success: bool
    notification: Notification


class SoundSettingRequest(BaseModel):
    enabled: bool


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    data_service: str
    feed_status: str
    polling_active: bool
    alert_phase: str
    background_agent: str
    timestamp: datetime
