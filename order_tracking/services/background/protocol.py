"""
Background agent message protocol.

Foreground sessions and the background agent only exchange JSON text:

    {"type": "NEW_NOTIFICATION", "data": {"message": "New order from Ada"}}

Messages are validated into a discriminated union on ``type``. Unknown
types are ignored (logged at debug level), malformed known types are
rejected with a warning. Both sides use the same parser.

Also defines the platform alert payload the agent renders and the push
payload it accepts.
"""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    PLAY_SOUND = "PLAY_SOUND"
    STOP_SOUND = "STOP_SOUND"
    CHECK_NOTIFICATIONS = "CHECK_NOTIFICATIONS"
    NEW_NOTIFICATION = "NEW_NOTIFICATION"
    ENABLE_BACKGROUND_SYNC = "ENABLE_BACKGROUND_SYNC"
    DISABLE_BACKGROUND_SYNC = "DISABLE_BACKGROUND_SYNC"


# =============================================================================
# WORKER MESSAGES
# =============================================================================

class MessageData(BaseModel):
    background: Optional[bool] = None


class NewNotificationData(BaseModel):
    message: str = "You received a new order"


class PlaySound(BaseModel):
    type: Literal["PLAY_SOUND"] = "PLAY_SOUND"
    data: Optional[MessageData] = None


class StopSound(BaseModel):
    type: Literal["STOP_SOUND"] = "STOP_SOUND"
    data: Optional[MessageData] = None


class CheckNotifications(BaseModel):
    type: Literal["CHECK_NOTIFICATIONS"] = "CHECK_NOTIFICATIONS"
    data: Optional[MessageData] = None


class NewNotification(BaseModel):
    type: Literal["NEW_NOTIFICATION"] = "NEW_NOTIFICATION"
    data: NewNotificationData = Field(default_factory=NewNotificationData)


class EnableBackgroundSync(BaseModel):
    type: Literal["ENABLE_BACKGROUND_SYNC"] = "ENABLE_BACKGROUND_SYNC"


class DisableBackgroundSync(BaseModel):
    type: Literal["DISABLE_BACKGROUND_SYNC"] = "DISABLE_BACKGROUND_SYNC"


WorkerMessage = Annotated[
    Union[
        PlaySound,
        StopSound,
        CheckNotifications,
        NewNotification,
        EnableBackgroundSync,
        DisableBackgroundSync,
    ],
    Field(discriminator="type"),
]

_KNOWN_TYPES = {t.value for t in MessageType}


class _Envelope(BaseModel):
    message: WorkerMessage


def parse_worker_message(raw: Union[str, bytes, dict[str, Any]]):
    """
    Decode and validate one message.

    Returns the typed message, or None for undecodable, unknown or
    malformed input.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring undecodable worker message")
            return None

    if not isinstance(raw, dict):
        logger.warning(f"Ignoring worker message of type {type(raw).__name__}")
        return None

    if raw.get("type") not in _KNOWN_TYPES:
        logger.debug(f"Ignoring worker message with unknown type {raw.get('type')!r}")
        return None

    try:
        return _Envelope(message=raw).message
    except ValidationError as e:
        logger.warning(f"Rejecting malformed {raw.get('type')} message: {e.errors()[:1]}")
        return None


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json(exclude_none=True)


# =============================================================================
# PLATFORM ALERTS
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True)


class AlertAction(_CamelModel):
    action: str
    title: str


class AlertData(_CamelModel):
    url: str = "/orders"
    order_id: Optional[str] = None
    order_number: Optional[str] = None


DEFAULT_ALERT_ACTIONS = (
    AlertAction(action="view", title="View Order"),
    AlertAction(action="dismiss", title="Dismiss"),
)


class PlatformAlertPayload(_CamelModel):
    """A platform (OS-level) alert, serialized with camelCase keys."""
    title: str = "New Order Received!"
    body: str = "You have a new order"
    icon: str = "/favicon.ico"
    tag: str = "new-order"
    require_interaction: bool = True
    actions: list[AlertAction] = Field(default_factory=lambda: list(DEFAULT_ALERT_ACTIONS))
    data: AlertData = Field(default_factory=AlertData)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PushMessage(_CamelModel):
    """Push payload; every field optional."""
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    amount: Optional[Union[float, str]] = None

    @classmethod
    def parse(cls, raw: Union[None, str, bytes, dict[str, Any]]) -> Optional["PushMessage"]:
        """None for an empty push; raises ValueError for an unreadable one."""
        if raw is None or raw == b"" or raw == "":
            return None
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise ValueError(f"push payload must be an object, got {type(raw).__name__}")
        return cls.model_validate(raw)


def build_push_alert(push: Optional[PushMessage], icon: str, orders_url: str = "/orders") -> PlatformAlertPayload:
    """Render a push payload as a platform alert, filling the defaults."""
    alert = PlatformAlertPayload(icon=icon, data=AlertData(url=orders_url))
    if push is None:
        return alert

    number = push.order_number or push.order_id
    if number:
        alert.title = f"New Order #{number}"
    if push.customer_name:
        amount = f" - {push.amount}" if push.amount is not None else ""
        alert.body = f"Order from {push.customer_name}{amount}"
    alert.data = AlertData(url=orders_url, order_id=push.order_id, order_number=push.order_number)
    return alert
