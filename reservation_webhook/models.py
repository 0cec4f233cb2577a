from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Literal, Optional

EventType = Literal["sale_complete", "sale_canceled"]
Environment = Literal["test", "prod"]

SALE_COMPLETE: EventType = "sale_complete"


class CustomField(BaseModel):
    model_config = ConfigDict(extra="allow")

    ref_command: str = Field(min_length=1)
    redirect_after_success: Optional[str] = None


class Notification(BaseModel):
    """IPN body as posted by the provider.

    Attributes use canonical names; the provider's wire names are aliases.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    event_type: Optional[str] = Field(default=None, alias="type_event")
    correlation_ref: Optional[str] = Field(default=None, alias="ref_command")
    client_phone: Optional[str] = None
    payment_method: Optional[str] = None
    item_name: Optional[str] = None
    item_price: Optional[str] = None
    command_name: Optional[str] = None
    currency: Optional[str] = None
    environment: Optional[str] = Field(default=None, alias="env")
    custom_field: CustomField
    provider_token: Optional[str] = Field(default=None, alias="token")
    key_digest: Optional[str] = Field(default=None, alias="api_key_sha256")
    secret_digest: Optional[str] = Field(default=None, alias="api_secret_sha256")


class ConfirmedReservation(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Literal["validated"] = "validated"
    payment_status: Literal["completed"] = "completed"
    payment_ref: Optional[str] = None
    payment_method: Optional[str] = None
    client_phone: Optional[str] = None
    payment_details: dict[str, Any]
    confirmed_at: str
