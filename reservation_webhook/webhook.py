"""
IPN handling: normalize the provider callback, filter on event type,
check the shared-secret digests, then move the reservation from the
pending table to the confirmed table.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from .db import DuplicateRecord, RecordStore, StoreError
from .models import SALE_COMPLETE, ConfirmedReservation, CustomField, Notification
from .settings import CONFIRMED_TABLE, PENDING_TABLE, ConfigurationError, ProviderCredentials

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class WebhookError(Exception):
    status_code = 500
    message = "Webhook processing failed"


class MalformedPayload(WebhookError):
    status_code = 400
    message = "Invalid custom_field format"


class InvalidCustomField(WebhookError):
    status_code = 400
    message = "Invalid custom_field format"


class InvalidSignature(WebhookError):
    status_code = 401
    message = "Invalid signature"


class ReservationNotFound(WebhookError):
    status_code = 404
    message = "Reservation not found"


class PersistenceFailure(WebhookError):
    status_code = 500
    message = "Insert failed"


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any]


class WebhookObserver:
    """Receives one event per stage of the IPN flow. Default sink is the module logger."""

    def record(self, stage: str, outcome: str, ref_command: Optional[str] = None, **fields: Any) -> None:
        level = logging.WARNING if outcome in ("rejected", "failed", "warning") else logging.INFO
        extra = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        logger.log(level, "ipn stage=%s outcome=%s ref_command=%s %s", stage, outcome, ref_command, extra)


# --- normalization ---

def decode_custom_field(raw: Any) -> CustomField:
    if isinstance(raw, CustomField):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise InvalidCustomField(str(exc)) from exc
    if not isinstance(raw, Mapping):
        raise InvalidCustomField("custom_field is not an object")
    try:
        return CustomField.model_validate(dict(raw))
    except ValidationError as exc:
        raise InvalidCustomField(str(exc)) from exc


def is_form_encoded(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in FORM_CONTENT_TYPES


def parse_body(body: Any, content_type: Optional[str] = None) -> dict[str, Any]:
    """Return the notification as a plain dict, whatever encoding it arrived in."""
    if is_form_encoded(content_type) and isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload(str(exc)) from exc
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise MalformedPayload(str(exc)) from exc
    if not isinstance(body, Mapping):
        raise MalformedPayload("notification is not an object")
    return dict(body)


def normalize_payload(body: Any, content_type: Optional[str] = None) -> Notification:
    data = parse_body(body, content_type)
    custom_field = decode_custom_field(data.get("custom_field"))
    try:
        return Notification.model_validate({**data, "custom_field": custom_field})
    except ValidationError as exc:
        raise MalformedPayload(str(exc)) from exc


def event_type_of(data: Any) -> Optional[str]:
    """Event type of a Notification or of a raw body, before custom_field is decoded."""
    if isinstance(data, Notification):
        return data.event_type
    return data.get("type_event", data.get("event_type"))


def is_sale_complete(data: Any) -> bool:
    return event_type_of(data) == SALE_COMPLETE


# --- authentication ---

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class SignatureVerifier:
    """
    The provider proves itself by sending sha256(api_key) and sha256(api_secret)
    as hex. The digest input is the secret itself, not the request body.
    """

    def __init__(self, credentials: ProviderCredentials):
        # Empty secrets hash to a well-known digest.
        if not credentials.api_key or not credentials.api_secret:
            raise ConfigurationError("PAYTECH_API_KEY and PAYTECH_API_SECRET must be set")
        self._key_digest = sha256_hex(credentials.api_key)
        self._secret_digest = sha256_hex(credentials.api_secret)

    def verify(self, notification: Notification) -> None:
        key_ok = _digest_equals(self._key_digest, notification.key_digest)
        secret_ok = _digest_equals(self._secret_digest, notification.secret_digest)
        if not (key_ok and secret_ok):
            raise InvalidSignature()


def _digest_equals(expected: str, supplied: Optional[str]) -> bool:
    if not isinstance(supplied, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


# --- transition ---

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ReservationTransitioner:
    store: RecordStore
    observer: WebhookObserver = field(default_factory=WebhookObserver)
    pending_table: str = PENDING_TABLE
    confirmed_table: str = CONFIRMED_TABLE
    clock: Callable[[], str] = utc_now_iso

    def build_confirmed(self, pending: Mapping[str, Any], notification: Notification,
                        payload: Mapping[str, Any]) -> ConfirmedReservation:
        reservation_data = pending.get("reservation_data") or {}
        return ConfirmedReservation(**{
            **reservation_data,
            "status": "validated",
            "payment_status": "completed",
            "payment_ref": notification.correlation_ref,
            "payment_method": notification.payment_method,
            "client_phone": notification.client_phone,
            "payment_details": dict(payload),
            "confirmed_at": self.clock(),
        })

    async def confirm(self, notification: Notification, payload: Mapping[str, Any]) -> ConfirmedReservation:
        ref_command = notification.custom_field.ref_command

        try:
            pending = await self.store.select_by_key(self.pending_table, ref_command)
        except StoreError as exc:
            logger.warning("Pending lookup failed for %s: %s", ref_command, exc)
            pending = None
        if not pending:
            raise ReservationNotFound(ref_command)
        reservation_data = pending.get("reservation_data")
        if reservation_data is not None and not isinstance(reservation_data, Mapping):
            logger.warning("Pending reservation %s has unusable reservation_data (%s)",
                           ref_command, type(reservation_data).__name__)
            raise ReservationNotFound(ref_command)

        confirmed = self.build_confirmed(pending, notification, payload)

        # Past this insert the confirmation exists; nothing after it may fail the request.
        try:
            await self.store.insert(self.confirmed_table, confirmed.model_dump())
        except DuplicateRecord:
            self.observer.record("transition", "duplicate", ref_command, payment_ref=confirmed.payment_ref)
        except StoreError as exc:
            raise PersistenceFailure(str(exc)) from exc

        try:
            await self.store.delete_by_key(self.pending_table, ref_command)
        except StoreError as exc:
            self.observer.record("cleanup", "warning", ref_command, error=exc)

        return confirmed


# --- handler ---

class WebhookHandler:
    def __init__(self, verifier: SignatureVerifier, transitioner: ReservationTransitioner,
                 observer: Optional[WebhookObserver] = None):
        self.verifier = verifier
        self.transitioner = transitioner
        self.observer = observer or transitioner.observer

    async def handle(self, body: Any, content_type: Optional[str] = None) -> WebhookResult:
        """Process one IPN delivery. Never raises; every failure maps to a status and body."""
        ref_command = None
        stage = "normalize"
        try:
            self.observer.record("entry", "received", None, content_type=content_type)
            payload = parse_body(body, content_type)

            # Non-sale events are acknowledged whatever their custom_field looks like.
            stage = "filter"
            event_type = event_type_of(payload)
            if not is_sale_complete(payload):
                self.observer.record(stage, "ignored", None, event_type=event_type)
                return WebhookResult(200, {"status": "ignored"})
            self.observer.record(stage, "accepted", None, event_type=event_type)

            stage = "normalize"
            notification = normalize_payload(payload)
            ref_command = notification.custom_field.ref_command

            stage = "authenticate"
            self.verifier.verify(notification)
            self.observer.record(stage, "verified", ref_command)

            stage = "transition"
            confirmed = await self.transitioner.confirm(notification, payload)
            self.observer.record(stage, "confirmed", ref_command, payment_ref=confirmed.payment_ref)
            return WebhookResult(200, {"success": True})
        except WebhookError as exc:
            self.observer.record(stage, "rejected", ref_command, error=type(exc).__name__)
            return WebhookResult(exc.status_code, {"error": exc.message})
        except Exception:
            logger.exception("Webhook processing failed at stage %s", stage)
            self.observer.record(stage, "failed", ref_command, error="UnexpectedError")
            return WebhookResult(500, {"error": WebhookError.message})
