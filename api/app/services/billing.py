"""
Billing Webhook

Processes Lemon Squeezy order webhooks: verifies the HMAC signature of the
raw body, maps the order to a purchase (audit credits or a monitoring plan)
and applies it through the EntitlementService.

Unknown events, accounts and refunds for unknown accounts are acknowledged
with 200 so the provider does not retry them.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, parse_id_list, settings
from app.exceptions import InternalError, UnauthorizedError, ValidationError
from app.models import Tier, User
from app.services import metrics
from app.services.entitlements import EntitlementService, Purchase, PurchaseType

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-signature"
EVENT_HEADER = "x-event-name"

ORDER_CREATED = "order_created"
ORDER_REFUNDED = "order_refunded"
HANDLED_EVENTS = {ORDER_CREATED, ORDER_REFUNDED}


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Hex HMAC-SHA256 of the raw body, compared in constant time."""
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.strip())


def _ids(raw: str) -> FrozenSet[str]:
    return frozenset(parse_id_list(raw))


@dataclass(frozen=True)
class VariantCatalog:
    """Configured product variant ids per purchase type and tier."""

    monitoring_basic: FrozenSet[str] = field(default_factory=frozenset)
    monitoring_pro: FrozenSet[str] = field(default_factory=frozenset)
    audit_basic: FrozenSet[str] = field(default_factory=frozenset)
    audit_pro: FrozenSet[str] = field(default_factory=frozenset)
    legacy_monitoring: FrozenSet[str] = field(default_factory=frozenset)
    legacy_audit: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, config: Settings) -> "VariantCatalog":
        return cls(
            monitoring_basic=_ids(config.lemon_monitoring_basic_variant_ids),
            monitoring_pro=_ids(config.lemon_monitoring_pro_variant_ids),
            audit_basic=_ids(config.lemon_audit_basic_variant_ids),
            audit_pro=_ids(config.lemon_audit_pro_variant_ids),
            legacy_monitoring=_ids(config.lemon_legacy_monitoring_variant_ids),
            legacy_audit=_ids(config.lemon_legacy_audit_variant_ids),
        )

    def lookup(self, variant_id: str) -> Optional[Purchase]:
        if not variant_id:
            return None
        table = (
            (self.monitoring_pro, PurchaseType.MONITORING, Tier.PRO),
            (self.monitoring_basic, PurchaseType.MONITORING, Tier.BASIC),
            (self.audit_pro, PurchaseType.AUDIT, Tier.PRO),
            (self.audit_basic, PurchaseType.AUDIT, Tier.BASIC),
            (self.legacy_monitoring, PurchaseType.MONITORING, Tier.BASIC),
            (self.legacy_audit, PurchaseType.AUDIT, Tier.BASIC),
        )
        for ids, purchase_type, tier in table:
            if variant_id in ids:
                return Purchase(purchase_type, tier)
        return None

    def fallback(self) -> Purchase:
        """Unmapped variants: monitoring only when nothing else is sold."""
        sells_monitoring = bool(self.monitoring_basic or self.monitoring_pro or self.legacy_monitoring)
        sells_audits = bool(self.audit_basic or self.audit_pro or self.legacy_audit)
        if sells_monitoring and not sells_audits:
            return Purchase(PurchaseType.MONITORING, Tier.BASIC)
        return Purchase(PurchaseType.AUDIT, Tier.BASIC)


def _custom_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    meta = payload.get("meta") or {}
    custom = meta.get("custom_data") if isinstance(meta, dict) else None
    return custom if isinstance(custom, dict) else {}


def _attributes(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data") or {}
    attributes = data.get("attributes") if isinstance(data, dict) else None
    return attributes if isinstance(attributes, dict) else {}


def pick_variant_id(payload: Dict[str, Any]) -> str:
    attributes = _attributes(payload)
    first_item = attributes.get("first_order_item") or {}
    if not isinstance(first_item, dict):
        first_item = {}
    candidates = (
        first_item.get("variant_id"),
        first_item.get("variantId"),
        attributes.get("variant_id"),
        attributes.get("variantId"),
        _custom_data(payload).get("variant_id"),
    )
    for value in candidates:
        if value is None:
            continue
        normalized = str(value).strip()
        if normalized:
            return normalized
    return ""


def _tier(value: Any) -> Optional[Tier]:
    if value == "pro":
        return Tier.PRO
    if value == "basic":
        return Tier.BASIC
    return None


def resolve_purchase(payload: Dict[str, Any], catalog: VariantCatalog) -> Purchase:
    """Explicit custom_data wins, then the variant id, then the fallback."""
    custom = _custom_data(payload)
    custom_type = custom.get("purchase_type")
    custom_tier = _tier(custom.get("purchase_tier")) or Tier.BASIC
    if custom_type == "monitoring":
        return Purchase(PurchaseType.MONITORING, custom_tier)
    if custom_type == "audit":
        return Purchase(PurchaseType.AUDIT, custom_tier)

    return catalog.lookup(pick_variant_id(payload)) or catalog.fallback()


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    message: str


class BillingWebhookProcessor:
    """Verifies and applies one webhook delivery."""

    def __init__(
        self,
        db: Session,
        secret: Optional[str] = None,
        catalog: Optional[VariantCatalog] = None,
    ):
        self.db = db
        self.secret = settings.lemon_webhook_secret if secret is None else secret
        self.catalog = catalog or VariantCatalog.from_settings(settings)
        self.entitlements = EntitlementService(db)

    def _find_user(self, custom: Dict[str, Any], attributes: Dict[str, Any]) -> Optional[User]:
        user_id = str(custom.get("user_id") or "").strip()
        if user_id:
            try:
                return self.db.query(User).filter(User.id == uuid.UUID(user_id)).first()
            except ValueError:
                return None
        email = str(attributes.get("user_email") or "").strip().lower()
        if email:
            return self.db.query(User).filter(User.email == email).first()
        return None

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """
        Process a delivery.

        Raises:
            UnauthorizedError: Signature missing or wrong
            ValidationError: Body is not a JSON object
            InternalError: Webhook not configured or the update failed
        """
        if not self.secret:
            logger.error("Billing webhook secret not configured")
            raise InternalError("Webhook not configured")

        if not verify_signature(raw_body, headers.get(SIGNATURE_HEADER), self.secret):
            logger.warning("Invalid billing webhook signature")
            metrics.record_billing_event("unknown", "invalid_signature")
            raise UnauthorizedError("Invalid signature")

        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Invalid webhook payload")
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")

        meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
        event_name = (headers.get(EVENT_HEADER) or meta.get("event_name") or "").strip()
        if event_name not in HANDLED_EVENTS:
            logger.info(f"Ignoring billing event: {event_name or '<none>'}")
            metrics.record_billing_event(event_name or "unknown", "ignored")
            return WebhookOutcome(200, "ignored")

        custom = _custom_data(payload)
        attributes = _attributes(payload)
        if not custom.get("user_id") and not attributes.get("user_email"):
            logger.warning(f"Billing event {event_name} carries no account reference")
            metrics.record_billing_event(event_name, "no_account")
            return WebhookOutcome(200, "no account reference")

        user = self._find_user(custom, attributes)
        if user is None:
            logger.warning(f"Billing event {event_name} for unknown account")
            metrics.record_billing_event(event_name, "unknown_account")
            return WebhookOutcome(200, "unknown account")

        purchase = resolve_purchase(payload, self.catalog)
        logger.info(
            f"Billing event {event_name} for {user.id}: "
            f"{purchase.type.value}/{purchase.tier.value}"
        )

        try:
            if event_name == ORDER_REFUNDED:
                outcome = self.entitlements.apply_refund(user, purchase)
            else:
                outcome = self.entitlements.apply_purchase(user, purchase)
        except (SQLAlchemyError, RuntimeError) as e:
            self.db.rollback()
            logger.error(f"Billing event {event_name} for {user.id} failed: {e}")
            metrics.record_billing_event(event_name, "error")
            raise InternalError("Webhook processing failed")

        metrics.record_billing_event(event_name, outcome)
        if outcome == "skipped_prerequisite":
            return WebhookOutcome(200, "skipped")
        return WebhookOutcome(200, "ok")
