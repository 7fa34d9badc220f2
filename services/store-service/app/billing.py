"""
Photographer billing: the plan catalog and reconciliation of recurring
subscription notifications.

A subscription is a processor preapproval. ``preapproval`` notifications move
the local subscription through pending/active/paused/cancelled; ``payment``
notifications are the monthly charges and extend (or suspend) the
photographer's access. As with orders, the notification only names the
resource and the processor's copy decides the outcome.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .models import (
    Photographer,
    Plan,
    Subscription,
    SubscriptionPayment,
    ACCOUNT_ACTIVE,
    ACCOUNT_CANCELLED,
    ACCOUNT_PAST_DUE,
    ACCOUNT_PAUSED,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_PAUSED,
)
from .processor import ProcessorClient, ProcessorError, ProcessorNotFound
from .webhook import Notification, TOPIC_PAYMENT, TOPIC_PREAPPROVAL

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PLAN_NAMES = ("pro", "premium")

# Outcomes
PROCESSED = "processed"
SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
PREAPPROVAL_NOT_READY = "preapproval_not_ready_yet"
PAYMENT_NOT_READY = "payment_not_ready_yet"
PAYMENT_NOT_FINAL = "payment_not_final"
PAYMENT_ALREADY_RECORDED = "payment_already_recorded"
IGNORED_STATUS = "ignored_status"
PROCESSOR_UNAVAILABLE = "processor_unavailable"
IGNORED_TOPIC = "ignored_topic"

RETRYABLE = {PREAPPROVAL_NOT_READY, PAYMENT_NOT_READY, PROCESSOR_UNAVAILABLE}

# the processor also uses the newer subscription_* names for the same resource
_PREAPPROVAL_TOPICS = {TOPIC_PREAPPROVAL, "subscription_preapproval"}


@dataclass(frozen=True)
class BillingResult:
    status: str
    subscription_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Same day ``months`` later, clamped to the end of shorter months."""
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def seed_plans(db: Session) -> int:
    """Insert the default plans that are missing. Existing prices are kept."""
    defaults = {
        "pro": ("Pro", config.PLAN_PRO_PRICE),
        "premium": ("Premium", config.PLAN_PREMIUM_PRICE),
    }
    existing = set(db.scalars(select(Plan.name)).all())
    missing = [name for name in PLAN_NAMES if name not in existing]
    for name in missing:
        display_name, price = defaults[name]
        db.add(Plan(name=name, display_name=display_name, price=price, currency=config.CURRENCY_ID))
    if missing:
        db.commit()
        logger.info("seeded plans %s", ",".join(missing))
    return len(missing)


class SubscriptionReconciler:
    def __init__(self, processor: ProcessorClient, *, clock: Callable[[], datetime] = _utcnow):
        self.processor = processor
        self.clock = clock

    async def handle(self, db: Session, notification: Notification) -> BillingResult:
        """
        Reconcile one verified subscription notification.

        Processor failures become outcomes; database errors propagate.
        """
        try:
            if notification.topic in _PREAPPROVAL_TOPICS:
                return await self._from_preapproval(db, notification.resource_id)
            if notification.topic == TOPIC_PAYMENT:
                return await self._from_payment(db, notification.resource_id)
        except ProcessorError as e:
            logger.error(
                "subscription reconciliation failed topic=%s id=%s error=%s",
                notification.topic, notification.resource_id, e,
            )
            return BillingResult(PROCESSOR_UNAVAILABLE)

        logger.info("ignoring subscription topic=%s id=%s", notification.topic, notification.resource_id)
        return BillingResult(IGNORED_TOPIC)

    async def _from_preapproval(self, db: Session, preapproval_id: str) -> BillingResult:
        try:
            preapproval = await self.processor.get_preapproval(preapproval_id)
        except ProcessorNotFound:
            logger.info("preapproval %s not available yet", preapproval_id)
            return BillingResult(PREAPPROVAL_NOT_READY)

        sub = db.scalar(select(Subscription).where(Subscription.preapproval_id == preapproval_id))
        if sub is None:
            logger.error("no local subscription for preapproval %s", preapproval_id)
            return BillingResult(SUBSCRIPTION_NOT_FOUND)

        photographer = db.get(Photographer, sub.photographer_id)
        status = preapproval.get("status")

        if status == "authorized":
            sub.status = SUBSCRIPTION_ACTIVE
            if preapproval.get("payer_id") is not None:
                sub.payer_id = str(preapproval["payer_id"])
            photographer.plan_type = sub.plan.name
            photographer.subscription_status = ACCOUNT_ACTIVE
            photographer.subscription_expires_at = (
                parse_timestamp(preapproval.get("next_payment_date")) or sub.current_period_end
            )
        elif status == "cancelled":
            sub.status = SUBSCRIPTION_CANCELLED
            if sub.cancelled_at is None:
                sub.cancelled_at = self.clock()
            # a cancellation we asked for keeps access until the paid period ends
            if not sub.cancel_at_period_end:
                photographer.subscription_status = ACCOUNT_CANCELLED
        elif status == "paused":
            sub.status = SUBSCRIPTION_PAUSED
            photographer.subscription_status = ACCOUNT_PAUSED
        else:
            logger.info("preapproval %s status=%s, nothing to do", preapproval_id, status)
            return BillingResult(IGNORED_STATUS, sub.id)

        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info("subscription %s preapproval status=%s", sub.id, status)
        return BillingResult(PROCESSED, sub.id)

    def _subscription_for(self, db: Session, payment: Dict[str, Any]) -> Optional[Subscription]:
        payer = payment.get("payer")
        payer_id = payer.get("id") if isinstance(payer, dict) else None
        if payer_id is not None:
            sub = db.scalar(
                select(Subscription)
                .where(Subscription.payer_id == str(payer_id), Subscription.status == SUBSCRIPTION_ACTIVE)
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            if sub is not None:
                return sub

        # preapprovals carry the photographer id as their external reference
        photographer_id = payment.get("external_reference")
        if not photographer_id:
            return None
        return db.scalar(
            select(Subscription)
            .where(
                Subscription.photographer_id == str(photographer_id),
                Subscription.status == SUBSCRIPTION_ACTIVE,
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )

    async def _from_payment(self, db: Session, payment_id: str) -> BillingResult:
        try:
            payment = await self.processor.get_payment(payment_id)
        except ProcessorNotFound:
            logger.info("subscription payment %s not available yet", payment_id)
            return BillingResult(PAYMENT_NOT_READY)

        status = payment.get("status")
        if status not in ("approved", "rejected"):
            logger.info("subscription payment %s status=%s, waiting for a final state", payment_id, status)
            return BillingResult(PAYMENT_NOT_FINAL)

        sub = self._subscription_for(db, payment)
        if sub is None:
            logger.error("no active subscription for payment %s", payment_id)
            return BillingResult(SUBSCRIPTION_NOT_FOUND)

        reference = str(payment.get("id") or payment_id)
        recorded = db.scalar(
            select(SubscriptionPayment.id).where(SubscriptionPayment.processor_payment_id == reference)
        )
        if recorded is not None:
            logger.info("subscription payment %s already recorded", reference)
            return BillingResult(PAYMENT_ALREADY_RECORDED, sub.id)

        now = self.clock()
        db.add(SubscriptionPayment(
            subscription_id=sub.id,
            photographer_id=sub.photographer_id,
            plan_id=sub.plan_id,
            processor_payment_id=reference,
            amount=_amount(payment.get("transaction_amount")) or sub.amount,
            currency=payment.get("currency_id") or sub.currency,
            status=status,
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
            paid_at=now if status == "approved" else None,
            payment_method=payment.get("payment_method_id"),
        ))

        photographer = db.get(Photographer, sub.photographer_id)
        if status == "approved":
            period_end = add_months(now)
            sub.current_period_start = now
            sub.current_period_end = period_end
            photographer.subscription_status = ACCOUNT_ACTIVE
            photographer.subscription_expires_at = period_end
        else:
            photographer.subscription_status = ACCOUNT_PAST_DUE

        try:
            db.commit()
        except IntegrityError:
            # a concurrent delivery recorded it first
            db.rollback()
            return BillingResult(PAYMENT_ALREADY_RECORDED, sub.id)
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info("subscription %s payment %s status=%s", sub.id, reference, status)
        return BillingResult(PROCESSED, sub.id)
