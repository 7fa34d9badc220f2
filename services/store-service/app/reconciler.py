"""
Order reconciliation: turns a verified processor notification into a local
order state transition.

The processor is the source of truth. A notification only tells us *which*
resource changed; we always fetch that resource and decide from its state.
Notifications for the same checkout can arrive as ``payment`` and
``merchant_order`` topics, in any order and any number of times, so settlement
must converge to exactly one pending -> paid transition.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import events
from .downloads import ensure_download_record
from .models import Order, OrderItem, ORDER_PAID, ORDER_PENDING
from .processor import ProcessorClient, ProcessorError, ProcessorNotFound
from .webhook import Notification, TOPIC_MERCHANT_ORDER, TOPIC_PAYMENT

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Outcomes. Every one of them is acknowledged to the processor with a 200.
PROCESSED = "processed"
ALREADY_PAID = "already_paid"
NOT_APPROVED = "not_approved"
NOT_FULLY_PAID = "not_fully_paid"
NOT_PENDING = "not_pending"
PAYMENT_NOT_READY = "payment_not_ready_yet"
MERCHANT_ORDER_NOT_READY = "merchant_order_not_ready_yet"
NO_MERCHANT_ORDER = "no_merchant_order"
MISSING_REFERENCE = "missing_external_reference"
ORDER_NOT_FOUND = "order_not_found"
NO_ITEMS = "no_items"
PROCESSOR_UNAVAILABLE = "processor_unavailable"
IGNORED_TOPIC = "ignored_topic"


@dataclass(frozen=True)
class ReconcileResult:
    status: str
    order_id: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status == PROCESSED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def is_fully_paid(order_data: Dict[str, Any]) -> bool:
    if order_data.get("order_status") == "paid":
        return True

    total = _decimal(order_data.get("total_amount"))
    paid = _decimal(order_data.get("paid_amount"))
    if paid is None:
        paid = sum(
            (_decimal(p.get("transaction_amount")) or Decimal("0")
             for p in order_data.get("payments") or []
             if p.get("status") == "approved"),
            Decimal("0"),
        )
    return total is not None and total > 0 and paid >= total


def pick_payment_id(order_data: Dict[str, Any]) -> Optional[str]:
    payments = order_data.get("payments") or []
    for p in payments:
        if p.get("status") == "approved" and p.get("id") is not None:
            return str(p["id"])
    for p in payments:
        if p.get("id") is not None:
            return str(p["id"])
    return None


class OrderReconciler:
    def __init__(
        self,
        processor: ProcessorClient,
        *,
        payment_lookup_delay: float = 3.0,
        download_window_days: int = 7,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.processor = processor
        self.payment_lookup_delay = payment_lookup_delay
        self.download_window = timedelta(days=download_window_days)
        self.clock = clock

    async def handle(self, db: Session, notification: Notification) -> ReconcileResult:
        """
        Reconcile one verified notification.

        Processor failures are handled here and reported as outcomes.
        Database errors propagate so the caller can ask for redelivery.
        """
        try:
            if notification.topic == TOPIC_PAYMENT:
                return await self._from_payment(db, notification.resource_id)
            if notification.topic == TOPIC_MERCHANT_ORDER:
                return await self._from_merchant_order(db, notification.resource_id)
        except ProcessorError as e:
            logger.error(
                "manual reconciliation required topic=%s id=%s error=%s",
                notification.topic, notification.resource_id, e,
            )
            return ReconcileResult(PROCESSOR_UNAVAILABLE)

        logger.info("ignoring topic=%s id=%s", notification.topic, notification.resource_id)
        return ReconcileResult(IGNORED_TOPIC)

    async def _from_payment(self, db: Session, payment_id: str) -> ReconcileResult:
        if self.payment_lookup_delay > 0:
            await asyncio.sleep(self.payment_lookup_delay)

        try:
            payment = await self.processor.get_payment(payment_id)
        except ProcessorNotFound:
            logger.info("payment %s not available yet", payment_id)
            return ReconcileResult(PAYMENT_NOT_READY)

        status = payment.get("status")
        if status != "approved":
            logger.info("payment %s status=%s, nothing to settle", payment_id, status)
            return ReconcileResult(NOT_APPROVED)

        order_ref = payment.get("order")
        merchant_order_id = order_ref.get("id") if isinstance(order_ref, dict) else None
        if not merchant_order_id:
            logger.warning("approved payment %s has no merchant order", payment_id)
            return ReconcileResult(NO_MERCHANT_ORDER)

        try:
            order_data = await self.processor.get_merchant_order(str(merchant_order_id))
        except ProcessorNotFound:
            logger.info("merchant_order %s not available yet", merchant_order_id)
            return ReconcileResult(MERCHANT_ORDER_NOT_READY)

        return self.settle_order(db, order_data, payment_id=str(payment.get("id") or payment_id))

    async def _from_merchant_order(self, db: Session, merchant_order_id: str) -> ReconcileResult:
        try:
            order_data = await self.processor.get_merchant_order(merchant_order_id)
        except ProcessorNotFound:
            logger.info("merchant_order %s not available yet", merchant_order_id)
            return ReconcileResult(MERCHANT_ORDER_NOT_READY)

        return self.settle_order(db, order_data)

    def settle_order(
        self,
        db: Session,
        order_data: Dict[str, Any],
        payment_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Move the local order referenced by ``order_data`` from pending to paid.

        Safe to call any number of times for the same order: the status
        update is conditional on the row still being pending, and the
        download record insert is a no-op on conflict.
        """
        if not is_fully_paid(order_data):
            logger.info(
                "merchant_order %s not fully paid (paid=%s total=%s)",
                order_data.get("id"), order_data.get("paid_amount"), order_data.get("total_amount"),
            )
            return ReconcileResult(NOT_FULLY_PAID)

        order_id = order_data.get("external_reference")
        if not order_id:
            logger.error("merchant_order %s has no external_reference", order_data.get("id"))
            return ReconcileResult(MISSING_REFERENCE)
        order_id = str(order_id)

        order = db.get(Order, order_id)
        if order is None:
            logger.error("data integrity: no local order for external_reference=%s", order_id)
            return ReconcileResult(ORDER_NOT_FOUND, order_id)

        if order.status == ORDER_PAID and order.payment_reference:
            logger.info("order %s already paid (payment %s)", order_id, order.payment_reference)
            return ReconcileResult(ALREADY_PAID, order_id)

        item_count = db.scalar(
            select(func.count(OrderItem.id)).where(OrderItem.order_id == order_id)
        )
        if not item_count:
            logger.error("data integrity: order %s has no items, refusing to mark paid", order_id)
            return ReconcileResult(NO_ITEMS, order_id)

        payment_reference = payment_id or pick_payment_id(order_data)
        expires_at = self.clock() + self.download_window

        try:
            res = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == ORDER_PENDING)
                .values(
                    status=ORDER_PAID,
                    payment_reference=payment_reference,
                    download_expires_at=expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                logger.info("order %s was not pending at update time, skipping", order_id)
                return ReconcileResult(NOT_PENDING, order_id)

            ensure_download_record(db, order_id, order.customer_email)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(
            "order %s settled payment=%s download_expires_at=%s",
            order_id, payment_reference, expires_at.isoformat(),
        )

        events.order_paid(order_id, order.customer_email, order.total_amount, payment_reference)
        return ReconcileResult(PROCESSED, order_id)
