import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config, deps
from .auth import require_photographer
from .billing import PLAN_NAMES, RETRYABLE, SubscriptionReconciler, add_months
from .db import get_db
from .idempotency import IdempotencyStore
from .inbound import receive_notification
from .models import (
    Photographer,
    Plan,
    Subscription,
    SubscriptionPayment,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PENDING,
)
from .processor import ProcessorClient, ProcessorError
from .schemas import (
    AccountStandingOut,
    SubscriptionCancelOut,
    SubscriptionCreateIn,
    SubscriptionCreateOut,
    SubscriptionOut,
    SubscriptionPaymentOut,
    SubscriptionStatusOut,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _latest(db: Session, photographer: Photographer, *conditions) -> Subscription | None:
    return db.scalar(
        select(Subscription)
        .where(Subscription.photographer_id == photographer.id, *conditions)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )


def _preapproval_body(plan: Plan, photographer: Photographer, card_token: str | None) -> dict:
    body = {
        "reason": f"{plan.display_name} subscription - {photographer.business_name}",
        "auto_recurring": {
            "frequency": 1,
            "frequency_type": "months",
            "transaction_amount": float(plan.price),
            "currency_id": plan.currency,
        },
        "back_url": f"{config.FRONTEND_URL}/admin/subscription.html?subscription=success",
        "payer_email": photographer.email,
        "external_reference": photographer.id,
        "status": "pending",
    }
    if card_token:
        body["card_token_id"] = card_token
    return body


@router.post("/create", response_model=SubscriptionCreateOut)
async def create_subscription(
    payload: SubscriptionCreateIn,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(deps.get_processor),
):
    if payload.plan_type not in PLAN_NAMES:
        raise HTTPException(status_code=400, detail="Invalid plan")

    current = _latest(
        db,
        photographer,
        Subscription.status.in_([SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PENDING]),
        Subscription.cancelled_at.is_(None),
    )
    if current is not None:
        raise HTTPException(
            status_code=400,
            detail="A subscription is already active. Cancel it before changing plans.",
        )

    plan = db.scalar(select(Plan).where(Plan.name == payload.plan_type))
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")

    try:
        preapproval = await processor.create_preapproval(
            _preapproval_body(plan, photographer, payload.payment_method_id)
        )
    except ProcessorError as e:
        logger.error("preapproval creation failed photographer=%s error=%s", photographer.id, e)
        raise HTTPException(status_code=502, detail="Payment provider error")

    # a cancelled plan still running out its period ends once a new one starts
    winding_down = _latest(
        db,
        photographer,
        Subscription.status == SUBSCRIPTION_ACTIVE,
        Subscription.cancelled_at.is_not(None),
    )
    if winding_down is not None:
        winding_down.status = SUBSCRIPTION_EXPIRED

    now = datetime.now(timezone.utc)
    sub = Subscription(
        photographer_id=photographer.id,
        plan_id=plan.id,
        preapproval_id=str(preapproval["id"]),
        status=SUBSCRIPTION_PENDING,
        started_at=now,
        current_period_start=now,
        current_period_end=add_months(now),
        amount=plan.price,
        currency=plan.currency,
        billing_period="monthly",
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)

    logger.info("subscription %s created plan=%s preapproval=%s", sub.id, plan.name, sub.preapproval_id)
    return SubscriptionCreateOut(
        subscription=SubscriptionOut.model_validate(sub),
        init_point=preapproval.get("init_point"),
        preapproval_id=sub.preapproval_id,
    )


@router.post("/cancel", response_model=SubscriptionCancelOut)
async def cancel_subscription(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(deps.get_processor),
):
    sub = _latest(db, photographer, Subscription.status == SUBSCRIPTION_ACTIVE)
    if sub is None:
        raise HTTPException(status_code=404, detail="No active subscription")

    try:
        await processor.update_preapproval(sub.preapproval_id, {"status": "cancelled"})
    except ProcessorError as e:
        logger.error("preapproval %s cancellation failed error=%s", sub.preapproval_id, e)
        raise HTTPException(status_code=502, detail="Payment provider error")

    # photographer standing is left alone; access runs to the end of the paid period
    sub.status = SUBSCRIPTION_CANCELLED
    sub.cancelled_at = datetime.now(timezone.utc)
    sub.cancel_at_period_end = True
    db.commit()
    db.refresh(sub)

    logger.info("subscription %s cancelled access_until=%s", sub.id, sub.current_period_end)
    return SubscriptionCancelOut(
        subscription=SubscriptionOut.model_validate(sub),
        access_until=sub.current_period_end,
    )


@router.get("/status", response_model=SubscriptionStatusOut)
def subscription_status(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    standing = AccountStandingOut.model_validate(photographer)
    sub = _latest(db, photographer)
    if sub is None:
        return SubscriptionStatusOut(has_subscription=False, photographer=standing)

    payments = db.scalars(
        select(SubscriptionPayment)
        .where(SubscriptionPayment.subscription_id == sub.id)
        .order_by(SubscriptionPayment.created_at.desc(), SubscriptionPayment.id.desc())
    ).all()
    return SubscriptionStatusOut(
        has_subscription=True,
        subscription=SubscriptionOut.model_validate(sub),
        payments=[SubscriptionPaymentOut.model_validate(p) for p in payments],
        photographer=standing,
    )


@router.post("/webhook")
async def subscription_webhook(
    request: Request,
    db: Session = Depends(get_db),
    store: IdempotencyStore = Depends(deps.get_idempotency_store),
    reconciler: SubscriptionReconciler = Depends(deps.get_subscription_reconciler),
):
    return await receive_notification(
        request,
        store,
        lambda notification: reconciler.handle(db, notification),
        retryable=RETRYABLE,
        channel="subscription",
        key_prefix="subscription:",
    )
