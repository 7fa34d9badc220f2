import logging
from decimal import Decimal
from typing import Any, Dict, Iterable
from urllib.parse import urlencode

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import Album, Order, OrderItem, Photo, ORDER_PENDING
from .schemas import CartItemIn

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

CENT = Decimal("0.01")


def _merge(cart: Iterable[CartItemIn]) -> Dict[str, tuple[Decimal, int]]:
    """Collapse repeated photos into one line (first price wins)."""
    merged: Dict[str, tuple[Decimal, int]] = {}
    for it in cart:
        price, qty = merged.get(it.photo_id, (it.price, 0))
        merged[it.photo_id] = (price, qty + it.quantity)
    return merged


def create_order(
    db: Session,
    cart: list[CartItemIn],
    customer_email: str,
    *,
    verify_prices: bool = True,
) -> Order:
    """
    Persist a pending order and its line snapshots for a cart.

    With verify_prices the catalog price is authoritative: every photo must
    exist, belong to one photographer, and be priced as the cart says.
    Without it the cart prices are trusted and the photographer is taken
    from the first photo.
    """
    if not cart:
        raise HTTPException(status_code=400, detail="Cart is empty")
    if not customer_email:
        raise HTTPException(status_code=400, detail="Customer email is required")

    merged = _merge(cart)
    rows = db.execute(
        select(Photo.id, Photo.price, Album.photographer_id)
        .join(Album, Photo.album_id == Album.id)
        .where(Photo.id.in_(list(merged.keys())))
    ).all()
    catalog = {r.id: (r.price, r.photographer_id) for r in rows}

    first_photo_id = cart[0].photo_id
    if first_photo_id not in catalog:
        raise HTTPException(status_code=404, detail=f"Photo {first_photo_id} not found")
    photographer_id = catalog[first_photo_id][1]

    lines: list[tuple[str, Decimal, int]] = []
    for photo_id, (cart_price, qty) in merged.items():
        if verify_prices:
            if photo_id not in catalog:
                raise HTTPException(status_code=404, detail=f"Photo {photo_id} not found")
            price, owner = catalog[photo_id]
            if owner != photographer_id:
                raise HTTPException(status_code=400, detail="Cart mixes photos from different photographers")
            if cart_price.quantize(CENT) != Decimal(price).quantize(CENT):
                raise HTTPException(
                    status_code=409,
                    detail=f"Price of photo {photo_id} changed, please refresh your cart",
                )
            unit_price = Decimal(price)
        else:
            unit_price = cart_price
        lines.append((photo_id, unit_price.quantize(CENT), qty))

    total = sum((price * qty for _, price, qty in lines), Decimal("0.00"))

    try:
        order = Order(
            customer_email=customer_email,
            total_amount=total,
            status=ORDER_PENDING,
            photographer_id=photographer_id,
        )
        db.add(order)
        db.flush()  # get order.id

        for photo_id, price, qty in lines:
            db.add(
                OrderItem(
                    order_id=order.id,
                    photo_id=photo_id,
                    quantity=qty,
                    price_at_purchase=price,
                )
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("order creation failed for %s", customer_email)
        raise HTTPException(status_code=500, detail="Failed to create order")

    db.refresh(order)
    logger.info("order %s created total=%s items=%s", order.id, order.total_amount, len(lines))
    return order


def back_url(frontend_url: str, order_id: str, customer_email: str) -> str:
    query = urlencode({"orderId": order_id, "customerEmail": customer_email})
    return f"{frontend_url}/success.html?{query}"


def build_preference(
    order: Order,
    *,
    frontend_url: str,
    backend_url: str,
    currency_id: str,
) -> Dict[str, Any]:
    """Checkout request for the processor. external_reference is our order id."""
    url = back_url(frontend_url, order.id, order.customer_email)
    return {
        "items": [
            {
                "id": order.id,
                "title": "School photos",
                "quantity": 1,
                "unit_price": float(order.total_amount),
                "currency_id": currency_id,
            }
        ],
        "payer": {"email": order.customer_email},
        "external_reference": order.id,
        "back_urls": {"success": url, "failure": url, "pending": url},
        "auto_return": "approved",
        "notification_url": f"{backend_url}/payment-webhook",
    }
