from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from .db import get_db
from .auth import require_photographer
from .models import Album, DownloadRecord, Order, OrderItem, Photo, Photographer, ORDER_PAID
from .schemas import OrderStatusOut, OrderSummaryOut, StatsOut

router = APIRouter(tags=["admin"])


def _own_order(db: Session, order_id: str, photographer: Photographer) -> Order:
    order = db.scalar(
        select(Order).where(Order.id == order_id, Order.photographer_id == photographer.id)
    )
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/orders", response_model=list[OrderSummaryOut])
def list_orders(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    return db.scalars(
        select(Order)
        .where(Order.photographer_id == photographer.id)
        .order_by(Order.created_at.desc())
    ).all()


# must stay above /orders/{order_id}
@router.delete("/orders/all")
def delete_all_orders(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    orders = db.scalars(select(Order).where(Order.photographer_id == photographer.id)).all()
    for order in orders:
        db.delete(order)
    db.commit()
    return {"ok": True, "deleted": len(orders)}


@router.delete("/orders/{order_id}")
def delete_order(
    order_id: str,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    order = _own_order(db, order_id, photographer)
    db.delete(order)
    db.commit()
    return {"ok": True}


@router.get("/orders/{order_id}/status", response_model=OrderStatusOut)
def order_status(
    order_id: str,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    """Where webhook outcomes become visible to the photographer."""
    order = _own_order(db, order_id, photographer)
    item_count = db.scalar(select(func.count(OrderItem.id)).where(OrderItem.order_id == order.id)) or 0
    used = db.scalar(select(DownloadRecord.count).where(DownloadRecord.order_id == order.id))
    return OrderStatusOut(
        id=order.id,
        status=order.status,
        payment_reference=order.payment_reference,
        download_expires_at=order.download_expires_at,
        item_count=item_count,
        downloads_used=used,
    )


@router.get("/admin/stats", response_model=StatsOut)
def stats(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    total_albums = db.scalar(
        select(func.count(Album.id)).where(Album.photographer_id == photographer.id)
    ) or 0
    total_photos = db.scalar(
        select(func.count(Photo.id))
        .join(Album, Photo.album_id == Album.id)
        .where(Album.photographer_id == photographer.id)
    ) or 0
    total_orders = db.scalar(
        select(func.count(Order.id)).where(Order.photographer_id == photographer.id)
    ) or 0
    paid_orders, total_sales = db.execute(
        select(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
        .where(Order.photographer_id == photographer.id, Order.status == ORDER_PAID)
    ).one()

    return StatsOut(
        total_albums=total_albums,
        total_photos=total_photos,
        total_orders=total_orders,
        paid_orders=paid_orders,
        total_sales=Decimal(str(total_sales)).quantize(Decimal("0.01")),
    )
