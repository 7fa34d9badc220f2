import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import DownloadRecord, Order, OrderItem, Photo, ORDER_PAID
from .storage import ObjectStorage

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class DownloadDenied(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def ensure_download_record(db: Session, order_id: str, customer_email: str) -> None:
    """
    Create the (order, customer) counter at 0 unless it already exists.
    Does not commit.
    """
    dialect = db.get_bind().dialect.name
    values = {"order_id": order_id, "customer_email": customer_email, "count": 0}

    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        db.execute(
            insert(DownloadRecord)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["order_id"])
        )
        return

    exists = db.scalar(select(DownloadRecord.id).where(DownloadRecord.order_id == order_id))
    if exists is None:
        db.add(DownloadRecord(**values))
        db.flush()


def authorize_download(
    db: Session,
    storage: ObjectStorage,
    photo_id: str,
    order_id: str,
    customer_email: str,
    *,
    max_downloads: int = 3,
    signed_url_ttl: int = 7 * 24 * 3600,
    now: Optional[datetime] = None,
) -> str:
    """
    Return a signed URL for the original of ``photo_id`` if the customer has
    paid for it through ``order_id``.

    Raises DownloadDenied(403|404, reason) otherwise. A successful call uses
    up one download from the order's quota.
    """
    email = customer_email.strip().lower()
    now = now or datetime.now(timezone.utc)

    order = db.scalar(
        select(Order).where(
            Order.id == order_id,
            Order.customer_email == email,
            Order.status == ORDER_PAID,
        )
    )
    if order is None:
        logger.info("download refused: order %s not paid or not owned by %s", order_id, email)
        raise DownloadDenied(403, "Not authorized to download this photo.")

    if order.download_expires_at is not None and _as_utc(order.download_expires_at) < now:
        raise DownloadDenied(403, "The download window for this order has expired.")

    item = db.scalar(
        select(OrderItem.id).where(OrderItem.order_id == order_id, OrderItem.photo_id == photo_id)
    )
    if item is None:
        logger.info("download refused: photo %s not in order %s", photo_id, order_id)
        raise DownloadDenied(403, "This photo is not part of this order.")

    photo = db.get(Photo, photo_id)
    if photo is None or not photo.original_file_path:
        logger.error("photo %s in order %s has no original file", photo_id, order_id)
        raise DownloadDenied(404, "Original photo not found.")

    if max_downloads > 0:
        ensure_download_record(db, order_id, email)
        used = db.scalar(select(DownloadRecord.count).where(DownloadRecord.order_id == order_id))
        if used is not None and used >= max_downloads:
            db.commit()
            raise DownloadDenied(403, "Download limit reached. Please contact support.")

    url = storage.signed_url(photo.original_file_path, signed_url_ttl)

    if max_downloads > 0:
        res = db.execute(
            update(DownloadRecord)
            .where(DownloadRecord.order_id == order_id, DownloadRecord.count < max_downloads)
            .values(count=DownloadRecord.count + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise DownloadDenied(403, "Download limit reached. Please contact support.")
        db.commit()

    logger.info("download authorized order=%s photo=%s", order_id, photo_id)
    return url
