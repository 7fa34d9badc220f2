import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, String, Numeric, ForeignKey, Integer, DateTime, JSON, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_PAST_DUE = "past_due"
ORDER_CANCELLED = "cancelled"
ORDER_REJECTED = "rejected"
ORDER_EXPIRED = "expired"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_PAID,
    ORDER_PAST_DUE,
    ORDER_CANCELLED,
    ORDER_REJECTED,
    ORDER_EXPIRED,
)

SUBSCRIPTION_PENDING = "pending"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELLED = "cancelled"
SUBSCRIPTION_PAUSED = "paused"
SUBSCRIPTION_EXPIRED = "expired"

# photographer account standing
ACCOUNT_TRIAL = "trial"
ACCOUNT_ACTIVE = "active"
ACCOUNT_PAST_DUE = "past_due"
ACCOUNT_CANCELLED = "cancelled"
ACCOUNT_PAUSED = "paused"


def _uuid() -> str:
    return str(uuid.uuid4())


class Photographer(Base):
    """Tenant. Linked to the identity provider user through auth_user_id."""

    __tablename__ = "photographers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    auth_user_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    business_name: Mapped[str] = mapped_column(String(255), default="")
    default_price_per_photo: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    plan_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subscription_status: Mapped[str] = mapped_column(String(20), default=ACCOUNT_TRIAL)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    albums: Mapped[list["Album"]] = relationship(back_populates="photographer")


class Album(Base):
    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    photographer_id: Mapped[str] = mapped_column(ForeignKey("photographers.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(String(2000), default="")
    event_date: Mapped[str | None] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD
    price_per_photo: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    photographer: Mapped["Photographer"] = relationship(back_populates="albums")
    photos: Mapped[list["Photo"]] = relationship(
        back_populates="album",
        cascade="all, delete-orphan",
    )


class Photo(Base):
    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    album_id: Mapped[str] = mapped_column(ForeignKey("albums.id"), index=True)

    # private bucket key / public bucket key
    original_file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    watermarked_file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    student_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    album: Mapped["Album"] = relationship(back_populates="photos")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    photographer_id: Mapped[str | None] = mapped_column(ForeignKey("photographers.id"), index=True, nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255), index=True)

    # money => NUMERIC, not FLOAT
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))

    status: Mapped[str] = mapped_column(String(20), default=ORDER_PENDING, index=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    download_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
    )
    download_record: Mapped[Optional["DownloadRecord"]] = relationship(
        cascade="all, delete-orphan",
        uselist=False,
    )


class OrderItem(Base):
    """Line snapshot. Later photo/album price edits never touch it."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    photo_id: Mapped[str] = mapped_column(String(36), index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    price_at_purchase: Mapped[Decimal] = mapped_column(Numeric(10, 2))

    order: Mapped["Order"] = relationship(back_populates="items")


class DownloadRecord(Base):
    """Per (order, customer) download counter."""

    __tablename__ = "download_records"
    __table_args__ = (UniqueConstraint("order_id", name="uq_download_records_order_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    customer_email: Mapped[str] = mapped_column(String(255))
    count: Mapped[int] = mapped_column(Integer, default=0)


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(20), unique=True)  # pro | premium
    display_name: Mapped[str] = mapped_column(String(100))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")


class Subscription(Base):
    """A photographer's recurring plan, backed by a processor preapproval."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    photographer_id: Mapped[str] = mapped_column(ForeignKey("photographers.id"), index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"))
    preapproval_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    payer_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(20), default=SUBSCRIPTION_PENDING, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # access continues until current_period_end
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    billing_period: Mapped[str] = mapped_column(String(20), default="monthly")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    plan: Mapped["Plan"] = relationship()
    payments: Mapped[list["SubscriptionPayment"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
    )


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), index=True)
    photographer_id: Mapped[str] = mapped_column(ForeignKey("photographers.id"), index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"))
    processor_payment_id: Mapped[str] = mapped_column(String(100), unique=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="ARS")
    status: Mapped[str] = mapped_column(String(20))  # approved | rejected
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    subscription: Mapped["Subscription"] = relationship(back_populates="payments")
