from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator


class CartItemIn(BaseModel):
    photo_id: str = Field(alias="photoId", min_length=1)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    quantity: int = Field(default=1, ge=1, le=100)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutIn(BaseModel):
    cart: list[CartItemIn]
    customer_email: EmailStr = Field(alias="customerEmail")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("customer_email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class CheckoutOut(BaseModel):
    init_point: str | None = Field(default=None, serialization_alias="initPoint")
    preference_id: str | None = Field(default=None, serialization_alias="preferenceId")
    order_id: str = Field(serialization_alias="orderId")


class OrderSummaryOut(BaseModel):
    id: str
    customer_email: str
    status: str
    total_amount: Decimal
    download_expires_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class OrderStatusOut(BaseModel):
    id: str
    status: str
    payment_reference: str | None = None
    download_expires_at: datetime | None = None
    item_count: int
    downloads_used: int | None = None


class PurchasedPhotoOut(BaseModel):
    id: str
    student_code: str | None = None
    price: Decimal
    watermarked_url: str | None = None
    download_url: str


class OrderDetailsOrder(BaseModel):
    id: str
    customer_email: str
    status: str
    download_expires_at: datetime | None = None


class OrderDetailsOut(BaseModel):
    order: OrderDetailsOrder
    photos: list[PurchasedPhotoOut]


class AlbumCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    event_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    price_per_photo: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)


class AlbumUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    event_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    price_per_photo: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)


class AlbumOut(BaseModel):
    id: str
    name: str
    description: str
    event_date: str | None = None
    price_per_photo: Decimal | None = None
    photo_count: int = 0


class GalleryPhotoOut(BaseModel):
    id: str
    price: Decimal
    student_code: str | None = None
    watermarked_url: str | None = None


class AlbumPhotoLinkOut(BaseModel):
    id: str
    public_watermarked_url: str | None = None


class AlbumWithPhotosOut(BaseModel):
    id: str
    name: str
    description: str
    event_date: str | None = None
    price_per_photo: Decimal | None = None
    photos: list[AlbumPhotoLinkOut]


class UploadResultOut(BaseModel):
    original_name: str
    status: str  # success | failed
    photo_id: str | None = None
    watermarked_url: str | None = None
    error: str | None = None


class UploadSummaryOut(BaseModel):
    uploaded: int
    failed: int
    results: list[UploadResultOut]


class StatsOut(BaseModel):
    total_albums: int
    total_photos: int
    total_orders: int
    paid_orders: int
    total_sales: Decimal


class SubscriptionCreateIn(BaseModel):
    plan_type: str = Field(alias="planType")
    # card token from the processor's client-side form
    payment_method_id: str | None = Field(default=None, alias="paymentMethodId")

    model_config = ConfigDict(populate_by_name=True)


class PlanOut(BaseModel):
    name: str
    display_name: str
    price: Decimal
    currency: str

    model_config = ConfigDict(from_attributes=True)


class SubscriptionOut(BaseModel):
    id: str
    plan_id: int
    preapproval_id: str
    status: str
    started_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_at_period_end: bool = False
    amount: Decimal
    currency: str
    billing_period: str
    plan: PlanOut | None = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionPaymentOut(BaseModel):
    id: int
    processor_payment_id: str
    amount: Decimal
    currency: str
    status: str
    period_start: datetime | None = None
    period_end: datetime | None = None
    paid_at: datetime | None = None
    payment_method: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionCreateOut(BaseModel):
    subscription: SubscriptionOut
    init_point: str | None = None
    preapproval_id: str


class SubscriptionCancelOut(BaseModel):
    subscription: SubscriptionOut
    access_until: datetime | None = None


class AccountStandingOut(BaseModel):
    plan_type: str | None = None
    subscription_status: str
    trial_ends_at: datetime | None = None
    subscription_expires_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionStatusOut(BaseModel):
    has_subscription: bool = Field(serialization_alias="hasSubscription")
    subscription: SubscriptionOut | None = None
    payments: list[SubscriptionPaymentOut] = []
    photographer: AccountStandingOut
