import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, deps, events
from .admin import router as admin_router
from .billing import seed_plans
from .catalog import router as catalog_router
from .db import SessionLocal, get_db, init_schema
from .downloads import DownloadDenied, authorize_download
from .inbound import receive_notification
from .idempotency import IdempotencyStore, MemoryIdempotencyStore, sweep_forever
from .models import Order, OrderItem, Photo, ORDER_PAID
from .orders import build_preference, create_order
from .processor import ProcessorClient, ProcessorError
from .reconciler import (
    OrderReconciler,
    MERCHANT_ORDER_NOT_READY,
    PAYMENT_NOT_READY,
    PROCESSOR_UNAVAILABLE,
)
from .schemas import CheckoutIn, CheckoutOut, OrderDetailsOut, OrderDetailsOrder, PurchasedPhotoOut
from .storage import ObjectStorage, StorageError
from .subscriptions import router as subscriptions_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Outcomes after which a redelivery of the same notification must not be ignored
_RETRYABLE = {PAYMENT_NOT_READY, MERCHANT_ORDER_NOT_READY, PROCESSOR_UNAVAILABLE}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.CREATE_TABLES_ON_STARTUP:
        init_schema()
        with SessionLocal() as db:
            seed_plans(db)

    await deps.startup()

    sweeper = None
    store = deps.get_idempotency_store()
    if isinstance(store, MemoryIdempotencyStore):
        sweeper = asyncio.create_task(sweep_forever(store, interval=60))
    app.state.sweeper = sweeper

    yield

    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await deps.shutdown()


app = FastAPI(title="store-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(catalog_router)
app.include_router(admin_router)
app.include_router(subscriptions_router)


@app.post("/create-payment-preference", response_model=CheckoutOut)
async def create_payment_preference(
    payload: CheckoutIn,
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(deps.get_processor),
):
    order = create_order(
        db,
        payload.cart,
        payload.customer_email,
        verify_prices=config.VERIFY_CART_PRICES,
    )

    body = build_preference(
        order,
        frontend_url=config.FRONTEND_URL,
        backend_url=config.BACKEND_URL,
        currency_id=config.CURRENCY_ID,
    )
    try:
        pref = await processor.create_preference(body)
    except ProcessorError as e:
        # the pending order stays behind; it can never be paid without a checkout
        logger.error("checkout creation failed for order %s: %s", order.id, e)
        raise HTTPException(status_code=502, detail="Could not create checkout, please try again")

    if config.PRODUCTION:
        init_point = pref.get("init_point")
    else:
        init_point = pref.get("sandbox_init_point") or pref.get("init_point")

    events.order_created(order)

    return CheckoutOut(init_point=init_point, preference_id=pref.get("id"), order_id=order.id)


@app.post("/payment-webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    store: IdempotencyStore = Depends(deps.get_idempotency_store),
    reconciler: OrderReconciler = Depends(deps.get_reconciler),
):
    return await receive_notification(
        request,
        store,
        lambda notification: reconciler.handle(db, notification),
        retryable=_RETRYABLE,
    )


@app.get("/order-details/{order_id}/{customer_email}", response_model=OrderDetailsOut)
def order_details(
    order_id: str,
    customer_email: str,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(deps.get_storage),
):
    email = customer_email.strip().lower()
    order = db.scalar(select(Order).where(Order.id == order_id, Order.customer_email == email))
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found or email does not match")

    out_order = OrderDetailsOrder(
        id=order.id,
        customer_email=order.customer_email,
        status=order.status,
        download_expires_at=order.download_expires_at,
    )
    if order.status != ORDER_PAID:
        return OrderDetailsOut(order=out_order, photos=[])

    rows = db.execute(
        select(Photo)
        .join(OrderItem, OrderItem.photo_id == Photo.id)
        .where(OrderItem.order_id == order.id)
        .order_by(OrderItem.id)
    ).scalars().all()

    photos = [
        PurchasedPhotoOut(
            id=p.id,
            student_code=p.student_code,
            price=p.price,
            watermarked_url=storage.public_url(p.watermarked_file_path),
            download_url=f"/download-photo/{p.id}/{order.id}/{order.customer_email}",
        )
        for p in rows
    ]
    return OrderDetailsOut(order=out_order, photos=photos)


@app.get("/download-photo/{photo_id}/{order_id}/{customer_email}")
def download_photo(
    photo_id: str,
    order_id: str,
    customer_email: str,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(deps.get_storage),
):
    try:
        url = authorize_download(
            db,
            storage,
            photo_id,
            order_id,
            customer_email,
            max_downloads=config.MAX_DOWNLOADS,
            signed_url_ttl=config.SIGNED_URL_TTL_SECONDS,
        )
    except DownloadDenied as e:
        return PlainTextResponse(e.message, status_code=e.status_code)
    except StorageError:
        return PlainTextResponse("Could not generate the download, please try again.", status_code=503)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("download failed order=%s photo=%s", order_id, photo_id)
        return PlainTextResponse("Internal error, please try again.", status_code=503)

    return RedirectResponse(url, status_code=302)


@app.get("/health")
def health():
    return {"ok": True}
