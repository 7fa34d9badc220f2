from typing import Optional

import httpx
from fastapi import Depends

from . import config
from .billing import SubscriptionReconciler
from .idempotency import IdempotencyStore, MemoryIdempotencyStore, RedisIdempotencyStore
from .processor import ProcessorClient, build_client
from .reconciler import OrderReconciler
from .storage import ObjectStorage
from .watermark import WatermarkClient

# Long-lived collaborators, opened by the app lifespan
_processor: Optional[ProcessorClient] = None
_processor_http: Optional[httpx.AsyncClient] = None
_watermark_http: Optional[httpx.AsyncClient] = None
_idempotency_store: Optional[IdempotencyStore] = None
_storage: Optional[ObjectStorage] = None
_redis = None


async def startup() -> None:
    global _processor, _processor_http, _watermark_http, _idempotency_store, _redis

    _processor_http = httpx.AsyncClient(base_url=config.PROCESSOR_BASE_URL, timeout=config.PROCESSOR_TIMEOUT)
    _processor = build_client(_processor_http)
    _watermark_http = httpx.AsyncClient(timeout=config.WATERMARK_TIMEOUT)

    if config.IDEMPOTENCY_BACKEND == "redis":
        import redis.asyncio as aioredis

        _redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)
        _idempotency_store = RedisIdempotencyStore(_redis)
    else:
        _idempotency_store = MemoryIdempotencyStore()


async def shutdown() -> None:
    global _processor, _processor_http, _watermark_http, _redis

    for client in (_processor_http, _watermark_http):
        if client is not None:
            await client.aclose()
    if _redis is not None:
        await _redis.aclose()
    _processor = None
    _processor_http = None
    _watermark_http = None
    _redis = None


def get_processor() -> ProcessorClient:
    global _processor
    if _processor is None:
        # fallback in case lifespan didn't run
        _processor = build_client()
    return _processor


def get_reconciler(processor: ProcessorClient = Depends(get_processor)) -> OrderReconciler:
    return OrderReconciler(
        processor,
        payment_lookup_delay=config.PAYMENT_LOOKUP_DELAY,
        download_window_days=config.DOWNLOAD_WINDOW_DAYS,
    )


def get_subscription_reconciler(processor: ProcessorClient = Depends(get_processor)) -> SubscriptionReconciler:
    return SubscriptionReconciler(processor)


def get_idempotency_store() -> IdempotencyStore:
    global _idempotency_store
    if _idempotency_store is None:
        _idempotency_store = MemoryIdempotencyStore()
    return _idempotency_store


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage


def get_watermark() -> WatermarkClient:
    global _watermark_http
    if _watermark_http is None:
        _watermark_http = httpx.AsyncClient(timeout=config.WATERMARK_TIMEOUT)
    return WatermarkClient(_watermark_http)

