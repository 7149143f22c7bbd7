"""
Order Service: FastAPI エントリーポイント

データバンドル / 結果確認 PIN の取引を管理する。
CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
取引の変更はすべてイベントとして記録し、コミット後に外部 Webhook へ通知する。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

import redis.asyncio as aioredis
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, credentials, db, event_store, queries
from .aggregate import TransactionAggregate
from .api_keys import InvalidApiKey, has_permissions
from .fulfillment import FulfillmentClient, FulfillmentError
from .network import validate_phone_number_detailed
from .rate_limit import MemoryRateLimiter, RedisRateLimiter, run_sweeper
from .status import DeliveryStatus, InvalidTransition, PaymentStatus, ProductType, WebhookEvent

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "")
WEBHOOK_URL = os.environ.get("WEBHOOK_URL", "")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")
WEBHOOK_RETRIES = int(os.environ.get("WEBHOOK_RETRIES", "3"))
FULFILLMENT_API_URL = os.environ.get("FULFILLMENT_API_URL", "")
FULFILLMENT_API_KEY = os.environ.get("FULFILLMENT_API_KEY", "")
PHONE_PREFIX_VALIDATION = os.environ.get("PHONE_PREFIX_VALIDATION", "true").lower() == "true"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
key_limiter: MemoryRateLimiter | RedisRateLimiter = MemoryRateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    起動時: テーブル作成、Redis 接続 (設定時)、レート制限の掃除タスク開始。
    Redis が無い場合はプロセス内のレート制限で動く (単一インスタンス前提)。
    """
    global redis_pool, key_limiter
    await db.create_schema(engine)

    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
        key_limiter = RedisRateLimiter(redis_pool)
    else:
        key_limiter = MemoryRateLimiter()
    if WEBHOOK_URL and not WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is not set; webhook signatures use an empty key")

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(run_sweeper(key_limiter, shutdown_event))
    yield
    shutdown_event.set()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    if redis_pool is not None:
        await redis_pool.aclose()
        redis_pool = None
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Error Mapping ────────────────────────────────


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(commands.TransactionNotFound)
async def handle_not_found(request: Request, exc: commands.TransactionNotFound):
    return _error(404, "Transaction not found")


@app.exception_handler(InvalidTransition)
async def handle_invalid_transition(request: Request, exc: InvalidTransition):
    return _error(409, str(exc))


@app.exception_handler(commands.DuplicateReference)
async def handle_duplicate_reference(request: Request, exc: commands.DuplicateReference):
    return _error(409, f"Reference already exists: {exc}")


@app.exception_handler(commands.ConcurrentUpdate)
async def handle_concurrent_update(request: Request, exc: commands.ConcurrentUpdate):
    return _error(409, f"Transaction {exc} was modified concurrently, retry the request")


@app.exception_handler(commands.InvalidOrder)
async def handle_invalid_order(request: Request, exc: commands.InvalidOrder):
    return _error(422, str(exc))


@app.exception_handler(InvalidApiKey)
async def handle_invalid_api_key(request: Request, exc: InvalidApiKey):
    return _error(401, str(exc))


@app.exception_handler(FulfillmentError)
async def handle_fulfillment_error(request: Request, exc: FulfillmentError):
    return _error(502, f"Fulfillment API error: {exc}")


# ── Request / Response Models ────────────────────


class BulkRecipient(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    phone: str
    bundle_id: str | None = None
    bundle_name: str | None = None


class CreateTransactionRequest(BaseModel):
    reference: str | None = None
    type: ProductType
    product_id: str | None = None
    product_name: str
    network: str | None = None
    amount: float = Field(gt=0)
    customer_phone: str | None = None
    customer_email: str | None = None
    phone_numbers: list[BulkRecipient] | None = None


class PaymentCallbackRequest(BaseModel):
    payment_status: PaymentStatus
    payment_reference: str | None = None


class DeliveryUpdateRequest(BaseModel):
    delivery_status: DeliveryStatus
    reason: str | None = None


class CloseTransactionRequest(BaseModel):
    status: Literal["cancelled", "refunded"]
    reason: str = ""


class IssueApiKeyRequest(BaseModel):
    user_id: str
    name: str
    permissions: dict[str, bool] = Field(default_factory=dict)
    kind: Literal["secret", "public"] = "secret"


def _summary(agg: TransactionAggregate, changed: bool = True) -> dict:
    return {
        "transaction_id": agg.id,
        "reference": agg.reference,
        "status": agg.status,
        "payment_status": agg.payment_status,
        "delivery_status": agg.delivery_status,
        "version": agg.version,
        "changed": changed,
    }


def _schedule_webhook(
    background_tasks: BackgroundTasks,
    agg: TransactionAggregate,
    event: WebhookEvent,
    previous_status: str | None = None,
) -> None:
    """レスポンス返却後に、コミット時点のスナップショットを Webhook で送る。未設定なら何もしない。"""
    if not WEBHOOK_URL or agg.snapshot is None:
        return
    background_tasks.add_task(
        commands.notify_subscriber,
        async_session,
        agg.snapshot,
        event,
        WEBHOOK_URL,
        WEBHOOK_SECRET,
        previous_status,
        WEBHOOK_RETRIES,
    )


def _after_change(
    background_tasks: BackgroundTasks,
    agg: TransactionAggregate,
    previous_status: str | None,
) -> dict:
    changed = previous_status is not None
    if changed:
        _schedule_webhook(background_tasks, agg, WebhookEvent.ORDER_STATUS_UPDATED, previous_status)
    return _summary(agg, changed)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/transactions")
async def cmd_create_transaction(req: CreateTransactionRequest, background_tasks: BackgroundTasks):
    """取引作成コマンド (チェックアウト開始)"""
    phone_numbers = None
    if req.phone_numbers is not None:
        phone_numbers = [
            r.model_dump(by_alias=True, exclude_none=True) for r in req.phone_numbers
        ]
    async with async_session() as session:
        agg = await commands.create_transaction(
            session, redis_pool,
            product_type=req.type.value,
            product_name=req.product_name,
            amount=req.amount,
            product_id=req.product_id,
            network=req.network,
            customer_phone=req.customer_phone,
            customer_email=req.customer_email,
            phone_numbers=phone_numbers,
            reference=req.reference,
            validate_prefixes=PHONE_PREFIX_VALIDATION,
        )
    _schedule_webhook(background_tasks, agg, WebhookEvent.ORDER_CREATED)
    return _summary(agg)


@app.post("/commands/transactions/{reference}/payment")
async def cmd_record_payment(
    reference: str,
    req: PaymentCallbackRequest,
    background_tasks: BackgroundTasks,
):
    """決済コールバック (reference で冪等)"""
    async with async_session() as session:
        agg, previous_status = await commands.record_payment(
            session, redis_pool, reference,
            req.payment_status.value, req.payment_reference,
        )
    return _after_change(background_tasks, agg, previous_status)


@app.post("/commands/transactions/{reference}/delivery")
async def cmd_update_delivery(
    reference: str,
    req: DeliveryUpdateRequest,
    background_tasks: BackgroundTasks,
):
    """配信状況の更新 (フルフィルメントのコールバック / 管理者)"""
    async with async_session() as session:
        agg, previous_status = await commands.update_delivery_status(
            session, redis_pool, reference, req.delivery_status.value, req.reason,
        )
    return _after_change(background_tasks, agg, previous_status)


@app.post("/commands/transactions/{reference}/reconcile")
async def cmd_reconcile_delivery(reference: str, background_tasks: BackgroundTasks):
    """フルフィルメント API をポーリングして配信状況を反映する"""
    if not FULFILLMENT_API_URL:
        raise HTTPException(503, "Fulfillment API is not configured")
    client = FulfillmentClient(FULFILLMENT_API_URL, FULFILLMENT_API_KEY)
    async with async_session() as session:
        agg, previous_status = await commands.reconcile_delivery(
            session, redis_pool, reference, client,
        )
    return _after_change(background_tasks, agg, previous_status)


@app.post("/commands/transactions/{reference}/close")
async def cmd_close_transaction(
    reference: str,
    req: CloseTransactionRequest,
    background_tasks: BackgroundTasks,
):
    """管理者によるキャンセル / 返金"""
    async with async_session() as session:
        agg, previous_status = await commands.close_transaction(
            session, redis_pool, reference, req.status, req.reason,
        )
    return _after_change(background_tasks, agg, previous_status)


@app.post("/commands/api-keys")
async def cmd_issue_api_key(req: IssueApiKeyRequest):
    """API キー発行 (1時間あたり5件まで)。生のキーはこのレスポンスでのみ返す。"""
    decision = await key_limiter.check(req.user_id)
    if not decision.allowed:
        raise HTTPException(
            429,
            detail={
                "message": "Too many API keys generated, try again later",
                "reset_at": decision.reset_at,
            },
        )
    async with async_session() as session:
        record, raw_key = await credentials.issue_api_key(
            session, req.user_id, req.name, req.permissions, req.kind,
        )
    return {**record, "key": raw_key, "remaining": decision.remaining}


@app.post("/commands/api-keys/{key_id}/revoke")
async def cmd_revoke_api_key(key_id: str):
    async with async_session() as session:
        if not await credentials.revoke_api_key(session, key_id):
            raise HTTPException(404, "API key not found")
    return {"id": key_id, "is_active": False}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/transactions")
async def query_list_transactions(status: str | None = None, limit: int = Query(200, le=1000)):
    async with async_session() as session:
        return await queries.list_transactions(session, status, limit)


@app.get("/queries/transactions/export")
async def query_export_transactions(payment_status: list[str] | None = Query(None)):
    """CSV エクスポート用の行"""
    async with async_session() as session:
        return await queries.export_transactions(session, payment_status)


@app.get("/queries/transactions/{reference}")
async def query_get_transaction(reference: str):
    async with async_session() as session:
        transaction = await queries.get_transaction(session, reference)
        if not transaction:
            raise HTTPException(404, "Transaction not found")
        return transaction


@app.get("/queries/webhook-deliveries")
async def query_webhook_deliveries(failed_only: bool = False, limit: int = Query(100, le=1000)):
    """Webhook の送信結果 (管理画面で失敗を確認する)"""
    async with async_session() as session:
        return await queries.list_webhook_deliveries(session, failed_only, limit)


@app.get("/queries/phone-validation")
async def query_phone_validation(phone: str, network: str | None = None):
    return validate_phone_number_detailed(phone, network)


@app.get("/queries/api-keys")
async def query_api_keys(user_id: str):
    async with async_session() as session:
        return await credentials.list_api_keys(session, user_id)


# ── 外部連携 API (API キー認証) ─────────────────


async def require_api_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> dict:
    raw_key = None
    if authorization and authorization.lower().startswith("bearer "):
        raw_key = authorization[7:].strip()
    elif x_api_key:
        raw_key = x_api_key.strip()
    if not raw_key:
        raise HTTPException(401, "Missing API key")
    async with async_session() as session:
        return await credentials.authenticate_api_key(session, raw_key)


@app.get("/v1/transactions/{reference}")
async def api_get_transaction(reference: str, api_key: dict = Depends(require_api_key)):
    if not has_permissions(api_key["permissions_json"], ["transactions"]):
        raise HTTPException(403, "API key lacks the 'transactions' permission")
    async with async_session() as session:
        transaction = await queries.get_transaction(session, reference)
        if not transaction:
            raise HTTPException(404, "Transaction not found")
        return transaction


# ── Event Store (ステータス履歴) ─────────────────


@app.get("/events")
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str):
    """指定取引のステータス履歴"""
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
