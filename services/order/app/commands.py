"""
Order Service: コマンドハンドラ (CQRS の Write 側)

取引の状態を変更する操作。各コマンドは

1. イベントストアから集約を再構築して変更を検証
2. イベントをストアに追記
3. リードモデル (transactions) を更新してコミット
4. Redis Pub/Sub でイベントを発行（Redis 設定時のみ）

の順に処理する。外部 Webhook への通知はコミット後に notify_subscriber で行い、
通知の失敗が状態変更を巻き戻すことはない。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import httpx
import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import event_store, queries
from .aggregate import TransactionAggregate
from .db import transactions, webhook_deliveries
from .events import TransactionCreated
from .fulfillment import FulfillmentClient
from .models import Transaction
from .network import (
    is_valid_phone_length,
    normalize_phone_number,
    validate_phone_number_detailed,
)
from .status import DeliveryStatus, ProductType, WebhookEvent
from .webhook import DEFAULT_RETRIES, WebhookResult, build_webhook_payload, send_webhook

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "transaction_events"
AGGREGATE_TYPE = "Transaction"


class TransactionNotFound(LookupError):
    pass


class DuplicateReference(Exception):
    pass


class ConcurrentUpdate(Exception):
    pass


class InvalidOrder(ValueError):
    pass


async def _publish(redis: aioredis.Redis | None, event_type: str, data: dict) -> None:
    if redis is None:
        return
    await redis.publish(EVENTS_CHANNEL, json.dumps({
        "event_type": event_type,
        "data": data,
    }, default=str))


def generate_reference() -> str:
    return f"RH-{uuid4().hex[:16].upper()}"


def _validate_recipient(
    phone: str,
    product_type: str,
    network: str | None,
    validate_prefixes: bool,
) -> str:
    """受取人の番号を検証し、正規化した番号を返す。"""
    if product_type == ProductType.DATA_BUNDLE.value and network and validate_prefixes:
        result = validate_phone_number_detailed(phone, network)
        if not result.is_valid:
            raise InvalidOrder(result.error)
        return result.normalized

    if not is_valid_phone_length(phone):
        raise InvalidOrder("Phone number must be exactly 10 digits")
    return normalize_phone_number(phone)


async def create_transaction(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    *,
    product_type: str,
    product_name: str,
    amount: float,
    product_id: str | None = None,
    network: str | None = None,
    customer_phone: str | None = None,
    customer_email: str | None = None,
    phone_numbers: list[dict] | None = None,
    reference: str | None = None,
    validate_prefixes: bool = True,
) -> TransactionAggregate:
    """
    取引作成コマンド (チェックアウト開始時)

    単一注文は customer_phone のみ、一括注文は phone_numbers のみを持つ。
    """
    product_type = ProductType(product_type).value
    if amount <= 0:
        raise InvalidOrder("Amount must be greater than zero")

    is_bulk_order = phone_numbers is not None
    serialized_phones = None
    if is_bulk_order:
        if customer_phone:
            raise InvalidOrder("Bulk orders carry phone_numbers instead of customer_phone")
        if not phone_numbers:
            raise InvalidOrder("Bulk orders need at least one phone number")
        entries = []
        for item in phone_numbers:
            if not item.get("phone"):
                raise InvalidOrder("Every bulk entry needs a phone number")
            entry = dict(item)
            entry["phone"] = _validate_recipient(item["phone"], product_type, network, validate_prefixes)
            entries.append(entry)
        serialized_phones = json.dumps(entries)
    else:
        if not customer_phone:
            raise InvalidOrder("customer_phone is required for single orders")
        customer_phone = _validate_recipient(customer_phone, product_type, network, validate_prefixes)

    reference = reference or generate_reference()
    existing = await session.execute(
        select(transactions.c.id).where(transactions.c.reference == reference)
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateReference(reference)

    now = datetime.now(timezone.utc)
    transaction_id = str(uuid4())
    event_data = TransactionCreated(
        transaction_id=transaction_id,
        reference=reference,
        type=product_type,
        product_id=product_id,
        product_name=product_name,
        network=network,
        amount=amount,
        customer_phone=customer_phone,
        customer_email=customer_email,
        is_bulk_order=is_bulk_order,
        phone_numbers=serialized_phones,
        timestamp=now,
    ).model_dump(mode="json")

    try:
        # 1. イベントストアに追記
        version = await event_store.append_event(
            session, transaction_id, AGGREGATE_TYPE, "TransactionCreated", event_data, 0
        )

        # 2. リードモデルを作成
        await session.execute(
            insert(transactions).values(
                id=transaction_id,
                reference=reference,
                type=product_type,
                product_id=product_id,
                product_name=product_name,
                network=network,
                amount=amount,
                customer_phone=customer_phone,
                customer_email=customer_email,
                is_bulk_order=is_bulk_order,
                phone_numbers=serialized_phones,
                status="pending",
                payment_status="pending",
                delivery_status="pending",
                created_at=now,
                updated_at=now,
            )
        )
        snapshot = await queries.get_transaction_by_id(session, transaction_id)
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateReference(reference) from e

    # 3. Redis Pub/Sub でイベントを発行
    await _publish(redis, "TransactionCreated", event_data)
    logger.info("Created transaction %s (%s)", reference, product_type)

    agg = TransactionAggregate()
    agg.apply_transaction_created(event_data)
    agg.version = version
    agg.snapshot = snapshot
    return agg


async def _load(session: AsyncSession, reference: str) -> TransactionAggregate:
    result = await session.execute(
        select(transactions.c.id).where(transactions.c.reference == reference)
    )
    transaction_id = result.scalar_one_or_none()
    if transaction_id is None:
        raise TransactionNotFound(reference)
    events = await event_store.load_events(session, transaction_id)
    return TransactionAggregate.from_events(events)


async def _apply(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: TransactionAggregate,
    event_type: str,
    event_data: dict,
    values: dict,
) -> None:
    """イベント追記 + リードモデル更新 + コミット + 発行。"""
    try:
        version = await event_store.append_event(
            session, agg.id, AGGREGATE_TYPE, event_type, event_data, agg.version
        )
        await session.execute(
            update(transactions)
            .where(transactions.c.id == agg.id)
            .values(**values, updated_at=datetime.now(timezone.utc))
        )
        # コミット前に読むので、この変更時点の行になる
        snapshot = await queries.get_transaction_by_id(session, agg.id)
        await session.commit()
    except IntegrityError as e:
        # 同じバージョンが先に書かれた = 同時更新
        await session.rollback()
        raise ConcurrentUpdate(agg.reference) from e

    await _publish(redis, event_type, event_data)

    agg.apply_event(event_type, event_data)
    agg.version = version
    agg.snapshot = snapshot


async def record_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reference: str,
    payment_status: str,
    payment_reference: str | None = None,
) -> tuple[TransactionAggregate, str | None]:
    """
    決済コールバックコマンド

    reference を冪等キーとして扱い、同じ結果の再通知は何もしない。
    戻り値の2番目は変更前の status (変更なしなら None)。
    """
    agg = await _load(session, reference)
    previous_status = agg.status
    event_data = agg.payment_change(payment_status, payment_reference)
    if event_data is None:
        return agg, None

    values = {
        "payment_status": event_data["payment_status"],
        "status": event_data["status"],
    }
    if payment_reference:
        values["payment_reference"] = payment_reference

    await _apply(session, redis, agg, "PaymentStatusChanged", event_data, values)
    logger.info("Payment %s for %s", event_data["payment_status"], reference)
    return agg, previous_status


async def update_delivery_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reference: str,
    delivery_status: str,
    reason: str | None = None,
) -> tuple[TransactionAggregate, str | None]:
    """配信状況更新コマンド (フルフィルメントのコールバック / 管理者の手動更新)"""
    agg = await _load(session, reference)
    previous_status = agg.status
    event_data = agg.delivery_change(delivery_status, reason)
    if event_data is None:
        return agg, None

    values = {
        "delivery_status": event_data["delivery_status"],
        "status": event_data["status"],
    }
    if event_data.get("failure_reason"):
        values["failure_reason"] = event_data["failure_reason"]
    if event_data.get("completed_at"):
        values["completed_at"] = datetime.fromisoformat(event_data["completed_at"])

    await _apply(session, redis, agg, "DeliveryStatusChanged", event_data, values)
    logger.info("Delivery %s for %s", event_data["delivery_status"], reference)
    return agg, previous_status


async def reconcile_delivery(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reference: str,
    client: FulfillmentClient,
) -> tuple[TransactionAggregate, str | None]:
    """フルフィルメント API をポーリングし、報告された配信状況を反映する。"""
    await _load(session, reference)
    delivery_status, result = await client.get_delivery_status(reference)
    reason = None
    if delivery_status == DeliveryStatus.FAILED:
        reason = result.get("error") or "Provider fulfillment failed"
    return await update_delivery_status(session, redis, reference, delivery_status.value, reason)


async def close_transaction(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reference: str,
    status: str,
    reason: str = "",
) -> tuple[TransactionAggregate, str | None]:
    """管理者によるキャンセル / 返金コマンド"""
    agg = await _load(session, reference)
    previous_status = agg.status
    event_data = agg.close(status, reason)
    if event_data is None:
        return agg, None

    values = {"status": event_data["status"]}
    if reason:
        values["failure_reason"] = reason

    await _apply(session, redis, agg, "TransactionClosed", event_data, values)
    logger.info("Transaction %s closed as %s", reference, event_data["status"])
    return agg, previous_status


async def notify_subscriber(
    session_factory: sessionmaker,
    transaction: Transaction,
    event: WebhookEvent | str,
    webhook_url: str,
    secret: str = "",
    previous_status: str | None = None,
    retries: int = DEFAULT_RETRIES,
    client: httpx.AsyncClient | None = None,
) -> WebhookResult | None:
    """
    コミット時点のスナップショットを Webhook で通知し、結果を webhook_deliveries に記録する。
    送信時に取引を読み直さないので、後続の変更がペイロードに混ざることはない。
    バックグラウンドタスクとして実行されるため例外は送出しない。
    """
    try:
        payload = build_webhook_payload(transaction, event, previous_status)
        result = await send_webhook(webhook_url, payload, retries, secret=secret, client=client)

        async with session_factory() as session:
            await session.execute(
                insert(webhook_deliveries).values(
                    transaction_id=transaction.id,
                    reference=transaction.reference,
                    event=payload.event.value,
                    url=webhook_url,
                    success=result.success,
                    status_code=result.status_code,
                    attempts=result.attempt or result.attempts or 0,
                    error=result.error,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

        if not result.success:
            logger.warning("Webhook for %s failed: %s", transaction.reference, result.error)
        return result
    except Exception:
        logger.exception("Failed to notify webhook subscriber for %s", transaction.reference)
        return None
