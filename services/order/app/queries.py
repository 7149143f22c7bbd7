"""
Order Service: クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル (transactions テーブル) から行う。
"""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import transactions, webhook_deliveries
from .models import Transaction


def _to_transaction(row) -> Transaction:
    return Transaction(
        id=row.id,
        reference=row.reference,
        type=row.type,
        product_id=row.product_id,
        product_name=row.product_name,
        network=row.network,
        amount=float(row.amount),
        customer_phone=row.customer_phone,
        customer_email=row.customer_email,
        is_bulk_order=bool(row.is_bulk_order),
        phone_numbers=row.phone_numbers,
        status=row.status,
        payment_status=row.payment_status,
        delivery_status=row.delivery_status,
        payment_reference=row.payment_reference,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


async def get_transaction(session: AsyncSession, reference: str) -> Transaction | None:
    """reference (外部公開 ID) で取引を取得する。"""
    result = await session.execute(
        select(transactions).where(transactions.c.reference == reference)
    )
    row = result.fetchone()
    return _to_transaction(row) if row else None


async def get_transaction_by_id(session: AsyncSession, transaction_id: str) -> Transaction | None:
    result = await session.execute(
        select(transactions).where(transactions.c.id == transaction_id)
    )
    row = result.fetchone()
    return _to_transaction(row) if row else None


async def list_transactions(
    session: AsyncSession,
    status: str | None = None,
    limit: int = 200,
) -> list[Transaction]:
    stmt = select(transactions).order_by(transactions.c.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(transactions.c.status == status)
    result = await session.execute(stmt)
    return [_to_transaction(row) for row in result.fetchall()]


def _recipients(phone_numbers: str | None) -> str:
    if not phone_numbers:
        return ""
    try:
        entries = json.loads(phone_numbers)
    except ValueError:
        return ""
    if not isinstance(entries, list):
        return ""
    phones = [e.get("phone", "") if isinstance(e, dict) else str(e) for e in entries]
    return "; ".join(p for p in phones if p)


async def export_transactions(
    session: AsyncSession,
    payment_statuses: list[str] | None = None,
) -> list[dict]:
    """CSV エクスポート用のフラットな行を返す。"""
    stmt = select(transactions).order_by(transactions.c.created_at.desc())
    if payment_statuses:
        stmt = stmt.where(transactions.c.payment_status.in_(payment_statuses))
    result = await session.execute(stmt)
    return [
        {
            "reference": row.reference,
            "product_name": row.product_name,
            "network": row.network or "",
            "amount": float(row.amount),
            "customer_phone": row.customer_phone or "",
            "customer_email": row.customer_email or "",
            "status": row.status,
            "payment_status": row.payment_status,
            "delivery_status": row.delivery_status,
            "created_at": row.created_at.isoformat(),
            "completed_at": row.completed_at.isoformat() if row.completed_at else "",
            "phone_numbers": _recipients(row.phone_numbers),
            "is_bulk_order": "Yes" if row.is_bulk_order else "No",
        }
        for row in result.fetchall()
    ]


async def list_webhook_deliveries(
    session: AsyncSession,
    failed_only: bool = False,
    limit: int = 100,
) -> list[dict]:
    """Webhook の送信結果 (管理画面用)。"""
    stmt = (
        select(webhook_deliveries)
        .order_by(webhook_deliveries.c.created_at.desc(), webhook_deliveries.c.id.desc())
        .limit(limit)
    )
    if failed_only:
        stmt = stmt.where(webhook_deliveries.c.success.is_(False))
    result = await session.execute(stmt)
    return [
        {
            "id": row.id,
            "transaction_id": row.transaction_id,
            "reference": row.reference,
            "event": row.event,
            "url": row.url,
            "success": bool(row.success),
            "status_code": row.status_code,
            "attempts": row.attempts,
            "error": row.error,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
