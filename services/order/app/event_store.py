"""
Order Service: イベントストア

取引に起きた変更 (作成・決済・配信・クローズ) をすべてイベントとして追記する。
集約の再構築と、管理画面でのステータス履歴表示に使う。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import transaction_events


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID | str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version で楽観的ロックを実現:
    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反 (IntegrityError) で失敗する → 競合を検知できる。
    """
    new_version = expected_version + 1
    await session.execute(
        insert(transaction_events).values(
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


async def load_events(
    session: AsyncSession,
    aggregate_id: UUID | str,
) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(transaction_events)
        .where(transaction_events.c.aggregate_id == str(aggregate_id))
        .order_by(transaction_events.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]


async def load_all_events(session: AsyncSession, limit: int = 500) -> list[dict]:
    """すべてのイベントを時系列順に返す。"""
    result = await session.execute(
        select(transaction_events)
        .order_by(transaction_events.c.created_at.asc(), transaction_events.c.version.asc())
        .limit(limit)
    )
    return [
        {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
