"""
Order Service: テーブル定義

transactions        : 取引のリードモデル (現在の状態)
transaction_events  : 取引のイベントストア (追記のみ)
webhook_deliveries  : Webhook 送信結果 (管理画面での失敗確認用)
api_keys            : 外部連携用 API キー (ハッシュのみ保存)
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("reference", Text, nullable=False, unique=True),
    Column("type", Text, nullable=False),
    Column("product_id", String(36)),
    Column("product_name", Text, nullable=False),
    Column("network", Text),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("customer_phone", Text),
    Column("customer_email", Text),
    Column("is_bulk_order", Boolean, nullable=False, default=False),
    # 一括注文のみ: [{"phone": ..., "bundleId": ..., "bundleName": ...}] の JSON 文字列
    Column("phone_numbers", Text),
    Column("status", Text, nullable=False, default="pending"),
    Column("payment_status", Text, nullable=False, default="pending"),
    Column("delivery_status", Text, nullable=False, default="pending"),
    Column("payment_reference", Text),
    Column("failure_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Index("transactions_status_idx", "status"),
    Index("transactions_created_at_idx", "created_at"),
)

transaction_events = Table(
    "transaction_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # 楽観的ロック: 同じ集約の同じバージョンは1件しか書けない
    UniqueConstraint("aggregate_id", "version", name="transaction_events_version_uq"),
)

webhook_deliveries = Table(
    "webhook_deliveries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("transaction_id", String(36), nullable=False),
    Column("reference", Text, nullable=False),
    Column("event", String(50), nullable=False),
    Column("url", Text, nullable=False),
    Column("success", Boolean, nullable=False),
    Column("status_code", Integer),
    Column("attempts", Integer, nullable=False),
    Column("error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("webhook_deliveries_success_idx", "success"),
)

api_keys = Table(
    "api_keys",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),
    Column("key_preview", Text, nullable=False),
    Column("permissions", Text, nullable=False, default="{}"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_used", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("api_keys_user_idx", "user_id"),
)


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルだけを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
