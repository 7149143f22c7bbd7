"""
Order Service: リードモデルのスナップショット
"""

from datetime import datetime

from pydantic import BaseModel


class Transaction(BaseModel):
    """transactions テーブルの1行。Webhook ペイロードの元データにもなる。"""
    id: str
    reference: str
    type: str
    product_id: str | None = None
    product_name: str
    network: str | None = None
    amount: float
    customer_phone: str | None = None
    customer_email: str | None = None
    is_bulk_order: bool = False
    phone_numbers: str | None = None
    status: str
    payment_status: str
    delivery_status: str
    payment_reference: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    completed_at: datetime | None = None
