"""
Order Service: イベント定義

取引に起きた事実をイベントとして定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class TransactionCreated(BaseModel):
    """チェックアウトで取引が作成された"""
    transaction_id: str
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
    timestamp: datetime


class PaymentStatusChanged(BaseModel):
    """決済ゲートウェイから決済結果が届いた"""
    transaction_id: str
    reference: str
    payment_status: str
    previous_payment_status: str
    status: str
    previous_status: str
    payment_reference: str | None = None
    timestamp: datetime


class DeliveryStatusChanged(BaseModel):
    """フルフィルメント側の配信状況が変わった"""
    transaction_id: str
    reference: str
    delivery_status: str
    previous_delivery_status: str
    status: str
    previous_status: str
    failure_reason: str | None = None
    completed_at: datetime | None = None
    timestamp: datetime


class TransactionClosed(BaseModel):
    """管理者が取引をキャンセル/返金した"""
    transaction_id: str
    reference: str
    status: str
    previous_status: str
    reason: str = ""
    timestamp: datetime
