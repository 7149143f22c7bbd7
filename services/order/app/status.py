"""
Order Service: 取引ステータス定義

1件の取引は 3 つの独立した軸を持つ:
  status          : 取引全体のライフサイクル
  payment_status  : 決済の軸 (決済ゲートウェイのコールバックで更新)
  delivery_status : 配信の軸 (フルフィルメント API のコールバック/ポーリングで更新)

各軸ごとに遷移表を持ち、status は決済軸と配信軸から導出する。

    status:
        PENDING ──(paid)──────▶ CONFIRMED ──(delivered)──▶ COMPLETED
           │                        │
           ├──(payment failed)──▶ FAILED ◀──(delivery failed)
           └──(admin)──▶ CANCELLED  └──(admin)──▶ REFUNDED
"""

from enum import Enum


class InvalidTransition(Exception):
    pass


class ProductType(str, Enum):
    DATA_BUNDLE = "data_bundle"
    RESULT_CHECKER = "result_checker"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_UPDATED = "order.status_updated"


TERMINAL_STATUSES = {
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
    TransactionStatus.CANCELLED,
}

STATUS_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.CONFIRMED: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
    },
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.REFUNDED: set(),
    TransactionStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: set(),
    PaymentStatus.FAILED: set(),
}

DELIVERY_TRANSITIONS = {
    DeliveryStatus.PENDING: {
        DeliveryStatus.PROCESSING,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.FAILED,
    },
    DeliveryStatus.PROCESSING: {
        DeliveryStatus.PENDING,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.FAILED,
    },
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.FAILED: set(),
}

# 決済結果 → 取引ステータス
STATUS_AFTER_PAYMENT = {
    PaymentStatus.PAID: TransactionStatus.CONFIRMED,
    PaymentStatus.FAILED: TransactionStatus.FAILED,
}

# 配信結果 → 取引ステータス (PENDING / PROCESSING は status を変えない)
STATUS_AFTER_DELIVERY = {
    DeliveryStatus.DELIVERED: TransactionStatus.COMPLETED,
    DeliveryStatus.FAILED: TransactionStatus.FAILED,
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def assert_transition(table: dict, old: str, new: str, axis: str) -> None:
    """遷移表に無い遷移なら InvalidTransition を送出する。"""
    # str 継承の Enum は生の文字列と同じハッシュを持つので、そのまま引ける
    if new not in table.get(old, set()):
        raise InvalidTransition(f"Illegal {axis} transition: {old} -> {new}")
