"""
Order Service: 取引集約 (Transaction Aggregate)

イベントをリプレイして取引の現在の状態を復元する。

apply_xxx メソッド : 各イベントを適用して状態を変更する
xxx_change メソッド: コマンドを検証し、追記すべきイベントデータを返す
                    (変化なしなら None、不正な遷移なら InvalidTransition)
"""

from datetime import datetime, timezone

from .events import DeliveryStatusChanged, PaymentStatusChanged, TransactionClosed
from .models import Transaction
from .status import (
    DELIVERY_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    STATUS_AFTER_DELIVERY,
    STATUS_AFTER_PAYMENT,
    STATUS_TRANSITIONS,
    DeliveryStatus,
    InvalidTransition,
    PaymentStatus,
    TransactionStatus,
    assert_transition,
    is_terminal,
)


class TransactionAggregate:
    """
    取引集約: イベントから現在の状態を再構築する。

    状態遷移は status.py の遷移表に従う。
    終端ステータス (completed / failed / refunded / cancelled) に達した後は変更不可。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.reference: str = ""
        self.type: str = ""
        self.product_id: str | None = None
        self.product_name: str = ""
        self.network: str | None = None
        self.amount: float = 0
        self.customer_phone: str | None = None
        self.customer_email: str | None = None
        self.is_bulk_order: bool = False
        self.phone_numbers: str | None = None
        self.status: str = "unknown"
        self.payment_status: str = PaymentStatus.PENDING.value
        self.delivery_status: str = DeliveryStatus.PENDING.value
        self.payment_reference: str | None = None
        self.failure_reason: str | None = None
        self.completed_at: str | None = None
        self.version: int = 0
        # 直近のコマンドがコミットしたリードモデル (変更なしなら None)
        self.snapshot: Transaction | None = None

    # ── イベント適用メソッド ──────────────────────────

    def apply_transaction_created(self, data: dict) -> None:
        self.id = data["transaction_id"]
        self.reference = data["reference"]
        self.type = data["type"]
        self.product_id = data.get("product_id")
        self.product_name = data["product_name"]
        self.network = data.get("network")
        self.amount = data["amount"]
        self.customer_phone = data.get("customer_phone")
        self.customer_email = data.get("customer_email")
        self.is_bulk_order = data.get("is_bulk_order", False)
        self.phone_numbers = data.get("phone_numbers")
        self.status = TransactionStatus.PENDING.value
        self.payment_status = PaymentStatus.PENDING.value
        self.delivery_status = DeliveryStatus.PENDING.value

    def apply_payment_status_changed(self, data: dict) -> None:
        self.payment_status = data["payment_status"]
        self.status = data["status"]
        if data.get("payment_reference"):
            self.payment_reference = data["payment_reference"]

    def apply_delivery_status_changed(self, data: dict) -> None:
        self.delivery_status = data["delivery_status"]
        self.status = data["status"]
        if data.get("failure_reason"):
            self.failure_reason = data["failure_reason"]
        if data.get("completed_at"):
            self.completed_at = data["completed_at"]

    def apply_transaction_closed(self, data: dict) -> None:
        self.status = data["status"]
        if data.get("reason"):
            self.failure_reason = data["reason"]

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "TransactionCreated": self.apply_transaction_created,
            "PaymentStatusChanged": self.apply_payment_status_changed,
            "DeliveryStatusChanged": self.apply_delivery_status_changed,
            "TransactionClosed": self.apply_transaction_closed,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "TransactionAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── コマンド検証 ─────────────────────────────────

    def _assert_open(self) -> None:
        if is_terminal(self.status):
            raise InvalidTransition(
                f"Transaction {self.reference} is already {self.status}"
            )

    def payment_change(
        self,
        payment_status: str,
        payment_reference: str | None = None,
    ) -> dict | None:
        """決済コールバックを検証する。同じ結果の再通知は None (冪等)。"""
        payment_status = PaymentStatus(payment_status).value
        if payment_status == self.payment_status:
            return None
        self._assert_open()
        assert_transition(PAYMENT_TRANSITIONS, self.payment_status, payment_status, "payment")

        new_status = STATUS_AFTER_PAYMENT[PaymentStatus(payment_status)].value
        assert_transition(STATUS_TRANSITIONS, self.status, new_status, "status")

        return PaymentStatusChanged(
            transaction_id=self.id,
            reference=self.reference,
            payment_status=payment_status,
            previous_payment_status=self.payment_status,
            status=new_status,
            previous_status=self.status,
            payment_reference=payment_reference,
            timestamp=datetime.now(timezone.utc),
        ).model_dump(mode="json")

    def delivery_change(
        self,
        delivery_status: str,
        reason: str | None = None,
    ) -> dict | None:
        """配信状況の更新を検証する。決済確定 (confirmed) 後のみ受け付ける。"""
        delivery_status = DeliveryStatus(delivery_status).value
        if delivery_status == self.delivery_status:
            return None
        self._assert_open()
        if self.status != TransactionStatus.CONFIRMED.value:
            raise InvalidTransition(
                f"Transaction {self.reference} is not paid yet (status={self.status})"
            )
        assert_transition(DELIVERY_TRANSITIONS, self.delivery_status, delivery_status, "delivery")

        now = datetime.now(timezone.utc)
        new_status = self.status
        completed_at = None
        derived = STATUS_AFTER_DELIVERY.get(DeliveryStatus(delivery_status))
        if derived is not None:
            new_status = derived.value
            assert_transition(STATUS_TRANSITIONS, self.status, new_status, "status")
            if derived == TransactionStatus.COMPLETED:
                completed_at = now

        return DeliveryStatusChanged(
            transaction_id=self.id,
            reference=self.reference,
            delivery_status=delivery_status,
            previous_delivery_status=self.delivery_status,
            status=new_status,
            previous_status=self.status,
            failure_reason=reason if delivery_status == DeliveryStatus.FAILED.value else None,
            completed_at=completed_at,
            timestamp=now,
        ).model_dump(mode="json")

    def close(self, status: str, reason: str = "") -> dict | None:
        """管理者によるキャンセル (未決済) / 返金 (決済済み)。"""
        status = TransactionStatus(status).value
        if status == self.status:
            return None
        if status not in (TransactionStatus.CANCELLED.value, TransactionStatus.REFUNDED.value):
            raise InvalidTransition(f"Cannot close a transaction as {status}")
        self._assert_open()
        assert_transition(STATUS_TRANSITIONS, self.status, status, "status")

        return TransactionClosed(
            transaction_id=self.id,
            reference=self.reference,
            status=status,
            previous_status=self.status,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        ).model_dump(mode="json")
