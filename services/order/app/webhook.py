"""
Order Service: 外部 Webhook 通知

取引ステータスの変化を、外部に設定された1つの URL へ JSON で通知する。

  - 2xx なら成功として即座に返す
  - 2xx 以外・ネットワークエラーはリトライ (1s, 2s, 4s ... の指数バックオフ)
  - タイムアウトだけはリトライせずに打ち切る
  - 失敗しても例外は投げず、結果レコード (WebhookResult) で返す

ペイロードの署名は共有シークレットによる HMAC-SHA256。
"""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import Transaction
from .status import WebhookEvent

logger = logging.getLogger(__name__)

USER_AGENT = "Resellers-Hub-Webhook/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"
WEBHOOK_TIMEOUT = 10.0
DEFAULT_RETRIES = 3


# ── ワイヤーフォーマット (camelCase) ──────────────


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookProduct(_WireModel):
    bundle_id: str
    bundle_name: str
    phone: str
    network: str


class WebhookOrder(_WireModel):
    id: str
    reference: str
    amount: float
    customer_email: str | None = None
    is_bulk_order: bool
    created_at: str
    completed_at: str | None = None
    previous_status: str | None = None
    current_status: str


class WebhookPayload(_WireModel):
    event: WebhookEvent
    reference: str
    status: str
    delivery_status: str
    timestamp: str
    order: WebhookOrder
    products: list[WebhookProduct]

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookResult(BaseModel):
    success: bool
    status_code: int | None = None
    attempt: int | None = None
    attempts: int | None = None
    error: str | None = None


# ── ペイロード生成 ───────────────────────────────


def _fallback_product(transaction: Transaction) -> WebhookProduct:
    return WebhookProduct(
        bundle_id=transaction.product_id or "",
        bundle_name=transaction.product_name,
        phone=transaction.customer_phone or "",
        network=transaction.network or "",
    )


def _bulk_products(transaction: Transaction) -> list[WebhookProduct]:
    """
    一括注文の phone_numbers (JSON) を受取人ごとの product に展開する。
    各要素の bundleId / bundleName があれば優先し、無ければ取引の値を使う。
    """
    entries = json.loads(transaction.phone_numbers or "")
    if not isinstance(entries, list) or not entries:
        raise ValueError("phone_numbers must be a non-empty JSON list")

    products = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"phone": entry}
        elif not isinstance(entry, dict):
            raise ValueError(f"Unexpected phone_numbers entry: {entry!r}")
        products.append(
            WebhookProduct(
                bundle_id=str(entry.get("bundleId") or transaction.product_id or ""),
                bundle_name=entry.get("bundleName") or transaction.product_name,
                phone=entry.get("phone") or transaction.customer_phone or "",
                network=transaction.network or "",
            )
        )
    return products


def build_webhook_payload(
    transaction: Transaction,
    event: WebhookEvent | str,
    previous_status: str | None = None,
) -> WebhookPayload:
    """取引スナップショットから Webhook ペイロードを組み立てる。"""
    if transaction.is_bulk_order:
        try:
            products = _bulk_products(transaction)
        except (ValueError, TypeError) as e:
            # 壊れた JSON でも通知自体は止めない
            logger.warning(
                "Error parsing phone numbers for %s, using fallback product: %s",
                transaction.reference, e,
            )
            products = [_fallback_product(transaction)]
    else:
        products = [_fallback_product(transaction)]

    return WebhookPayload(
        event=WebhookEvent(event),
        reference=transaction.reference,
        status=transaction.status,
        delivery_status=transaction.delivery_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        order=WebhookOrder(
            id=transaction.id,
            reference=transaction.reference,
            amount=float(transaction.amount),
            customer_email=transaction.customer_email or None,
            is_bulk_order=transaction.is_bulk_order,
            created_at=transaction.created_at.isoformat(),
            completed_at=transaction.completed_at.isoformat() if transaction.completed_at else None,
            previous_status=previous_status or None,
            current_status=transaction.status,
        ),
        products=products,
    )


# ── 署名 ─────────────────────────────────────────


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """受信側での検証用。"""
    return hmac.compare_digest(sign_payload(body, secret), signature)


# ── 送信 ─────────────────────────────────────────


async def send_webhook(
    webhook_url: str,
    payload: WebhookPayload | dict,
    retries: int = DEFAULT_RETRIES,
    *,
    secret: str = "",
    client: httpx.AsyncClient | None = None,
) -> WebhookResult:
    """
    Webhook を POST する。リトライ間の待機は asyncio.sleep なので
    他のリクエスト処理をブロックしない。
    """
    data = payload.to_wire() if isinstance(payload, WebhookPayload) else payload
    body = json.dumps(data, separators=(",", ":"), default=str).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: sign_payload(body, secret),
    }
    max_attempts = max(1, retries)

    last_error: str | None = None
    last_status: int | None = None
    attempts = 0

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT)

    try:
        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            logger.info(
                "Attempting to send webhook (%d/%d) to %s", attempt, max_attempts, webhook_url
            )
            try:
                resp = await client.post(
                    webhook_url, content=body, headers=headers, timeout=WEBHOOK_TIMEOUT
                )
            except httpx.TimeoutException:
                last_error = f"Request timed out after {WEBHOOK_TIMEOUT:g} seconds"
                logger.error("Webhook to %s timed out, giving up", webhook_url)
                break
            except httpx.InvalidURL as e:
                last_error = f"Invalid webhook URL: {e}"
                logger.error("Invalid webhook URL %s: %s", webhook_url, e)
                break
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.error(
                    "Error sending webhook (attempt %d/%d): %s", attempt, max_attempts, last_error
                )
            except RuntimeError as e:
                # 閉じたクライアントは再試行しても使えない
                last_error = str(e) or type(e).__name__
                logger.error("Webhook client unusable for %s: %s", webhook_url, last_error)
                break
            else:
                if resp.is_success:
                    logger.info("Successfully sent webhook to %s", webhook_url)
                    return WebhookResult(success=True, status_code=resp.status_code, attempt=attempt)

                last_status = resp.status_code
                last_error = f"HTTP {resp.status_code}: {resp.text[:500] or 'No response body'}"
                logger.warning("Webhook failed with status %d", resp.status_code)

            if attempt < max_attempts:
                delay = 2 ** (attempt - 1)
                logger.info("Waiting %ds before retry...", delay)
                await asyncio.sleep(delay)
    finally:
        if owns_client:
            await client.aclose()

    logger.error(
        "Failed to send webhook after %d attempts: %s", attempts, last_error
    )
    return WebhookResult(
        success=False,
        status_code=last_status,
        attempts=attempts,
        error=last_error or "Unknown error",
    )
