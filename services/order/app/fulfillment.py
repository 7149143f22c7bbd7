"""
Order Service: データバンドル配信 API クライアント

外部のフルフィルメント API に取引の配信状況を問い合わせ、
こちらの DeliveryStatus に変換する。

プロバイダの応答:
    {"success": true,  "results": [{"phone": "...", "status": "ok"}, ...]}
    {"success": false, "error": "..."}

  success かつ全受取人が ok → delivered
  success だが一部未完了     → processing
  success=false              → failed
"""

import logging

import httpx

from .status import DeliveryStatus

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    pass


def delivery_status_from_result(result: dict) -> DeliveryStatus:
    if not result.get("success"):
        return DeliveryStatus.FAILED
    recipients = result.get("results") or []
    if not isinstance(recipients, list) or not all(isinstance(r, dict) for r in recipients):
        raise FulfillmentError(f"Unexpected fulfillment results: {recipients!r}")
    if recipients and all(r.get("status") == "ok" for r in recipients):
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.PROCESSING


class FulfillmentClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def get_delivery_status(self, reference: str) -> tuple[DeliveryStatus, dict]:
        """配信状況を取得する。(変換後のステータス, プロバイダの生応答) を返す。"""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.get(f"{self.base_url}/orders/{reference}", headers=headers)
                resp.raise_for_status()
                result = resp.json()
            except httpx.HTTPError as e:
                logger.error("Fulfillment status lookup failed for %s: %s", reference, e)
                raise FulfillmentError(str(e) or type(e).__name__) from e
            except ValueError as e:
                raise FulfillmentError(f"Fulfillment API returned non-JSON body: {e}") from e

        if not isinstance(result, dict):
            raise FulfillmentError(f"Unexpected fulfillment response: {result!r}")
        status = delivery_status_from_result(result)
        logger.info("Fulfillment status for %s: %s", reference, status.value)
        return status, result
