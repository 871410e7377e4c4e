"""WaafiPay API client for direct mobile-wallet payments.

WaafiPay charges in two steps against the same endpoint:
``API_PREAUTHORIZE`` reserves the amount on the payer's wallet and returns a
``transactionId``; ``API_PREAUTHORIZE_COMMIT`` captures it. A
``responseCode`` of ``"2001"`` means success for both calls.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from kitab.billing.errors import ProviderError

logger = logging.getLogger(__name__)

SUCCESS_CODE = "2001"


@dataclass(frozen=True)
class WaafiPayCharge:
    """A committed WaafiPay payment."""

    transaction_id: str
    amount: str
    currency: str


class WaafiPayGateway:
    """WaafiPay preauthorize/commit client.

    Args:
        api_url: WaafiPay ASM endpoint.
        merchant_uid / api_user_id / api_key: merchant credentials.
        http_client: Optional shared ``httpx.AsyncClient`` (tests pass one
            backed by ``httpx.MockTransport``).
    """

    provider = "wafipay"

    def __init__(
        self,
        *,
        api_url: str,
        merchant_uid: str,
        api_user_id: str,
        api_key: str,
        payment_method: str = "MWALLET_ACCOUNT",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.merchant_uid = merchant_uid
        self.api_user_id = api_user_id
        self.api_key = api_key
        self.payment_method = payment_method
        self.timeout = timeout
        self._http_client = http_client

    def _envelope(self, service_name: str, service_params: dict) -> dict:
        return {
            "schemaVersion": "1.0",
            "requestId": uuid.uuid4().hex,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channelName": "WEB",
            "serviceName": service_name,
            "serviceParams": {
                "merchantUid": self.merchant_uid,
                "apiUserId": self.api_user_id,
                "apiKey": self.api_key,
                "paymentMethod": self.payment_method,
                **service_params,
            },
        }

    async def _post(self, payload: dict) -> dict:
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.api_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.api_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("WaafiPay %s request failed: %s", payload["serviceName"], e)
            raise ProviderError(f"WaafiPay request failed: {e}") from e

    async def preauthorize(self, account_no: str, amount: str, currency: str, description: str) -> str:
        """Reserve ``amount`` on the payer's wallet.

        Returns:
            The WaafiPay ``transactionId`` to commit.

        Raises:
            ProviderError: If WaafiPay declines or omits the transaction ID.
        """
        payload = self._envelope(
            "API_PREAUTHORIZE",
            {
                "payerInfo": {"accountNo": account_no},
                "transactionInfo": {
                    "referenceId": f"RF{uuid.uuid4().hex[:12].upper()}",
                    "invoiceId": f"INV{uuid.uuid4().hex[:12].upper()}",
                    "amount": amount,
                    "currency": currency,
                    "description": description,
                },
            },
        )
        result = await self._post(payload)
        if result.get("responseCode") != SUCCESS_CODE:
            logger.warning(
                "WaafiPay preauthorization declined: code=%s msg=%s",
                result.get("responseCode"),
                result.get("responseMsg"),
            )
            raise ProviderError(f"Preauthorization declined: {result.get('responseMsg') or result.get('responseCode')}")

        transaction_id = (result.get("params") or {}).get("transactionId")
        if not transaction_id:
            raise ProviderError("Preauthorization response is missing transactionId")
        logger.info("WaafiPay preauthorized transaction %s", transaction_id)
        return transaction_id

    async def commit(self, transaction_id: str) -> None:
        """Capture a preauthorized transaction."""
        payload = self._envelope(
            "API_PREAUTHORIZE_COMMIT",
            {"transactionId": transaction_id, "description": "PREAUTH Committed"},
        )
        result = await self._post(payload)
        if result.get("responseCode") != SUCCESS_CODE:
            logger.warning(
                "WaafiPay commit declined for %s: code=%s msg=%s",
                transaction_id,
                result.get("responseCode"),
                result.get("responseMsg"),
            )
            raise ProviderError(f"Commit declined: {result.get('responseMsg') or result.get('responseCode')}")
        logger.info("WaafiPay committed transaction %s", transaction_id)

    async def charge(self, account_no: str, amount: str, currency: str) -> WaafiPayCharge:
        """Preauthorize then commit a subscription payment."""
        transaction_id = await self.preauthorize(
            account_no, amount, currency, description="Kitab subscription"
        )
        await self.commit(transaction_id)
        return WaafiPayCharge(transaction_id=transaction_id, amount=amount, currency=currency)
