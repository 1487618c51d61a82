import asyncio
import logging
from typing import Optional

import requests

from common.retry import NOTIFY_RETRY_CONFIG, RetryConfig, retry_async
from common.schemas import Payment, PaymentResponse

logger = logging.getLogger(__name__)


class MerchantNotifier:
    """POSTs confirmed payments to the merchant's notification URL."""

    def __init__(self, url: str, timeout: float = 10.0, retry_config: RetryConfig = NOTIFY_RETRY_CONFIG,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.retry_config = retry_config
        self.session = session or requests.Session()

    def _post(self, body: str):
        response = self.session.post(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()

    async def _post_async(self, body: str):
        await asyncio.to_thread(self._post, body)

    async def notify(self, payment: Payment) -> bool:
        body = PaymentResponse.from_payment(payment).model_dump_json()
        try:
            await retry_async(self._post_async, self.retry_config, body)
        except requests.RequestException as e:
            logger.error(f"Merchant notification for {payment.account} failed: {e}")
            return False
        logger.info(f"Merchant notified of payment {payment.account}")
        return True
