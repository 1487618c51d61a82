from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from common.error_handling import UpstreamUnavailableError


class PriceOracle:
    """Price of one native unit in a fiat currency, from a CoinGecko-style API."""

    def __init__(self, api_url: str, coin_id: str = "nano", timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.coin_id = coin_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_rate(self, currency: str) -> Decimal:
        code = currency.lower()
        try:
            response = self.session.get(
                f"{self.api_url}/simple/price",
                params={"ids": self.coin_id, "vs_currencies": code},
                timeout=self.timeout,
            )
            response.raise_for_status()
            # parse_float keeps full precision
            data = response.json(parse_float=Decimal)
        except (requests.RequestException, ValueError) as e:
            raise UpstreamUnavailableError(f"price lookup for {currency} failed", original_error=e)

        try:
            rate = Decimal(data[self.coin_id][code])
        except (KeyError, TypeError, InvalidOperation):
            raise UpstreamUnavailableError(f"no price available for {currency.upper()}")
        if rate <= 0:
            raise UpstreamUnavailableError(f"invalid price {rate} for {currency.upper()}")
        return rate
