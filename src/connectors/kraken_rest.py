from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional
import httpx
from src.config import settings
from src.core.logger import logger
from src.core.models import FetchResult

class PriceSourceError(Exception):
    """The ticker call as a whole failed; no prices are available this tick."""

class KrakenTickerClient:
    """Kraken spot public ticker. Only the last-traded price is used."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url or settings.KRAKEN_REST_URL
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.HTTP_TIMEOUT,
            headers={"User-Agent": f"{settings.APP_NAME}/1.0"},
        )

    async def fetch(self, pairs: Iterable[str]) -> FetchResult:
        """
        Get last-traded prices for all pairs in one call.
        Raises PriceSourceError if the request fails or Kraken reports errors.
        Pairs that are missing from the response are simply absent from the result.
        """
        pair_list = ",".join(pairs)
        try:
            response = await self.client.get("/0/public/Ticker", params={"pair": pair_list})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise PriceSourceError(f"Kraken API call failed: {e}") from e
        except ValueError as e:
            raise PriceSourceError(f"Kraken API returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise PriceSourceError(f"Kraken API returned unexpected payload: {payload!r}")

        errors = payload.get("error") or []
        if errors:
            raise PriceSourceError(f"Kraken API errors: {', '.join(errors)}")

        result = payload.get("result") or {}
        if not isinstance(result, dict):
            raise PriceSourceError(f"Kraken API returned unexpected result: {result!r}")
        return self._parse_result(result)

    @staticmethod
    def _parse_result(result: dict) -> FetchResult:
        fetched = FetchResult()
        for pair, data in result.items():
            if not isinstance(data, dict):
                fetched.errors[pair] = f"unexpected ticker entry {data!r}"
                continue
            # 'c' = last trade closed array [price, lot volume]
            last = data.get("c")
            if not isinstance(last, (list, tuple)):
                fetched.errors[pair] = f"unexpected last trade field {last!r}"
                continue
            if not last:
                fetched.errors[pair] = "no last trade in ticker data"
                continue
            try:
                price = Decimal(str(last[0]))
            except (InvalidOperation, TypeError):
                fetched.errors[pair] = f"unparseable price {last[0]!r}"
                continue
            if not price.is_finite():
                fetched.errors[pair] = f"unparseable price {last[0]!r}"
                continue
            fetched.prices[pair] = price
        return fetched

    async def close(self):
        await self.client.aclose()
        logger.info("Kraken ticker client closed")
