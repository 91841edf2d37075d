"""DexScreener price feed.

Free public endpoint, no auth, ~300 requests/minute. Prices are quoted in USD
from the most liquid pair on the token's chain.
"""

import logging
import math

import httpx

from accumulator.config import settings
from accumulator.engine.errors import PriceUnavailable
from accumulator.services.ports import PriceQuote, TokenRef
from accumulator.utils.clock import format_price

logger = logging.getLogger(__name__)


class DexScreenerClient:
    """PricePort backed by the DexScreener token endpoint."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.base_url = (base_url or settings.price_feed_url).rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def quote(self, token: TokenRef) -> PriceQuote:
        if not token.address:
            raise PriceUnavailable(f"No contract address for {token.symbol}; DexScreener needs one")

        pair = await self._best_pair(token)
        raw = pair.get("priceUsd")
        try:
            price = float(raw)
        except (TypeError, ValueError):
            price = float("nan")
        if not math.isfinite(price) or price <= 0:
            raise PriceUnavailable(f"Invalid price from DexScreener for {token}: {raw!r}")

        base_sym = (pair.get("baseToken") or {}).get("symbol", "?")
        quote_sym = (pair.get("quoteToken") or {}).get("symbol", "?")
        logger.debug(f"DexScreener price: ${format_price(price)} ({base_sym}/{quote_sym})")
        return PriceQuote(price=price, source="dexscreener")

    async def pair_info(self, token: TokenRef) -> dict:
        """Summary of the most liquid pair, shown by `cli status`."""
        pair = await self._best_pair(token)
        return {
            "price": _to_float(pair.get("priceUsd")),
            "price_native": _to_float(pair.get("priceNative")),
            "volume_24h": _to_float((pair.get("volume") or {}).get("h24")),
            "liquidity_usd": _to_float((pair.get("liquidity") or {}).get("usd")),
            "fdv": _to_float(pair.get("fdv")),
            "price_change_24h": _to_float((pair.get("priceChange") or {}).get("h24")),
            "base_symbol": (pair.get("baseToken") or {}).get("symbol"),
            "quote_symbol": (pair.get("quoteToken") or {}).get("symbol"),
            "pair_address": pair.get("pairAddress"),
        }

    async def _best_pair(self, token: TokenRef) -> dict:
        url = f"{self.base_url}/tokens/{token.address}"
        client = await self._get_client()
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise PriceUnavailable(f"DexScreener request failed for {token}: {e}") from e
        except ValueError as e:
            raise PriceUnavailable(f"DexScreener returned invalid JSON for {token}") from e

        pairs = data.get("pairs") or []
        if not pairs:
            raise PriceUnavailable(f"No pairs found for token {token.address}")

        pairs = [p for p in pairs if p.get("chainId") == token.chain]
        if not pairs:
            raise PriceUnavailable(f"No pairs found for token {token.address} on {token.chain}")

        # priceUsd is the price of the pair's base token, so prefer pairs where ours is the base
        address = token.address.lower()
        as_base = [p for p in pairs if (p.get("baseToken") or {}).get("address", "").lower() == address]
        candidates = as_base or pairs

        return max(candidates, key=lambda p: _to_float((p.get("liquidity") or {}).get("usd")))

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
