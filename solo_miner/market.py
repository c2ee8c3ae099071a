from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

log = logging.getLogger("solo_miner.market")

PRICE_URL = "https://api.coinbase.com/v2/prices/BTC-USD/spot"
TIP_HEIGHT_URL = "https://mempool.space/api/blocks/tip/height"


@dataclass(frozen=True)
class MarketData:
    price_usd: Optional[float] = None
    block_height: Optional[int] = None


def fetch_price(session: requests.Session, timeout: float = 5.0) -> Optional[float]:
    try:
        response = session.get(PRICE_URL, timeout=timeout)
        response.raise_for_status()
        return float(response.json()["data"]["amount"])
    except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
        log.debug("price fetch failed: %s", exc)
        return None


def fetch_block_height(session: requests.Session, timeout: float = 5.0) -> Optional[int]:
    try:
        response = session.get(TIP_HEIGHT_URL, timeout=timeout)
        response.raise_for_status()
        return int(response.text.strip())
    except (requests.RequestException, ValueError) as exc:
        log.debug("block height fetch failed: %s", exc)
        return None


def fetch_market(session: requests.Session, previous: MarketData = MarketData(), timeout: float = 5.0) -> MarketData:
    """Blocking refresh; fields that fail to load keep their previous value."""
    price = fetch_price(session, timeout)
    height = fetch_block_height(session, timeout)
    return MarketData(
        price_usd=price if price is not None else previous.price_usd,
        block_height=height if height is not None else previous.block_height,
    )


__all__ = ["MarketData", "fetch_price", "fetch_block_height", "fetch_market"]
