"""
Market Data Provider (DEXtools)

Fetches price, 24h volume, liquidity and market cap for a token address.
No retries here: a failed fetch is reported as DataUnavailable and the
monitor loop simply tries again next sweep.
"""

import os
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import DataUnavailable
from core.interfaces import MarketDataProvider
from core.models import MarketSnapshot

logger = logging.getLogger(__name__)

DEXTOOLS_BASE = "https://api.dextools.io/v1"


def _parse_decimal(raw: Any) -> Optional[Decimal]:
    """Parse a numeric field; missing, non-numeric or negative values become None."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


class DexToolsProvider(MarketDataProvider):
    """
    DEXtools token endpoint client.

    Response shape: {"data": {"price", "volume24h", "liquidity", "marketCap", ...}}
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEXTOOLS_BASE,
        chain: str = "ether",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.chain = chain
        self.timeout = timeout
        self._session = session or requests.Session()
        if not api_key:
            logger.warning("DexToolsProvider created without API key; requests will likely be rejected")

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "DexToolsProvider":
        raw_config = raw_config or {}
        env_key = raw_config.get("api_key_env", "DEXTOOLS_API_KEY")
        return cls(
            api_key=os.getenv(env_key),
            base_url=raw_config.get("base_url", DEXTOOLS_BASE),
            chain=raw_config.get("chain", "ether"),
            timeout=float(raw_config.get("timeout_seconds", 10.0)),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def fetch(self, asset: str) -> MarketSnapshot:
        url = f"{self.base_url}/token"
        try:
            response = self._session.get(
                url,
                params={"chain": self.chain, "address": asset},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests_exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            logger.warning(f"DEXtools HTTP {status} for {asset}")
            raise DataUnavailable(f"dextools:{asset}", e) from e
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            logger.warning(f"DEXtools network error for {asset}: {e}")
            raise DataUnavailable(f"dextools:{asset}", e) from e
        except (requests_exceptions.RequestException, ValueError) as e:
            logger.warning(f"DEXtools request failed for {asset}: {e}")
            raise DataUnavailable(f"dextools:{asset}", e) from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            logger.warning(f"DEXtools response for {asset} has no data object")
            raise DataUnavailable(f"dextools:{asset}")

        return MarketSnapshot(
            asset=asset,
            price=_parse_decimal(data.get("price")),
            volume=_parse_decimal(data.get("volume24h")),
            market_cap=_parse_decimal(data.get("marketCap")),
            liquidity=_parse_decimal(data.get("liquidity")),
            timestamp=datetime.now(timezone.utc),
        )
