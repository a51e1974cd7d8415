"""
Instrument logo lookup.
"""

import logging
from typing import Optional

import requests

from trendwatch.database.models import normalize_symbol

logger = logging.getLogger(__name__)


class LogoResolver:
    """Checks whether the logo service has an image for a symbol."""

    def __init__(
        self,
        base_url: str = "https://api.elbstream.com/logos/symbol",
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def resolve(self, symbol: str) -> Optional[str]:
        """
        Return the logo URL when it exists.

        A HEAD request is enough to check existence. Failures only mean the
        logo stays unknown until the next refresh.
        """
        url = f"{self.base_url}/{normalize_symbol(symbol)}"
        try:
            response = requests.head(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch logo for {symbol}: {e}")
            return None

        if response.ok:
            logger.debug(f"Fetched logo for {symbol}")
            return url

        logger.debug(f"No logo available for {symbol} ({response.status_code})")
        return None
