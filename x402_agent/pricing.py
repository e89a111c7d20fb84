"""
Pricing - exchange rate cache and native currency quotes.

The rate cache serves the last good USD/native rate without blocking and
refreshes it in the background, one refresh at a time. Quotes are computed
with Decimal and always rounded up so a client paying the quoted amount
never under-pays.
"""

import time
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, Context, ROUND_CEILING
from typing import Optional

import httpx

logger = logging.getLogger("Pricing")

WEI_PER_UNIT = Decimal(10) ** 18

# Division happens in this context so the intermediate quotient is never
# below the exact value.
_CEILING = Context(prec=50, rounding=ROUND_CEILING)


class ExchangeRateCache:
    """
    USD price of one native token, fetched from a CoinGecko style
    `simple/price` feed.

    get() never waits on the network once a value exists: a stale value
    triggers a background refresh and is returned as-is. Before the first
    successful fetch the caller gets None and decides on a fallback.
    """

    def __init__(
        self,
        feed_url,
        coin_id="avalanche-2",
        vs_currency="usd",
        refresh_seconds=60.0,
        timeout=5.0,
        http_client=None,
        clock=time.monotonic,
    ):
        self.feed_url = feed_url
        self.coin_id = coin_id
        self.vs_currency = vs_currency
        self.refresh_seconds = refresh_seconds
        self.timeout = timeout
        self._http = http_client
        self._clock = clock
        self._rate: Optional[float] = None
        self._fetched_at: Optional[float] = None
        self._refresh_lock = threading.Lock()

    @property
    def last_rate(self):
        return self._rate

    def is_stale(self):
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self.refresh_seconds

    def get(self):
        """Return the cached rate, kicking off a refresh if it is stale."""
        if self._rate is None:
            # Nothing cached yet: fetch inline once, bounded by the timeout.
            self.refresh()
        elif self.is_stale():
            self.refresh_in_background()
        return self._rate

    def refresh_in_background(self):
        if not self._refresh_lock.acquire(blocking=False):
            return False
        worker = threading.Thread(target=self._refresh_locked, name="rate-refresh", daemon=True)
        worker.start()
        return True

    def refresh(self):
        """Fetch synchronously unless another refresh is already running."""
        if not self._refresh_lock.acquire(blocking=False):
            return self._rate
        self._refresh_locked()
        return self._rate

    def _refresh_locked(self):
        try:
            rate = self._fetch()
            if rate is not None and rate > 0:
                self._rate = rate
                self._fetched_at = self._clock()
                logger.debug(f"💱 [Rate] {self.coin_id} = ${rate}")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"⚠️  [Rate] Feed unavailable, keeping last value: {e}")
        finally:
            self._refresh_lock.release()

    def _fetch(self):
        params = {"ids": self.coin_id, "vs_currencies": self.vs_currency}
        if self._http is not None:
            resp = self._http.get(self.feed_url, params=params, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(self.feed_url, params=params)
        resp.raise_for_status()
        return float(resp.json()[self.coin_id][self.vs_currency])


class StaticRate:
    """Fixed rate source, used for tests and offline development."""

    def __init__(self, rate):
        self.rate = rate

    def get(self):
        return self.rate


@dataclass(frozen=True)
class PaymentQuote:
    price_usd: Decimal
    exchange_rate: Decimal
    required_amount: Decimal
    decimals: int
    currency: str = "AVAX"

    @property
    def required_wei(self):
        return int(self.required_amount * WEI_PER_UNIT)

    @property
    def amount_str(self):
        return f"{self.required_amount:.{self.decimals}f}"

    def to_dict(self):
        return {
            "amount": self.amount_str,
            "amountWei": str(self.required_wei),
            "price": f"{self.amount_str} {self.currency}",
            "priceUsd": float(self.price_usd),
            "exchangeRate": float(self.exchange_rate),
        }


def round_up(amount, decimals):
    """Round a Decimal up to `decimals` places."""
    step = Decimal(1).scaleb(-decimals)
    return amount.quantize(step, rounding=ROUND_CEILING)


def quote_native_amount(price_usd, rate_usd, decimals=5, currency="AVAX"):
    """
    Convert a USD price to the native amount to pay at `rate_usd` per unit.

    >>> quote_native_amount(0.05, 40).amount_str
    '0.00125'
    """
    price = Decimal(str(price_usd))
    rate = Decimal(str(rate_usd))
    if rate <= 0:
        raise ValueError("exchange rate must be positive")
    if price < 0:
        raise ValueError("price must not be negative")
    raw = _CEILING.divide(price, rate)
    return PaymentQuote(
        price_usd=price,
        exchange_rate=rate,
        required_amount=round_up(raw, decimals),
        decimals=decimals,
        currency=currency,
    )


class PriceOracle:
    """Builds quotes from a rate source, falling back to a conservative rate."""

    def __init__(self, rate_source, fallback_rate=40.0, decimals=5, currency="AVAX"):
        self.rate_source = rate_source
        self.fallback_rate = fallback_rate
        self.decimals = decimals
        self.currency = currency

    def current_rate(self):
        try:
            rate = self.rate_source.get()
        except Exception as e:
            # Pricing fails open onto the fallback; verification stays strict.
            logger.warning(f"⚠️  [Rate] Source error, using fallback ${self.fallback_rate}: {e}")
            return self.fallback_rate
        if not rate or rate <= 0:
            return self.fallback_rate
        return rate

    def quote(self, price_usd):
        return quote_native_amount(price_usd, self.current_rate(), self.decimals, self.currency)
