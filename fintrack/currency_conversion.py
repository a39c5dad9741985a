from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
import time
from typing import Callable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from fintrack.settings import (
    DEFAULT_BASE_CURRENCY,
    DEFAULT_RATE_CACHE_TTL_SECONDS,
    get_base_currency,
    get_open_exchange_rates_app_id,
    get_rate_cache_ttl_seconds,
)

logger = logging.getLogger(__name__)

RATES_CACHE_KEY = "EXCHANGE_RATES:LATEST"
ONE = Decimal("1")

# Units of each currency per 1 USD.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "VND": Decimal("25000"),
    "EUR": Decimal("0.93"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("150"),
    "AUD": Decimal("1.52"),
}

SUPPORTED_CURRENCIES = tuple(sorted(DEFAULT_RATES))


class ServiceUnavailable(RuntimeError):
    """Raised when exchange rates cannot be obtained from the provider or the cache."""


class RateProvider(Protocol):
    def fetch_rates(self) -> Mapping[str, Decimal]:
        ...


class RateCache(Protocol):
    def get(self, key: str) -> Mapping[str, Decimal] | None:
        ...

    def set(self, key: str, rates: Mapping[str, Decimal], ttl_seconds: int) -> None:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX table.

    Rates are expressed as units of currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_rates(self) -> Mapping[str, Decimal]:
        return dict(self.rates)


@dataclass
class OpenExchangeRatesProvider:
    app_id: str
    base_url: str = "https://openexchangerates.org/api"
    timeout_seconds: float = 8

    def fetch_rates(self) -> Mapping[str, Decimal]:
        url = f"{self.base_url}/latest.json?app_id={self.app_id}"
        logger.info("Fetching latest exchange rates from Open Exchange Rates")
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise ServiceUnavailable("Exchange rate provider unavailable") from exc

        if payload.get("error"):
            raise ServiceUnavailable(
                f"Exchange rate provider error: {payload.get('description', 'unknown')}"
            )
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise ServiceUnavailable("Exchange rate response missing rates")

        return {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class InMemoryRateCache:
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, CachedRates] = field(default_factory=dict)

    def get(self, key: str) -> Mapping[str, Decimal] | None:
        cached = self._entries.get(key)
        if cached is None:
            return None
        if cached.expires_at <= self.clock():
            del self._entries[key]
            return None
        return cached.rates

    def set(self, key: str, rates: Mapping[str, Decimal], ttl_seconds: int) -> None:
        self._entries[key] = CachedRates(
            rates=dict(rates),
            expires_at=self.clock() + ttl_seconds,
        )


class CurrencyConverter:
    """Converts between the app's base currency and any supported currency."""

    def __init__(
        self,
        provider: RateProvider,
        cache: RateCache | None = None,
        base_currency: str = DEFAULT_BASE_CURRENCY,
        cache_ttl_seconds: int = DEFAULT_RATE_CACHE_TTL_SECONDS,
    ) -> None:
        self.provider = provider
        self.cache = cache if cache is not None else InMemoryRateCache()
        self.base_currency = normalize_currency(base_currency)
        self.cache_ttl_seconds = cache_ttl_seconds

    def rate_to_base(self, from_currency: str) -> Decimal:
        """Rate that turns one unit of ``from_currency`` into base currency."""
        normalized = normalize_currency(from_currency)
        if normalized == self.base_currency:
            return ONE
        rates = self._get_rates()
        return _lookup(rates, self.base_currency) / _lookup(rates, normalized)

    def rate_from_base_to_target(self, base: str, target: str) -> Decimal:
        """Rate that turns one unit of ``base`` into ``target``, for display."""
        normalized_base = normalize_currency(base)
        normalized_target = normalize_currency(target)
        if normalized_base == normalized_target:
            return ONE
        rates = self._get_rates()
        return _lookup(rates, normalized_target) / _lookup(rates, normalized_base)

    def convert_to_base(self, amount: Decimal | int | float | str, currency: str) -> Decimal:
        return coerce_amount(amount) * self.rate_to_base(currency)

    def convert_from_base(self, amount: Decimal | int | float | str, target: str) -> Decimal:
        return coerce_amount(amount) * self.rate_from_base_to_target(self.base_currency, target)

    def _get_rates(self) -> Mapping[str, Decimal]:
        cached = self.cache.get(RATES_CACHE_KEY)
        if cached is not None:
            logger.debug("Exchange rates cache hit")
            return cached

        try:
            rates = self.provider.fetch_rates()
        except ServiceUnavailable:
            logger.error("Exchange rates unavailable and no cached table present")
            raise
        self.cache.set(RATES_CACHE_KEY, rates, self.cache_ttl_seconds)
        logger.info("Exchange rates cached for %s seconds", self.cache_ttl_seconds)
        return rates


def build_converter_from_env(cache: RateCache | None = None) -> CurrencyConverter:
    app_id = get_open_exchange_rates_app_id()
    if app_id:
        provider: RateProvider = OpenExchangeRatesProvider(app_id=app_id)
    else:
        logger.warning("OPEN_EXCHANGE_RATES_APP_ID is not set; using static exchange rates")
        provider = StaticRateProvider()
    return CurrencyConverter(
        provider,
        cache=cache,
        base_currency=get_base_currency(),
        cache_ttl_seconds=get_rate_cache_ttl_seconds(),
    )


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _lookup(rates: Mapping[str, Decimal], currency: str) -> Decimal:
    try:
        rate = coerce_amount(rates[currency])
    except KeyError as exc:
        raise ValueError(f"Unsupported currency: {currency}") from exc
    if rate <= 0:
        raise ValueError(f"Invalid rate for currency: {currency}")
    return rate
