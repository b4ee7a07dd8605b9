"""
docledger_services.currency -- Exchange rates and currency conversion.

Responsibility:
    Quote a rate for (from, to, date), convert amounts and whole
    classifications into the company's base currency, and compute
    realized exchange differences between booking and payment.

Architecture position:
    Services -- reads and writes the ``exchange_rates`` cache through the
    caller's session and calls ``RateProvider`` ports.

Invariants enforced:
    - A quote comes from exactly one source: the cache, one provider, or
      the static fallback table.
    - Candidate dates walk back from the requested date up to
      ``max_lookback_days`` (weekends and bank holidays have no rate).
      For each date the cache is consulted first, then the providers in
      configured order.
    - Every provider call is bounded by that provider's timeout.  A
      provider that times out or raises is skipped for the rest of the
      quote.
    - Converted amounts are rounded half-up to two decimals, and a
      converted classification keeps sum(line net + VAT) == total.

Failure modes:
    - UnsupportedCurrencyError for codes outside SUPPORTED_CURRENCIES.
    - Provider failures never raise; the chain falls through to the
      static table and logs ``exchange_rate_fallback_used``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.domain.documents import Classification
from docledger_kernel.exceptions import UnsupportedCurrencyError
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.currency import ExchangeRateModel
from docledger_services.ports import RateProvider

logger = get_logger("services.currency")

SUPPORTED_CURRENCIES: tuple[str, ...] = (
    "SEK", "EUR", "USD", "GBP", "NOK", "DKK", "CHF", "PLN", "JPY", "CAD", "AUD",
)

# SEK per unit, used only when no provider answers
FALLBACK_RATES: dict[str, Decimal] = {
    "SEK": Decimal("1"),
    "EUR": Decimal("11.45"),
    "USD": Decimal("10.52"),
    "GBP": Decimal("13.35"),
    "NOK": Decimal("0.97"),
    "DKK": Decimal("1.54"),
    "CHF": Decimal("12.05"),
    "PLN": Decimal("2.48"),
    "JPY": Decimal("0.070"),
    "CAD": Decimal("7.75"),
    "AUD": Decimal("6.85"),
}

EXCHANGE_GAIN_ACCOUNT = "3960"
EXCHANGE_LOSS_ACCOUNT = "7960"
SUPPLIER_PAYABLE_ACCOUNT = "2440"

MAX_LOOKBACK_DAYS = 7
DEFAULT_PROVIDER_TIMEOUT = 5.0

CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.000001")

FALLBACK_SOURCE = "fallback"
IDENTITY_SOURCE = "identity"


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def is_supported(code: str | None) -> bool:
    return (code or "").upper() in SUPPORTED_CURRENCIES


def _validate(code: str) -> str:
    normalized = (code or "").upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(code)
    return normalized


def candidate_dates(on_date: date, max_back_days: int = MAX_LOOKBACK_DAYS) -> list[date]:
    """``on_date`` followed by each earlier day, ``max_back_days`` in total."""
    return [on_date - timedelta(days=offset) for offset in range(max_back_days + 1)]


@dataclass(frozen=True)
class RateQuote:
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    rate_date: date
    requested_date: date
    cached: bool = False


@dataclass(frozen=True)
class Conversion:
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    rate: Decimal
    rate_date: date
    source: str


@dataclass(frozen=True)
class ExchangeDifference:
    """Realized difference between the booking-day and payment-day rate."""

    currency: str
    original_amount: Decimal
    booking_rate: Decimal
    payment_rate: Decimal
    difference: Decimal
    is_gain: bool

    @property
    def account(self) -> str:
        return EXCHANGE_GAIN_ACCOUNT if self.is_gain else EXCHANGE_LOSS_ACCOUNT

    def entry(self, supplier_account: str = SUPPLIER_PAYABLE_ACCOUNT) -> dict[str, object]:
        """Debit / credit pair booking the difference against the payable."""
        if self.is_gain:
            debit, credit = supplier_account, EXCHANGE_GAIN_ACCOUNT
            label = "Exchange gain"
        else:
            debit, credit = EXCHANGE_LOSS_ACCOUNT, supplier_account
            label = "Exchange loss"
        return {
            "debit_account": debit,
            "credit_account": credit,
            "amount": self.difference,
            "description": f"{label} ({self.booking_rate:.4f} -> {self.payment_rate:.4f})",
        }


class ProviderChain:
    """
    Ordered rate providers sharing one worker pool for timeouts.

    Long-lived: build once per process and hand to each ``CurrencyService``.
    """

    def __init__(self, providers: Iterable[RateProvider] = (), max_workers: int = 4):
        self.providers: tuple[RateProvider, ...] = tuple(providers)
        self._executor: ThreadPoolExecutor | None = None
        self._max_workers = max_workers
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="docledger-fx",
                )
            return self._executor

    def fetch(self, provider: RateProvider, from_currency: str, to_currency: str, on_date: date) -> Decimal | None:
        """
        One bounded provider call.

        Raises whatever the provider raised, or ``TimeoutError`` when the
        provider's timeout elapsed.
        """
        timeout = getattr(provider, "timeout_seconds", None) or DEFAULT_PROVIDER_TIMEOUT
        future = self._pool().submit(provider.fetch_rate, from_currency, to_currency, on_date)
        try:
            value = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(f"{provider.name} did not answer within {timeout}s") from None
        return Decimal(str(value)) if value is not None else None

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None


class CurrencyService:
    """
    Rate quoting and conversion for one session.

    Does NOT commit; cache rows are flushed into the caller's transaction.
    """

    def __init__(
        self,
        session: Session,
        chain: ProviderChain | None = None,
        clock: Clock | None = None,
        base_currency: str = "SEK",
        max_lookback_days: int = MAX_LOOKBACK_DAYS,
    ):
        self.session = session
        self.chain = chain or ProviderChain()
        self.clock = clock or SystemClock()
        self.base_currency = _validate(base_currency)
        self.max_lookback_days = max_lookback_days

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def rate(
        self,
        from_currency: str,
        to_currency: str | None = None,
        on_date: date | None = None,
    ) -> RateQuote:
        from_c = _validate(from_currency)
        to_c = _validate(to_currency or self.base_currency)
        requested = on_date or self.clock.today()

        if from_c == to_c:
            return RateQuote(from_c, to_c, Decimal("1"), IDENTITY_SOURCE, requested, requested)

        unavailable: set[str] = set()
        for candidate in candidate_dates(requested, self.max_lookback_days):
            cached = self._cached(from_c, to_c, candidate)
            if cached is not None:
                return RateQuote(
                    from_c, to_c, cached.rate, cached.source, candidate, requested, cached=True,
                )

            for provider in self.chain.providers:
                if provider.name in unavailable:
                    continue
                value = self._ask(provider, from_c, to_c, candidate, unavailable)
                if value is None:
                    continue
                quote = RateQuote(from_c, to_c, value, provider.name, candidate, requested)
                self._store(quote)
                logger.info(
                    "exchange_rate_fetched",
                    extra={
                        "from": from_c,
                        "to": to_c,
                        "rate": value,
                        "source": provider.name,
                        "rate_date": candidate.isoformat(),
                    },
                )
                return quote

        rate = (FALLBACK_RATES[from_c] / FALLBACK_RATES[to_c]).quantize(RATE_PRECISION)
        logger.warning(
            "exchange_rate_fallback_used",
            extra={"from": from_c, "to": to_c, "rate": rate, "requested_date": requested.isoformat()},
        )
        return RateQuote(from_c, to_c, rate, FALLBACK_SOURCE, requested, requested)

    def _ask(
        self,
        provider: RateProvider,
        from_c: str,
        to_c: str,
        on_date: date,
        unavailable: set[str],
    ) -> Decimal | None:
        try:
            value = self.chain.fetch(provider, from_c, to_c, on_date)
        except TimeoutError:
            unavailable.add(provider.name)
            logger.warning(
                "rate_provider_timeout",
                extra={"provider": provider.name, "from": from_c, "to": to_c},
            )
            return None
        except Exception:
            unavailable.add(provider.name)
            logger.warning(
                "rate_provider_failed",
                extra={"provider": provider.name, "from": from_c, "to": to_c},
                exc_info=True,
            )
            return None
        if value is not None and value <= 0:
            logger.warning(
                "rate_provider_invalid_rate",
                extra={"provider": provider.name, "rate": value},
            )
            return None
        return value

    def _cached(self, from_c: str, to_c: str, on_date: date) -> ExchangeRateModel | None:
        return self.session.execute(
            select(ExchangeRateModel).where(
                ExchangeRateModel.from_currency == from_c,
                ExchangeRateModel.to_currency == to_c,
                ExchangeRateModel.rate_date == on_date,
            )
        ).scalar_one_or_none()

    def _store(self, quote: RateQuote) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(
                    ExchangeRateModel(
                        from_currency=quote.from_currency,
                        to_currency=quote.to_currency,
                        rate_date=quote.rate_date,
                        rate=quote.rate,
                        source=quote.source,
                        fetched_at=self.clock.now(),
                    )
                )
                self.session.flush()
        except IntegrityError:
            # Cached concurrently by another worker; the stored row wins
            logger.debug(
                "exchange_rate_cache_race",
                extra={"from": quote.from_currency, "to": quote.to_currency},
            )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str | None = None,
        on_date: date | None = None,
    ) -> Conversion:
        quote = self.rate(from_currency, to_currency, on_date)
        return Conversion(
            original_amount=amount,
            original_currency=quote.from_currency,
            converted_amount=round_amount(amount * quote.rate),
            target_currency=quote.to_currency,
            rate=quote.rate,
            rate_date=quote.rate_date,
            source=quote.source,
        )

    def convert_classification(
        self,
        classification: Classification,
        to_currency: str | None = None,
        on_date: date | None = None,
    ) -> Classification:
        """
        Convert a document into ``to_currency`` (the base currency by default)
        at the rate of its invoice date.

        Lines are converted one by one; the rounding residual is put on the
        last line so the lines still add up to the converted total.
        """
        c = classification
        target = _validate(to_currency or self.base_currency)
        source_currency = _validate(c.currency)
        if source_currency == target:
            return c

        quote = self.rate(source_currency, target, on_date or c.invoice_date)
        total = round_amount(c.total_amount * quote.rate)
        vat = round_amount(c.vat_amount * quote.rate)
        lines = [
            replace(
                line,
                net_amount=round_amount(line.net_amount * quote.rate),
                vat_amount=round_amount(line.vat_amount * quote.rate),
            )
            for line in c.line_items
        ]
        if lines:
            residual = total - sum((line.gross_amount for line in lines), Decimal("0"))
            if residual:
                lines[-1] = replace(lines[-1], net_amount=lines[-1].net_amount + residual)

        return c.with_changes(
            currency=target,
            total_amount=total,
            vat_amount=vat,
            line_items=tuple(lines),
            original_currency=source_currency,
            original_amount=c.total_amount,
            exchange_rate=quote.rate,
            exchange_rate_source=quote.source,
        )

    def exchange_difference(
        self,
        original_amount: Decimal,
        currency: str,
        booking_date: date,
        payment_date: date,
    ) -> ExchangeDifference:
        """
        Base-currency difference between booking and paying a foreign
        amount.  Paying less than was booked is a gain.
        """
        booking = self.rate(currency, self.base_currency, booking_date)
        payment = self.rate(currency, self.base_currency, payment_date)
        difference = round_amount(original_amount * payment.rate - original_amount * booking.rate)
        return ExchangeDifference(
            currency=booking.from_currency,
            original_amount=original_amount,
            booking_rate=booking.rate,
            payment_rate=payment.rate,
            difference=abs(difference),
            is_gain=difference < 0,
        )

    def historical_rates(self, currency: str, start: date, end: date) -> Sequence[RateQuote]:
        quotes: list[RateQuote] = []
        day = start
        while day <= end:
            quotes.append(self.rate(currency, self.base_currency, day))
            day += timedelta(days=1)
        return quotes
