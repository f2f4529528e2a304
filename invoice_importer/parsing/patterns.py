"""Line-level statement patterns.

Each statement line is run through ``LINE_RULES`` in order and the first rule that
matches wins. Rules are pure functions from a line to a tagged match, so this module
does no I/O and can be tested line by line.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

STOP_WORDS_PATTERN = re.compile(
    r"tarifa|juros|saldo|autoriza[çc][ãa]o|parcela|\bcet\b|multas|fatura|total|rotativo|saque"
    r"|remunerat[óo]rios|cancelar|central|atendimento|seguro|prestamista|valor parcelado",
    re.IGNORECASE,
)
STATEMENT_PAYMENT_PHRASES = ("pagamento de fatura", "pagamento fatura", "pagamento recebido", "pagamento efetuado")

FEE_LABELS = ("IOF DESPESA NO EXTERIOR",)
FEE_PATTERN = re.compile(
    r"^(?P<label>" + "|".join(r"\s+".join(map(re.escape, label.split())) for label in FEE_LABELS) + r")"
    r"\s+(?P<amount>[\d.,]+)$",
    re.IGNORECASE,
)
# Date, description, foreign amount, currency name, local amount, dollar amount.
INTERNATIONAL_PATTERN = re.compile(
    r"^.*?(?P<date>\d{2}/\d{2})\s+(?P<description>.+?)\s+(?P<foreign>[\d.,]+)\s+[A-Z\s]+\s+"
    r"(?P<amount>[\d.,]+)\s+(?P<usd>[\d.,]+)$"
)
INSTALLMENT_PATTERN = re.compile(r"^(?P<description>.+?)\s+(?P<index>\d{2})/(?P<count>\d{2})\s+(?P<amount>-?[\d.,]+)$")
GENERIC_PATTERN = re.compile(r"^.*?(?P<date>\d{2}/\d{2})\s+(?P<description>.+?)\s+(?P<amount>-?[\d.,]+)$")
LEADING_DATE_PATTERN = re.compile(r"^(?P<date>\d{2}/\d{2})\s+(?P<rest>.+)$")

ITEM_CONFIDENCE = 0.9


def parse_amount(raw: str) -> Decimal:
    """Convert a ``1.234,56`` style amount into a Decimal."""
    normalized = raw.strip().replace(".", "").replace(",", ".")
    try:
        return Decimal(normalized)
    except InvalidOperation as exc:
        msg = f"Invalid amount: {raw!r}"
        raise ValueError(msg) from exc


def parse_day_month(raw: str, year: int) -> date:
    """Complete a ``DD/MM`` date with ``year``."""
    day, month = raw.split("/")
    return date(year, int(month), int(day))


@dataclass(frozen=True)
class NoMatch:
    """The line is not a transaction."""

    reason: str


@dataclass(frozen=True)
class FeeMatch:
    """A fixed-label fee or tax line without a printed date."""

    description: str
    amount: Decimal


@dataclass(frozen=True)
class InternationalMatch:
    """A purchase in foreign currency; ``amount`` is the local-currency column."""

    description: str
    amount: Decimal
    purchase_date: date
    foreign_amount: Decimal


@dataclass(frozen=True)
class InstallmentMatch:
    """One installment of a split purchase."""

    description: str
    amount: Decimal
    installment: int
    total_installments: int
    purchase_date: date | None = None


@dataclass(frozen=True)
class GenericMatch:
    """A plain ``DD/MM description amount`` line."""

    description: str
    amount: Decimal
    purchase_date: date


LineMatch = NoMatch | FeeMatch | InternationalMatch | InstallmentMatch | GenericMatch


def _match_stop_word(line: str, today: date) -> LineMatch | None:
    if STOP_WORDS_PATTERN.search(line):
        return NoMatch("stop word")
    return None


def _match_fee(line: str, today: date) -> LineMatch | None:
    match = FEE_PATTERN.match(line)
    if not match:
        return None
    label = " ".join(match.group("label").upper().split())
    return FeeMatch(description=label, amount=parse_amount(match.group("amount")))


def _match_international(line: str, today: date) -> LineMatch | None:
    match = INTERNATIONAL_PATTERN.match(line)
    if not match:
        return None
    return InternationalMatch(
        description=match.group("description").strip(),
        amount=parse_amount(match.group("amount")),
        purchase_date=parse_day_month(match.group("date"), today.year),
        foreign_amount=parse_amount(match.group("foreign")),
    )


def _match_installment(line: str, today: date) -> LineMatch | None:
    match = INSTALLMENT_PATTERN.match(line)
    if not match:
        return None
    index, count = int(match.group("index")), int(match.group("count"))
    if index < 1 or index > count:
        # Not an NN/MM installment marker; probably a date.
        return None
    description = match.group("description").strip()
    purchase_date = None
    leading = LEADING_DATE_PATTERN.match(description)
    if leading:
        purchase_date = parse_day_month(leading.group("date"), today.year)
        description = leading.group("rest").strip()
    return InstallmentMatch(
        description=description,
        amount=parse_amount(match.group("amount")),
        installment=index,
        total_installments=count,
        purchase_date=purchase_date,
    )


def _match_generic(line: str, today: date) -> LineMatch | None:
    match = GENERIC_PATTERN.match(line)
    if not match:
        return None
    return GenericMatch(
        description=match.group("description").strip(),
        amount=parse_amount(match.group("amount")),
        purchase_date=parse_day_month(match.group("date"), today.year),
    )


LINE_RULES: tuple[tuple[str, Callable[[str, date], LineMatch | None]], ...] = (
    ("stop_word", _match_stop_word),
    ("fee", _match_fee),
    ("international", _match_international),
    ("installment", _match_installment),
    ("generic", _match_generic),
)


def is_payment_line(match: LineMatch) -> bool:
    """Return True for negative lines that settle a previous statement.

    Only explicit statement-payment phrases count; refunds and other credits stay items.
    """
    if isinstance(match, NoMatch) or match.amount >= 0:
        return False
    description = " ".join(match.description.lower().split())
    return any(phrase in description for phrase in STATEMENT_PAYMENT_PHRASES)


def classify_line(line: str, today: date) -> LineMatch:
    """Run ``line`` through the ordered rules and return the first match.

    A rule that recognizes the line but cannot convert its fields (bad amount,
    impossible date) ends the search with a ``NoMatch`` carrying the error.
    """
    line = line.strip()
    if not line:
        return NoMatch("empty")
    for name, rule in LINE_RULES:
        try:
            result = rule(line, today)
        except ValueError as exc:
            return NoMatch(f"{name}: {exc}")
        if result is None:
            continue
        if is_payment_line(result):
            return NoMatch("payment")
        return result
    return NoMatch("no pattern")
