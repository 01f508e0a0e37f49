"""Small normalization helpers shared across the pipeline.

- Merchant display names and lookup keys.
- Money quantization (two decimals, ROUND_HALF_UP).
- UTC timestamp coercion for values read back from the database.
- The dedup hash that identifies one notification across entry paths.
"""

from __future__ import annotations

import hashlib
import json
import unicodedata
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .models import ParsedTransaction

UNKNOWN_MERCHANT = "Unknown Merchant"

_CENT = Decimal("0.01")


def to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d.quantize(_CENT, rounding=ROUND_HALF_UP)


def normalize_merchant_name(name: str | None) -> str:
    """Return the display form of a merchant name.

    All-caps names (common in bank notifications) become title case; names
    that already mix case are kept as-is apart from whitespace collapsing.
    """

    if name is None:
        return UNKNOWN_MERCHANT
    s = " ".join(name.split())
    if not s:
        return UNKNOWN_MERCHANT
    if s == s.upper():
        return " ".join(word[:1].upper() + word[1:].lower() for word in s.split(" "))
    return s


def merchant_key(name: str | None) -> str:
    """Casefolded, NFKC-normalized, whitespace-collapsed merchant key."""

    if not name:
        return ""
    s = unicodedata.normalize("NFKC", name)
    return " ".join(s.split()).casefold()


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes; those were written as UTC.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compute_dedup_hash(parsed: ParsedTransaction) -> str:
    """Return the dedup hash for ``parsed``.

    A non-blank parser-provided ``transaction_hash`` wins. Otherwise a
    SHA-256 is computed over canonical fields: bank (lowercased), account
    last-4, amount (2dp string), timestamp truncated to the minute (UTC ISO
    format) and the trimmed source text. Minute precision absorbs the small
    clock skew between notification sources for the same event.
    """

    if parsed.transaction_hash and parsed.transaction_hash.strip():
        return parsed.transaction_hash.strip()

    ts = ensure_utc(parsed.timestamp).replace(second=0, microsecond=0)
    amt = to_decimal_2(parsed.amount)
    payload = {
        "bank": parsed.bank_name.strip().lower(),
        "account": (parsed.account_last4 or "").strip() or None,
        "amount": f"{amt:.2f}" if amt is not None else None,
        "timestamp": ts.isoformat(),
        "text": parsed.source_text.strip(),
    }
    # Ensure deterministic JSON serialization
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


__all__ = [
    "UNKNOWN_MERCHANT",
    "compute_dedup_hash",
    "ensure_utc",
    "merchant_key",
    "normalize_merchant_name",
    "to_decimal_2",
    "utcnow",
]
