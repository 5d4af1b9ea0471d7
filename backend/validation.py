import re
from datetime import datetime, timezone

VPA_RE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9]+$")
MIN_ORDER_AMOUNT = 100
CARD_NUMBER_RE = re.compile(r"[0-9]{13,19}")

NETWORK_PREFIXES = (
    ("visa", ("4",)),
    ("mastercard", ("51", "52", "53", "54", "55")),
    ("amex", ("34", "37")),
    ("rupay", ("60", "65") + tuple(str(prefix) for prefix in range(81, 90))),
)


def normalize_card_number(card_number: str) -> str:
    return re.sub(r"[\s-]", "", card_number or "")


def validate_vpa(vpa: str) -> bool:
    return bool(vpa and VPA_RE.match(vpa))


def luhn_check(card_number: str) -> bool:
    digits = normalize_card_number(card_number)
    if not CARD_NUMBER_RE.fullmatch(digits):
        return False
    checksum = 0
    for position, digit in enumerate(int(ch) for ch in reversed(digits)):
        if position % 2:
            digit = digit * 2 - 9 if digit > 4 else digit * 2
        checksum += digit
    return checksum % 10 == 0


def detect_card_network(card_number: str) -> str:
    digits = normalize_card_number(card_number)
    for network, prefixes in NETWORK_PREFIXES:
        if digits.startswith(prefixes):
            return network
    return "unknown"


def validate_expiry(month: str, year: str, now: datetime = None) -> bool:
    try:
        m = int(month)
        y = int(year)
    except (TypeError, ValueError):
        return False
    if m < 1 or m > 12:
        return False
    if len(str(year).strip()) == 2:
        y += 2000
    now = now or datetime.now(timezone.utc)
    return y > now.year or (y == now.year and m >= now.month)
