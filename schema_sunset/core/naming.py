"""
Deprecated-name codec.

Wire format: {original}_deprecated_{YYYYMMDD}_{code}[_{NN}]

The optional two-digit suffix disambiguates collisions. Names that would exceed
the identifier length limit keep a truncated stem followed by "__" and eight hex
digits of the original name's SHA-256, so the full name can be confirmed later.
An original name that itself ends in "__" plus eight hex digits always gets the
hashed form, so decode never has to guess which of the two it is looking at.
Pure functions only; callers supply existence checks.
"""

import hashlib
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Union

from .config import MAX_IDENTIFIER_LENGTH, NAME_COLLISION_MAX_ATTEMPTS
from .errors import DeprecatedNameParseError, NameCollisionError
from .schema import ReasonCode

REASON_CODES: Dict[ReasonCode, str] = {
    ReasonCode.UNUSED: "unu",
    ReasonCode.PERFORMANCE: "perf",
    ReasonCode.MIGRATION: "migr",
    ReasonCode.REFACTOR: "refr",
    ReasonCode.SECURITY: "sec",
    ReasonCode.OPTIMIZATION: "opt",
}
CODE_REASONS: Dict[str, ReasonCode] = {code: reason for reason, code in REASON_CODES.items()}

MARKER = "_deprecated_"
FINGERPRINT_LENGTH = 8

_DEPRECATED_RE = re.compile(
    r"^(?P<stem>.+)_deprecated_(?P<date>\d{8})_(?P<code>[a-z]+)(?:_(?P<seq>\d{2}))?$"
)
_TRUNCATED_STEM_RE = re.compile(r"^(?P<prefix>.*)__(?P<fingerprint>[0-9a-f]{%d})$" % FINGERPRINT_LENGTH)
_VALID_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
RESERVED_PREFIXES = ("sqlite_",)


@dataclass(frozen=True)
class DecodedName:
    original_name: str
    date: date
    reason: ReasonCode
    sequence: Optional[int] = None
    truncated: bool = False
    fingerprint: Optional[str] = None


def fingerprint(original_name: str) -> str:
    return hashlib.sha256(original_name.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def _byte_length(name: str) -> int:
    return len(name.encode("utf-8"))


def _truncate_bytes(text: str, limit: int) -> str:
    encoded = text.encode("utf-8")[:max(limit, 0)]
    return encoded.decode("utf-8", errors="ignore")


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def encode(original_name: str, when: Union[date, datetime], reason: Union[ReasonCode, str],
           sequence: Optional[int] = None, max_length: int = MAX_IDENTIFIER_LENGTH) -> str:
    """
    Build the deprecated name for an element.

    Args:
        original_name: Current (non-deprecated) name of the element
        when: Deprecation date
        reason: Reason code
        sequence: Collision suffix (1-99), None for the plain name
        max_length: Identifier length limit in bytes

    Returns:
        Deprecated identifier no longer than max_length bytes
    """
    if not original_name:
        raise ValueError("original_name cannot be empty")
    if sequence is not None and not 1 <= sequence <= 99:
        raise ValueError(f"sequence must be between 1 and 99: {sequence}")

    code = REASON_CODES[ReasonCode(reason)]
    suffix = f"{MARKER}{_as_date(when):%Y%m%d}_{code}"
    if sequence is not None:
        suffix += f"_{sequence:02d}"

    full = original_name + suffix
    if _byte_length(full) <= max_length and not _TRUNCATED_STEM_RE.match(original_name):
        return full

    tail = f"__{fingerprint(original_name)}{suffix}"
    room = max_length - _byte_length(tail)
    if room < 1:
        raise ValueError(f"max_length {max_length} too small for deprecated names")
    return _truncate_bytes(original_name, room) + tail


def decode(name: str) -> DecodedName:
    """
    Parse a deprecated name.

    Raises:
        DeprecatedNameParseError: if the name is not in the deprecated format
    """
    if not isinstance(name, str) or not name:
        raise DeprecatedNameParseError(str(name), "empty name")

    match = _DEPRECATED_RE.match(name)
    if not match:
        raise DeprecatedNameParseError(name, "does not match {name}_deprecated_{YYYYMMDD}_{code}")

    code = match.group("code")
    if code not in CODE_REASONS:
        raise DeprecatedNameParseError(name, f"unknown reason code '{code}'")

    try:
        when = datetime.strptime(match.group("date"), "%Y%m%d").date()
    except ValueError:
        raise DeprecatedNameParseError(name, f"invalid date '{match.group('date')}'")

    seq = match.group("seq")
    sequence = int(seq) if seq is not None else None
    if sequence == 0:
        raise DeprecatedNameParseError(name, "collision suffix must start at 01")

    stem = match.group("stem")
    hashed = _TRUNCATED_STEM_RE.match(stem)
    if hashed:
        prefix, digest = hashed.group("prefix"), hashed.group("fingerprint")
        # a prefix that hashes to its own fingerprint is the whole original name
        return DecodedName(
            original_name=prefix,
            date=when,
            reason=CODE_REASONS[code],
            sequence=sequence,
            truncated=fingerprint(prefix) != digest,
            fingerprint=digest,
        )

    return DecodedName(original_name=stem, date=when, reason=CODE_REASONS[code], sequence=sequence)


def try_decode(name: str) -> Optional[DecodedName]:
    try:
        return decode(name)
    except DeprecatedNameParseError:
        return None


def is_deprecated_name(name: str) -> bool:
    return try_decode(name) is not None


def matches_original(decoded: DecodedName, candidate: str) -> bool:
    """Check whether a candidate original name produced this decoded name."""
    if not decoded.truncated:
        return decoded.original_name == candidate
    return candidate.startswith(decoded.original_name) and fingerprint(candidate) == decoded.fingerprint


def encode_unique(original_name: str, when: Union[date, datetime], reason: Union[ReasonCode, str],
                  exists: Callable[[str], bool], max_attempts: int = NAME_COLLISION_MAX_ATTEMPTS,
                  max_length: int = MAX_IDENTIFIER_LENGTH) -> str:
    """
    Encode a deprecated name that does not collide with an existing identifier.

    Tries the plain name first, then suffixes _01 .. _{max_attempts}.

    Raises:
        NameCollisionError: if every candidate already exists
    """
    candidates = [None] + list(range(1, min(max_attempts, 99) + 1))
    for sequence in candidates:
        name = encode(original_name, when, reason, sequence=sequence, max_length=max_length)
        if not exists(name):
            return name

    raise NameCollisionError(encode(original_name, when, reason, max_length=max_length), len(candidates))


def deprecated_name_pattern(original_name: str) -> Pattern:
    """Regex matching every deprecated name derived from an untruncated original name."""
    stem = re.escape(original_name)
    if _TRUNCATED_STEM_RE.match(original_name):
        stem += "__" + fingerprint(original_name)
    return re.compile(
        r"^%s_deprecated_\d{8}_(?:%s)(?:_\d{2})?$" % (stem, "|".join(CODE_REASONS))
    )


def validate_can_deprecate(name: str, max_length: int = MAX_IDENTIFIER_LENGTH) -> List[str]:
    """Return the reasons a name cannot be deprecated (empty list if it can)."""
    issues = []

    if not name:
        return ["Element name cannot be empty"]

    if not _VALID_NAME_RE.match(name):
        issues.append(f"Element name '{name}' contains characters other than letters, digits and underscore")

    if name.lower().startswith(RESERVED_PREFIXES):
        issues.append(f"Element name '{name}' uses a reserved system prefix")

    if is_deprecated_name(name):
        issues.append(f"Element '{name}' is already deprecated")

    if _byte_length(name) > max_length:
        issues.append(f"Element name '{name}' exceeds the {max_length}-byte identifier limit")

    return issues


def summarize_names(names: Iterable[str], now: Optional[datetime] = None) -> Dict:
    """
    Statistics over the deprecated names found in a schema.

    Returns:
        Dict with total, by_reason, by_date, oldest_days, newest_days and
        average_age_days; non-deprecated names are ignored
    """
    today = (now or datetime.now()).date()
    decoded = [d for d in (try_decode(n) for n in names) if d is not None]

    ages = [(today - d.date).days for d in decoded]
    by_reason = Counter(d.reason.value for d in decoded)
    by_date = Counter(d.date.isoformat() for d in decoded)

    return {
        "total": len(decoded),
        "by_reason": dict(by_reason),
        "by_date": dict(sorted(by_date.items())),
        "oldest_days": max(ages) if ages else None,
        "newest_days": min(ages) if ages else None,
        "average_age_days": round(sum(ages) / len(ages), 1) if ages else None,
        "truncated": sum(1 for d in decoded if d.truncated),
    }
