"""Value helpers shared by every evaluation module.

Pure functions: no I/O, no logging.

INVARIANTS:
- is_empty_value() never treats numeric zero or boolean False as empty
  (a required numeric 0 or an explicit "no" is an answer).
- is_unset_for_step() is stricter: boolean False also counts as unset.
- to_number() never coerces a blank value to zero.
- parse_local_date() compares calendar days in local time, never instants.
"""

import math
import re
from datetime import date, datetime
from typing import Any, List, Mapping, Optional

DEFAULT_DISCLAIMER_SEPARATOR = "---"
DEFAULT_LANGUAGE = "EN"

_THOUSANDS_COMMA = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")
_THOUSANDS_DOT = re.compile(r"^[+-]?\d{1,3}((\.\d{3}){2,}(,\d+)?|(\.\d{3})+,\d+)$")
_YMD = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_UPLOAD_SPLIT = re.compile(r"[,\n]")


# =========================================================================
# Emptiness
# =========================================================================


def is_empty_value(value: Any) -> bool:
    """Emptiness used by `required` checks.

    Args:
        value: Raw field value

    Returns:
        True for None, blank strings and empty lists; False otherwise
        (including 0 and False)
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def is_unset_for_step(value: Any) -> bool:
    """Emptiness used by guided-step completion of non-required fields."""
    if value is False:
        return True
    return is_empty_value(value)


def is_blank_for_condition(value: Any) -> bool:
    """Emptiness used by `notEmpty`/`isEmpty` condition operators.

    Booleans are always present; any other falsy scalar (0, 0.0) is empty.
    """
    if isinstance(value, bool):
        return False
    if is_empty_value(value):
        return True
    if isinstance(value, (list, tuple, set, frozenset)):
        return all(is_blank_for_condition(v) for v in value)
    return not value


# =========================================================================
# Lists and tokens
# =========================================================================


def as_value_list(value: Any) -> List[Any]:
    """Treat a scalar as a one-element list; lists pass through."""
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return [value]


def normalize_value_list(value: Any) -> List[Any]:
    """Flatten a value into its non-blank elements."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if v is not None and not (isinstance(v, str) and v.strip() == "")]
    if isinstance(value, str) and value.strip() == "":
        return []
    return [value]


def normalize_token(value: Any) -> str:
    """Canonical string used for trim/case-tolerant equality."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value).strip().lower()


def as_text(value: Any) -> str:
    """Trimmed string form of an id-like value ('' for None)."""
    if value is None:
        return ""
    return str(value).strip()


# =========================================================================
# Numbers
# =========================================================================


def to_number(value: Any) -> Optional[float]:
    """Parse a scalar as a number.

    Tolerates comma decimals ("1,5") and thousands separators ("1,234.5",
    "1.234.567,8"). Blank, boolean and non-numeric values return None.

    Args:
        value: Raw scalar value

    Returns:
        Finite float or None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        return None
    text = value.strip().replace(" ", "").replace("\u00a0", "")
    if not text:
        return None
    if _THOUSANDS_COMMA.match(text):
        text = text.replace(",", "")
    elif _THOUSANDS_DOT.match(text):
        text = text.replace(".", "").replace(",", ".")
    elif "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def numeric_values(value: Any) -> List[float]:
    """All parseable numbers in a (possibly multi-valued) value."""
    numbers = []
    for item in as_value_list(value):
        number = to_number(item)
        if number is not None:
            numbers.append(number)
    return numbers


def format_number(value: float) -> str:
    """Integer string when whole, else two decimals."""
    rounded = round(value, 2)
    if rounded == int(rounded):
        return str(int(rounded))
    return f"{rounded:.2f}"


# =========================================================================
# Dates
# =========================================================================


def _to_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone()


def parse_local_date(value: Any) -> Optional[date]:
    """Parse a value as a local calendar date.

    Accepts date/datetime objects, `YYYY-MM-DD`, `DD/MM/YYYY`, ISO
    timestamps (aware ones are converted to local time) and epoch
    milliseconds.

    Args:
        value: Raw scalar value

    Returns:
        date or None when unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_local(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000).date()
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    match = _YMD.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _safe_date(year, month, day)
    match = _DMY.match(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        return _safe_date(year, month, day)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _to_local(parsed).date()


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


# =========================================================================
# Uploads and paragraphs
# =========================================================================


def to_upload_items(value: Any) -> List[str]:
    """Normalise an upload value into a list of file references."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in _UPLOAD_SPLIT.split(value) if part.strip()]
    if isinstance(value, Mapping):
        ref = as_text(value.get("url") or value.get("id") or value.get("name"))
        return [ref] if ref else []
    if isinstance(value, (list, tuple)):
        items: List[str] = []
        for item in value:
            items.extend(to_upload_items(item))
        return items
    return []


def upload_min_required(min_files: Optional[int], required: bool) -> int:
    """Minimum file count: minFiles when set, else 1 when required, else 0."""
    if min_files is not None and min_files > 0:
        return int(min_files)
    return 1 if required else 0


def is_upload_complete(value: Any, min_files: Optional[int] = None, required: bool = True) -> bool:
    """True when enough files are attached."""
    return len(to_upload_items(value)) >= upload_min_required(min_files, required)


def paragraph_user_text(value: Any, separator: Optional[str] = None) -> Any:
    """Strip an appended disclaimer block, keeping the user-authored prefix."""
    if not isinstance(value, str):
        return value
    marker = f"\n\n{separator or DEFAULT_DISCLAIMER_SEPARATOR}\n"
    index = value.find(marker)
    return value if index < 0 else value[:index]


# =========================================================================
# Localized text
# =========================================================================


def resolve_localized(value: Any, language: Optional[str] = DEFAULT_LANGUAGE, fallback: str = "") -> str:
    """Resolve a `str` or `{en, fr, nl}` mapping for a language.

    Args:
        value: Plain string or language mapping
        language: Language code (case-insensitive)
        fallback: Returned when nothing resolves

    Returns:
        Resolved text
    """
    if value is None:
        return fallback
    if isinstance(value, str):
        return value if value.strip() else fallback
    if isinstance(value, Mapping):
        key = (language or DEFAULT_LANGUAGE).lower()
        candidates = [key, "en"] + [k for k in value.keys() if isinstance(k, str)]
        for candidate in candidates:
            text = value.get(candidate)
            if isinstance(text, str) and text.strip():
                return text
    return fallback


def fill_tokens(template: str, **tokens: Any) -> str:
    """Replace `{name}` tokens without touching other braces."""
    result = template
    for name, token_value in tokens.items():
        result = result.replace("{" + name + "}", "" if token_value is None else str(token_value))
    return result
