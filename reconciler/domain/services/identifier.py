"""Identifier Normalization Service.

Canonicalizes national identity numbers extracted from free-form source cells
(``"1.234.567-2"``, ``"12345672: Dr. Perez"``, ``12345672.0``) into a stable,
digits-only key.

Security Impact:
    - Identity numbers are PII; this module never logs raw values
    - A failed check digit marks the patient as suspicious, it never rejects the row

Architecture:
    - Pure functions with no side effects
    - normalize() is idempotent: normalize(normalize(x)) == normalize(x)
"""

import re
from typing import Any, Optional

MIN_DIGITS = 6
MAX_DIGITS = 8
DEFAULT_DELIMITER = ":"

# Fixed weights of the identity-number check digit (modulo 10).
CHECK_DIGIT_WEIGHTS = (2, 9, 8, 7, 6, 3, 4)

_NON_DIGITS = re.compile(r"\D")
_FLOAT_INTEGRAL = re.compile(r"^\s*(\d+)\.0+\s*$")


def normalize(raw: Any, delimiter: str = DEFAULT_DELIMITER) -> tuple[Optional[str], bool]:
    """Normalize a raw identifier cell into a canonical key.

    Everything after the first ``delimiter`` is an annotation and is discarded;
    every non-digit character of the remainder is removed.

    Parameters:
        raw: Cell value (str, int, float or None)
        delimiter: Annotation separator

    Returns:
        tuple: (key, ok). ``key`` is None when ``ok`` is False.

    Example:
        ```python
        normalize("12345678: Doctor Name")  # ("12345678", True)
        normalize("1.234")                  # (None, False)
        ```
    """
    if raw is None or isinstance(raw, bool):
        return None, False

    if isinstance(raw, float):
        if raw != raw or not raw.is_integer():
            return None, False
        text = str(int(raw))
    else:
        text = str(raw)
        # spreadsheets hand integers back as "12345678.0"
        match = _FLOAT_INTEGRAL.match(text)
        if match:
            text = match.group(1)

    if delimiter and delimiter in text:
        text = text.split(delimiter, 1)[0]

    digits = _NON_DIGITS.sub("", text)
    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        return None, False
    return digits, True


def check_digit(base: str) -> int:
    """Compute the check digit of a 7-digit identity number.

    Raises:
        ValueError: If ``base`` is not exactly 7 digits
    """
    if len(base) != 7 or not base.isdigit():
        raise ValueError(f"Check digit base must have exactly 7 digits, got {len(base)}")
    total = sum(int(d) * w for d, w in zip(base, CHECK_DIGIT_WEIGHTS))
    return (10 - total % 10) % 10


def validate_check_digit(key: str) -> tuple[bool, Optional[str]]:
    """Validate a canonical key's check digit.

    Only 8-digit keys carry a check digit. Shorter keys are reported as
    unverifiable rather than wrong.

    Returns:
        tuple: (valid, note). ``note`` explains why the key is suspicious.
    """
    if len(key) == 8:
        expected = check_digit(key[:7])
        if int(key[7]) != expected:
            return False, f"Check digit {key[7]} does not match expected {expected}"
        return True, None
    if len(key) == 7:
        return False, f"Missing check digit (expected {check_digit(key)})"
    return False, f"{len(key)}-digit identifier is probably truncated"
