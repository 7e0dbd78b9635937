"""Canadian postal code helpers: validation, normalization, and specificity expansion.

A search code is a postal prefix: the 3-character FSA, optionally followed
by the digit, letter, and digit of the local delivery unit (LDU).

    M5H  ->  M5H 0 .. M5H 9
    M5H 2 -> M5H 2A .. M5H 2Z   (restricted alphabet)
    M5H 2N -> M5H 2N0 .. M5H 2N9
    M5H 2N2 -> (cannot expand)
"""

import re
import string
from typing import List, Optional

# D, F, I, O, Q, U never appear anywhere in a Canadian postal code.
# W and Z are only excluded from the first position, so the LDU letter
# keeps them.
EXCLUDED_LETTERS = frozenset("DFIOQU")
LDU_LETTERS = "".join(c for c in string.ascii_uppercase if c not in EXCLUDED_LETTERS)
DIGITS = string.digits

MAX_SPECIFICITY = 6

_PREFIX_RE = re.compile(r"^[A-Z]\d[A-Z](?:\d(?:[A-Z]\d?)?)?$")
_FULL_CODE_RE = re.compile(r"\b([A-Za-z]\d[A-Za-z])\s?(\d[A-Za-z]\d)\b")


def normalize_code(code: str) -> str:
    """Uppercase and strip all whitespace: 'm5h 2n' -> 'M5H2N'."""
    if not code:
        return ""
    return re.sub(r"\s+", "", code).upper()


def is_valid_prefix(code: str) -> bool:
    """True for a 3- to 6-character postal prefix in the letter-digit-letter pattern."""
    return bool(_PREFIX_RE.match(normalize_code(code)))


def display_code(code: str) -> str:
    """Registry query form: FSA, a space, then whatever LDU characters exist."""
    clean = normalize_code(code)
    if len(clean) <= 3:
        return clean
    return f"{clean[:3]} {clean[3:]}"


def fsa_of(code: str) -> str:
    """First three characters of a postal code or prefix."""
    return normalize_code(code)[:3]


def extract_postal_code(text: str) -> Optional[str]:
    """Pull a full 6-character postal code out of free text, in display form."""
    if not text:
        return None
    match = _FULL_CODE_RE.search(text)
    if not match:
        return None
    return f"{match.group(1).upper()} {match.group(2).upper()}"


def expand_postal_code(code: str) -> List[str]:
    """Child codes at the next specificity level, in display form.

    Returns an empty list at maximal specificity (or for an invalid code):
    the caller reports that as a coverage gap.
    """
    clean = normalize_code(code)
    if not _PREFIX_RE.match(clean):
        return []

    if len(clean) == 3:
        return [f"{clean} {d}" for d in DIGITS]
    if len(clean) == 4:
        return [f"{clean[:3]} {clean[3]}{letter}" for letter in LDU_LETTERS]
    if len(clean) == 5:
        return [f"{clean[:3]} {clean[3:]}{d}" for d in DIGITS]
    return []


def max_leaf_count(code: str) -> int:
    """Upper bound on the leaf queries a fully-overflowing seed can produce."""
    clean = normalize_code(code)
    branching = {3: len(DIGITS), 4: len(LDU_LETTERS), 5: len(DIGITS)}
    count = 1
    for level in range(len(clean), MAX_SPECIFICITY):
        count *= branching[level]
    return count
