"""
Prediction Format Validation

A prediction is a score pair "a-b" where the winning side reached the
channel's max score: exactly one side equals max_score (both may) and the
other lies in [0, max_score].
"""
from typing import Optional, Tuple

SCORE_SEPARATOR = "-"


def parse_score_pair(candidate: Optional[str]) -> Optional[Tuple[int, int]]:
    """
    Split "a-b" into two non-negative ints.

    Returns None for anything ambiguous: empty input, a separator count
    other than one, signs, blanks or non-digit characters.
    """
    if not candidate:
        return None

    parts = candidate.strip().split(SCORE_SEPARATOR)
    if len(parts) != 2:
        return None

    left, right = (part.strip() for part in parts)
    for part in (left, right):
        if not (part.isascii() and part.isdigit()):
            return None

    return int(left), int(right)


def is_valid_prediction(candidate: Optional[str], max_score: int) -> bool:
    """Pure check; knows nothing about whether a session is open."""
    pair = parse_score_pair(candidate)
    if pair is None:
        return False

    left, right = pair
    if left == max_score and 0 <= right <= max_score:
        return True
    if right == max_score and 0 <= left <= max_score:
        return True
    return False


def format_hint(max_score: int) -> str:
    return f"Use the allowed formats, xx-xx. Each side must be either in {max_score}."
