import math
from typing import Union

Number = Union[int, float]


def round_half_up(value: Number, digits: int = 0) -> Number:
    """Round halves away from zero for positives, matching the report figures.

    Python's ``round`` uses banker's rounding (``round(0.5) == 0``), which would
    shift category percentages and event counts at exact halves.
    """
    if digits <= 0:
        return int(math.floor(value + 0.5))
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percentage(part: Number, whole: Number) -> int:
    if not whole:
        return 0
    return int(round_half_up(part / whole * 100))
