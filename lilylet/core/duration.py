import logging
import math
from dataclasses import replace
from fractions import Fraction
from typing import Tuple, Union

from .types import Duration, Ratio, NoteEvent, RestEvent, TupletEvent, TremoloEvent

logger = logging.getLogger(__name__)

# Value of a note with 0, 1 and 2 dots relative to the undotted note.
DOT_FACTORS = (Fraction(1, 1), Fraction(3, 2), Fraction(7, 4))

# Notes in the normal time a tuplet of p notes replaces, when the source omits it.
DEFAULT_TUPLET_NORMAL = {2: 3, 3: 2, 4: 3, 5: 2, 6: 2, 7: 2, 9: 2}


def is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def fraction_to_division_dots(num: int, den: int) -> Duration:
    """
    Finds the {division, dots} pair whose length is exactly num/den of a whole note.

    Dots are tried from 0 to 2 and the first power-of-two division that fits wins.
    When nothing fits, the reciprocal is rounded to the nearest power of two and a
    warning is logged; that path loses information on purpose.
    """
    if num <= 0 or den <= 0:
        raise ValueError(f"Duration fraction must be positive, got {num}/{den}")

    for dots, factor in enumerate(DOT_FACTORS):
        div_num = factor.numerator * den
        div_den = factor.denominator * num
        if div_num % div_den == 0 and is_power_of_two(div_num // div_den):
            return Duration(division=div_num // div_den, dots=dots)

    division = max(1, round(den / num))
    division = 2 ** max(0, round(math.log2(division)))
    logger.warning(f"Duration {num}/{den} has no exact note value, using 1/{division}")
    return Duration(division=division)



def multiply(duration: Duration, num: int, den: int) -> Duration:
    value = Fraction(2 ** (duration.dots + 1) - 1, 2 ** duration.dots * duration.division) * Fraction(num, den)
    return fraction_to_division_dots(value.numerator, value.denominator)


def apply_broken_rhythm(first: Duration, second: Duration, count: int) -> Tuple[Duration, Duration]:
    """
    Applies an ABC broken rhythm between two neighbouring durations.

    A positive count is `>` repeated count times (the first note is lengthened),
    a negative count is `<` (the second note is lengthened).
    """
    mult = 2 ** abs(count)
    if count > 0:
        return multiply(first, 2 * mult - 1, mult), multiply(second, 1, mult)
    if count < 0:
        return multiply(first, 1, mult), multiply(second, 2 * mult - 1, mult)
    return first, second


def default_tuplet_ratio(actual: int) -> Ratio:
    """Ratio for `actual` notes in the time of the conventional normal count."""
    return Ratio(DEFAULT_TUPLET_NORMAL.get(actual, 2), actual)


def scaled(duration: Duration, ratio: Ratio) -> Duration:
    """Returns a scratch copy of the duration carrying the tuplet ratio."""
    return replace(duration, tuplet=ratio)


def event_length(event: Union[NoteEvent, RestEvent, TupletEvent, TremoloEvent]) -> Fraction:
    """Sounding length of a timed event; grace notes take no time."""
    if isinstance(event, NoteEvent):
        return Fraction(0) if event.grace else event.duration.as_fraction()
    if isinstance(event, RestEvent):
        return event.duration.as_fraction()
    if isinstance(event, TupletEvent):
        inner = sum((event_length(e) for e in event.events), Fraction(0))
        return inner * Fraction(event.ratio.numerator, event.ratio.denominator)
    if isinstance(event, TremoloEvent):
        return Fraction(2 * event.count, event.division)
    return Fraction(0)
