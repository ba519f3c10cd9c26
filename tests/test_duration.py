from fractions import Fraction

import pytest

from lilylet.core.types import Duration, Ratio, NoteEvent, RestEvent, TupletEvent, TremoloEvent, Pitch, Phonet
from lilylet.core.duration import (
    fraction_to_division_dots, multiply, apply_broken_rhythm, default_tuplet_ratio, scaled,
    event_length, is_power_of_two,
)


@pytest.mark.parametrize("num, den, expected", [
    (1, 1, Duration(1)),
    (1, 4, Duration(4)),
    (3, 8, Duration(4, 1)),
    (7, 16, Duration(4, 2)),
    (3, 16, Duration(8, 1)),
    (1, 64, Duration(64)),
])
def test_fraction_to_division_dots_exact(num, den, expected):
    assert fraction_to_division_dots(num, den) == expected


@pytest.mark.parametrize("dots", [0, 1, 2])
@pytest.mark.parametrize("division", [1, 2, 4, 8, 16, 32, 64, 128])
def test_every_note_value_converts_back(division, dots):
    value = Duration(division, dots).as_fraction()
    assert fraction_to_division_dots(value.numerator, value.denominator) == Duration(division, dots)


def test_fraction_to_division_dots_rounds_inexact_values(caplog):
    assert fraction_to_division_dots(1, 3) == Duration(4)
    assert "no exact note value" in caplog.text


def test_fraction_to_division_dots_rejects_non_positive():
    with pytest.raises(ValueError):
        fraction_to_division_dots(0, 4)
    with pytest.raises(ValueError):
        fraction_to_division_dots(1, -4)


def test_is_power_of_two():
    assert is_power_of_two(1)
    assert is_power_of_two(16)
    assert not is_power_of_two(0)
    assert not is_power_of_two(12)


def test_as_fraction_with_dots_and_tuplet():
    assert Duration(4, 1).as_fraction() == Fraction(3, 8)
    assert Duration(2, 2).as_fraction() == Fraction(7, 8)
    assert Duration(8, tuplet=Ratio(2, 3)).as_fraction() == Fraction(1, 12)


def test_multiply():
    assert multiply(Duration(4), 3, 2) == Duration(4, 1)
    assert multiply(Duration(8), 2, 1) == Duration(4)


def test_broken_rhythm_one_step():
    first, second = apply_broken_rhythm(Duration(8), Duration(8), 1)
    assert (first, second) == (Duration(8, 1), Duration(16))
    first, second = apply_broken_rhythm(Duration(8), Duration(8), -1)
    assert (first, second) == (Duration(16), Duration(8, 1))


def test_broken_rhythm_two_steps():
    first, second = apply_broken_rhythm(Duration(8), Duration(8), 2)
    assert (first, second) == (Duration(8, 2), Duration(32))


def test_broken_rhythm_zero_is_identity():
    assert apply_broken_rhythm(Duration(4), Duration(2), 0) == (Duration(4), Duration(2))


def test_default_tuplet_ratio():
    assert default_tuplet_ratio(3) == Ratio(2, 3)
    assert default_tuplet_ratio(2) == Ratio(3, 2)
    assert default_tuplet_ratio(5) == Ratio(2, 5)


def test_scaled_leaves_original_untouched():
    original = Duration(8)
    copy = scaled(original, Ratio(2, 3))
    assert original.tuplet is None
    assert copy.tuplet == Ratio(2, 3)
    assert copy.same_value(original)


def test_event_length():
    c = Pitch(Phonet.C)
    assert event_length(NoteEvent([c], Duration(4, 1))) == Fraction(3, 8)
    assert event_length(NoteEvent([c], Duration(8), grace=True)) == 0
    assert event_length(RestEvent(Duration(2))) == Fraction(1, 2)
    triplet = TupletEvent(Ratio(2, 3), [NoteEvent([c], Duration(8)) for _ in range(3)])
    assert event_length(triplet) == Fraction(1, 4)
    assert event_length(TremoloEvent([c], [Pitch(Phonet.E)], 4, 16)) == Fraction(1, 2)
