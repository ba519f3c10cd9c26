import pytest

from lilylet.core.errors import ParseError
from lilylet.core.layout import (
    StaffGroup, parse_layout, resolve_layout, assignment_for, staff_counts, staff_offsets,
)
from lilylet.core.types import Document, Measure, Part, Voice, NoteEvent, Pitch, Phonet


def test_parse_layout_groups():
    groups = parse_layout("{1 2} (3 4) 5")
    assert [g.bound for g in groups] == ["curly", "arc", None]
    assert groups[0].leaves() == ["1", "2"]
    assert groups[2].items == ["5"]


def test_parse_layout_nested():
    groups = parse_layout("[{RH LH} (S A)]")
    assert len(groups) == 1
    assert groups[0].bound == "square"
    assert groups[0].leaves() == ["RH", "LH", "S", "A"]


@pytest.mark.parametrize("text", ["{1 2", "1 2}", "[(1 2]"])
def test_parse_layout_unbalanced(text):
    with pytest.raises(ParseError):
        parse_layout(text)


def test_curly_group_is_one_part_with_staves():
    mapping = resolve_layout(parse_layout("{1 2}"))
    assert mapping == {"1": (0, 1), "2": (0, 2)}


def test_arc_and_loose_groups_share_one_staff():
    mapping = resolve_layout(parse_layout("(1 2) 3"))
    assert mapping == {"1": (0, 1), "2": (0, 1), "3": (1, 1)}


def test_segment_break_starts_new_part():
    mapping = resolve_layout(parse_layout("{(1 2) | (3 4)}"))
    assert mapping == {"1": (0, 1), "2": (0, 1), "3": (1, 1), "4": (1, 1)}


def test_square_group_with_piano():
    mapping = resolve_layout(parse_layout("[{RH LH} V]"))
    assert mapping == {"RH": (0, 1), "LH": (0, 2), "V": (1, 1)}


def test_no_layout_defaults_to_first_staff():
    assert resolve_layout(None) == {}
    assert assignment_for({}, "anything") == (0, 1)


def test_staff_group_leaves_skip_segment_breaks():
    group = StaffGroup(items=["1", "|", StaffGroup(items=["2", "3"], bound="arc")], bound="curly")
    assert group.leaves() == ["1", "2", "3"]


def test_staff_counts_include_cross_staff_notes():
    note = NoteEvent([Pitch(Phonet.C)], staff=3)
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(staff=1), Voice(staff=2, events=[note])]), Part(voices=[Voice()])]),
    ])
    assert staff_counts(doc) == [3, 1]


def test_staff_offsets():
    assert staff_offsets([2, 1, 3]) == [0, 2, 3]
    assert staff_offsets([]) == []
