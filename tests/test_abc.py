import logging

import pytest

from lilylet.core.config import DecoderDefaults
from lilylet.core.errors import EmptyInputError
from lilylet.core.types import (
    Pitch, Phonet, Accidental, Duration, Ratio, KeySignature, Clef, Tempo,
    NoteEvent, RestEvent, ContextChange, TupletEvent, BarlineEvent,
    Tie, Slur, Articulation, ArticulationType, Dynamic, DynamicType, Hairpin, HairpinType,
    Ornament, OrnamentType,
)
from lilylet.formats.abc.parser import AbcParser, parse_length, parse_meter, parse_tempo, barline_style

TUNE = """X:1
T:Scale
T:Second Title
C:Trad
R:reel
M:4/4
L:1/8
K:G
GABc d2e2|(3def g4 f2|]
"""


def events(doc, measure=0, part=0, voice=0):
    return doc.measures[measure].parts[part].voices[voice].events


def test_header_fields():
    doc = AbcParser.parse(TUNE)
    assert doc.metadata.title == "Scale"
    assert doc.metadata.subtitle == "Second Title"
    assert doc.metadata.composer == "Trad"
    assert doc.metadata.genre == "reel"
    assert doc.measures[0].key == KeySignature(Phonet.G)
    assert doc.measures[0].time_sig == Ratio(4, 4)


def test_notes_octaves_and_unit_length():
    doc = AbcParser.parse(TUNE)
    first = events(doc)
    assert [e.pitches[0] for e in first[:4]] == [
        Pitch(Phonet.G, 0), Pitch(Phonet.A, 0), Pitch(Phonet.B, 0), Pitch(Phonet.C, 1),
    ]
    assert [e.duration for e in first] == [Duration(8)] * 4 + [Duration(4)] * 2


def test_key_signature_applies_to_unmarked_notes():
    doc = AbcParser.parse(TUNE)
    tuplet, g, f = events(doc, 1)[:3]
    assert tuplet.events[2].pitches[0] == Pitch(Phonet.F, 1, Accidental.SHARP)
    assert f.pitches[0] == Pitch(Phonet.F, 1, Accidental.SHARP)
    assert g.duration == Duration(2)


def test_tuplet_and_final_barline():
    doc = AbcParser.parse(TUNE)
    bar = events(doc, 1)
    assert isinstance(bar[0], TupletEvent)
    assert bar[0].ratio == Ratio(2, 3)
    assert len(bar[0].events) == 3
    assert bar[-1] == BarlineEvent("|.")
    assert len(doc.measures) == 2


def test_bar_accidentals_last_until_the_barline():
    doc = AbcParser.parse("X:1\nL:1/4\nK:C\n^FF2F|F4|\n")
    accidentals = [e.pitches[0].accidental for e in events(doc)]
    assert accidentals == [Accidental.SHARP] * 3
    assert events(doc, 1)[0].pitches[0].accidental is None


def test_explicit_natural_overrides_key():
    doc = AbcParser.parse("X:1\nL:1/4\nK:D\nF=FF2|\n")
    accidentals = [e.pitches[0].accidental for e in events(doc)]
    assert accidentals == [Accidental.SHARP, Accidental.NATURAL, Accidental.NATURAL]


def test_broken_rhythm():
    doc = AbcParser.parse("X:1\nL:1/8\nK:C\nA>B C<D E2F2|\n")
    durations = [e.duration for e in events(doc)]
    assert durations[:4] == [Duration(8, 1), Duration(16), Duration(16), Duration(8, 1)]


def test_chord_and_tie():
    doc = AbcParser.parse("X:1\nL:1/8\nK:C\n[CEG]2- [CEG]6|\n")
    chord, held = events(doc)
    assert chord.pitches == [Pitch(Phonet.C, 0), Pitch(Phonet.E, 0), Pitch(Phonet.G, 0)]
    assert chord.duration == Duration(4)
    assert chord.marks == [Tie(True)]
    assert held.duration == Duration(2, 1)


def test_decorations():
    doc = AbcParser.parse("X:1\nL:1/4\nK:C\n!p!c !>!d !<!e .f|!fermata!g T a (b c)|\n")
    c, d, e, f = events(doc)
    assert c.marks == [Dynamic(DynamicType.P)]
    assert d.marks == [Articulation(ArticulationType.ACCENT)]
    assert e.marks == [Hairpin(HairpinType.CRESCENDO_START)]
    assert f.marks == [Articulation(ArticulationType.STACCATO)]
    g, a, b, c2 = events(doc, 1)
    assert g.marks == [Ornament(OrnamentType.FERMATA)]
    assert a.marks == [Ornament(OrnamentType.TRILL)]
    assert b.marks == [Slur(True)]
    assert c2.marks == [Slur(False)]


def test_rests():
    doc = AbcParser.parse("X:1\nM:3/4\nL:1/4\nK:C\nz x2|Z|\n")
    rest, spacer = events(doc)
    assert rest == RestEvent(Duration(4))
    assert spacer == RestEvent(Duration(2), invisible=True)
    full = events(doc, 1)[0]
    assert full.full_measure
    assert full.duration == Duration(2, 1)


def test_grace_notes():
    doc = AbcParser.parse("X:1\nL:1/8\nK:C\n{g}A2 B6|\n")
    grace, a, b = events(doc)
    assert grace.grace and grace.pitches == [Pitch(Phonet.G, 1)]
    assert not a.grace


def test_acciaccatura_group():
    doc = AbcParser.parse("X:1\nL:1/8\nK:C\n{/ag}B8|\n")
    first, second, b = events(doc)
    assert first.grace and second.grace
    assert [first.pitches[0].phonet, second.pitches[0].phonet] == [Phonet.A, Phonet.G]
    assert b.duration == Duration(1)


def test_bare_accent_decoration_is_logged(caplog):
    with caplog.at_level(logging.DEBUG, logger="lilylet.core.marks"):
        doc = AbcParser.parse("X:1\nL:1/4\nK:C\n!>!c4|\n")
    assert events(doc)[0].marks == [Articulation(ArticulationType.ACCENT)]
    assert "!>!" in caplog.text


def test_tempo_and_clef():
    doc = AbcParser.parse("X:1\nQ:1/4=120\nL:1/4\nK:F clef=bass\nC,4|\n")
    first = events(doc)
    assert first[0] == ContextChange(tempo=Tempo(beat=Duration(4), bpm=120))
    assert first[1] == ContextChange(clef=Clef.BASS)
    assert first[2].pitches == [Pitch(Phonet.C, -1)]
    assert doc.measures[0].key == KeySignature(Phonet.F)


def test_inline_fields_become_context_changes():
    doc = AbcParser.parse("X:1\nM:4/4\nL:1/4\nK:C\nCDEF|[M:3/4][K:D]DEF|\n")
    changes = [e for e in events(doc, 1) if isinstance(e, ContextChange)]
    assert ContextChange(time=Ratio(3, 4)) in changes
    assert ContextChange(key=KeySignature(Phonet.D)) in changes
    assert events(doc, 1)[-1].pitches[0].accidental == Accidental.SHARP


def test_score_layout_puts_voices_on_staves():
    text = """X:1
%%score {1 2}
M:2/4
L:1/8
K:C
V:1
cdef|
V:2 clef=bass
C,D,E,F,|
"""
    doc = AbcParser.parse(text)
    voices = doc.measures[0].parts[0].voices
    assert len(doc.measures[0].parts) == 1
    assert [v.staff for v in voices] == [1, 2]
    assert voices[1].events[0] == ContextChange(clef=Clef.BASS)
    assert voices[1].events[1].pitches == [Pitch(Phonet.C, -1)]


def test_parts_keep_their_index_when_a_voice_ends_early():
    text = """X:1
%%score (1) (2)
L:1/4
K:C
V:1
c4|
V:2
e4|gabc'|
"""
    doc = AbcParser.parse(text)
    second = doc.measures[1]
    assert len(second.parts) == 2
    assert [e for v in second.parts[0].voices for e in v.events] == []
    assert [e.pitches[0].phonet for e in events(doc, 1, part=1)] == [Phonet.G, Phonet.A, Phonet.B, Phonet.C]


def test_voices_without_layout_share_a_staff():
    doc = AbcParser.parse("X:1\nL:1/4\nK:C\nV:1\nc4|\nV:2\nC4|\n")
    voices = doc.measures[0].parts[0].voices
    assert [v.staff for v in voices] == [1, 1]


def test_short_meter_defaults_to_sixteenths():
    doc = AbcParser.parse("X:1\nM:2/4\nK:C\nCDEF CDEF|\n")
    assert events(doc)[0].duration == Duration(16)


def test_decoder_defaults_unit_length():
    doc = AbcParser.parse("X:1\nK:C\nCDEF|\n", DecoderDefaults(unit_length=Ratio(1, 4)))
    assert events(doc)[0].duration == Duration(4)


def test_parse_all_tunes():
    docs = AbcParser.parse_all("X:1\nT:One\nK:C\nC8|\n\nX:2\nT:Two\nK:G\nG8|\n")
    assert [d.metadata.title for d in docs] == ["One", "Two"]
    assert docs[1].measures[0].key == KeySignature(Phonet.G)


def test_parse_takes_first_tune():
    doc = AbcParser.parse("X:1\nT:One\nK:C\nC8|\n\nX:2\nT:Two\nK:G\nG8|\n")
    assert doc.metadata.title == "One"


def test_no_tunes():
    with pytest.raises(EmptyInputError):
        AbcParser.parse("just some text")
    with pytest.raises(EmptyInputError):
        AbcParser.parse_all("")


def test_tune_without_music():
    with pytest.raises(EmptyInputError):
        AbcParser.parse("X:1\nT:Silent\nK:C\n")


@pytest.mark.parametrize("text, expected", [
    ("", 1), ("2", 2), ("/", 0.5), ("//", 0.25), ("3/2", 1.5), ("/4", 0.25),
])
def test_parse_length(text, expected):
    assert float(parse_length(text)) == expected


def test_parse_meter():
    assert parse_meter("C") == Ratio(4, 4)
    assert parse_meter("C|") == Ratio(2, 2)
    assert parse_meter("6/8") == Ratio(6, 8)
    assert parse_meter("2+3/8") == Ratio(5, 8)
    assert parse_meter("free") is None


def test_parse_tempo():
    assert parse_tempo('"Allegro" 1/4=132') == Tempo("Allegro", Duration(4), 132)
    assert parse_tempo("3/8=60") == Tempo(None, Duration(4, 1), 60)
    assert parse_tempo("100") == Tempo(bpm=100)


@pytest.mark.parametrize("text, style", [
    ("|", "|"), ("||", "||"), ("|]", "|."), ("|:", ".|:"), (":|", ":|."), ("::", ":..:"), (":|:", ":..:"),
])
def test_barline_style(text, style):
    assert barline_style(text) == style
