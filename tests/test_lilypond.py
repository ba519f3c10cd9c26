import pytest

from lilylet.core.config import EncoderOptions
from lilylet.core.errors import ParseError, EmptyInputError, EncodeError
from lilylet.core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Accidental, Duration, Ratio, KeySignature, Clef,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent, Tie, Dynamic, DynamicType,
)
from lilylet.formats.lilypond.generator import LilyPondGenerator
from lilylet.formats.lilypond.parser import LilyPondParser
from lilylet.formats.lyl.parser import LylParser


def events(doc, measure=0, part=0, voice=0):
    return doc.measures[measure].parts[part].voices[voice].events


def pitches(doc, measure=0, voice=0):
    return [e.pitches[0] for e in events(doc, measure, voice=voice)]


def one_measure(events_, **kwargs):
    return Document(measures=[Measure(parts=[Part(voices=[Voice(events=events_)])], **kwargs)])


def test_generate_frame_with_default_options():
    text = LilyPondGenerator.generate(LylParser.parse("c1 |"))
    assert text.startswith('\\version "2.22.0"')
    assert '\\language "english"' in text
    assert "tagline = ##f" in text
    assert "#(set-global-staff-size 20)" in text
    assert "paper-width = 210\\mm" in text
    assert "autoBeaming = ##f" in text
    assert '\\new Staff = "1"' in text
    assert "\\relative c' { c1 } |  % 1" in text
    assert "\\midi" not in text


def test_generate_options():
    options = {"paper": {"width": 300, "height": 200}, "fontSize": 18, "withMIDI": True, "autoBeaming": True}
    text = LilyPondGenerator.generate(LylParser.parse("c1 |"), options)
    assert "paper-width = 300\\mm" in text
    assert "paper-height = 200\\mm" in text
    assert "#(set-global-staff-size 18)" in text
    assert "\\midi { }" in text
    assert "autoBeaming = ##t" in text


def test_auto_beaming_follows_header_unless_overridden():
    doc = LylParser.parse('[auto-beam "on"]\nc1 |')
    assert "autoBeaming = ##t" in LilyPondGenerator.generate(doc)
    assert "autoBeaming = ##f" in LilyPondGenerator.generate(doc, EncoderOptions(auto_beaming=False))


def test_generate_header_fields():
    doc = LylParser.parse('[title "A \\"quoted\\" title"]\n[lyricist "Poet"]\nc1 |')
    text = LilyPondGenerator.generate(doc)
    assert 'title = "A \\"quoted\\" title"' in text
    assert 'poet = "Poet"' in text


def test_generate_natural_and_tuplet():
    triplet = TupletEvent(Ratio(2, 3), [NoteEvent([Pitch(Phonet(p))], Duration(8)) for p in "cde"])
    doc = one_measure([NoteEvent([Pitch(Phonet.C, 0, Accidental.NATURAL)], Duration(2)), triplet,
                       NoteEvent([Pitch(Phonet.C)], Duration(4))])
    text = LilyPondGenerator.generate(doc)
    assert "c!2" in text
    assert "\\tuplet 3/2 { c8 d e }" in text


def test_generate_key_time_and_partial():
    doc = one_measure([NoteEvent([Pitch(Phonet.G, -1)], Duration(4))],
                      key=KeySignature(Phonet.G), time_sig=Ratio(3, 4), partial=True)
    text = LilyPondGenerator.generate(doc)
    assert "\\key g \\major \\time 3/4 \\partial 4 g4" in text


def test_generate_spacer_for_missing_voice():
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.C)], Duration(1))]), Voice()])],
                time_sig=Ratio(3, 4)),
    ])
    assert "\\relative c' { s4*3 }" in LilyPondGenerator.generate(doc)


def test_generate_staves_for_every_part():
    doc = LylParser.parse(r'\staff "1" c1 \\ \staff "2" c,1 \\\\ e1 |')
    text = LilyPondGenerator.generate(doc)
    assert '\\new Staff = "1"' in text
    assert '\\new Staff = "2"' in text
    assert '\\new Staff = "3"' in text


def test_generate_rejects_irregular_duration():
    with pytest.raises(EncodeError):
        LilyPondGenerator.generate(one_measure([NoteEvent([Pitch(Phonet.C)], Duration(3))]))


def test_decode_dutch_names():
    doc = LilyPondParser.parse(r"\relative c' { cis4 des es fisis }")
    assert pitches(doc) == [
        Pitch(Phonet.C, 0, Accidental.SHARP), Pitch(Phonet.D, 0, Accidental.FLAT),
        Pitch(Phonet.E, 0, Accidental.FLAT), Pitch(Phonet.F, 0, Accidental.DOUBLE_SHARP),
    ]


def test_decode_english_names():
    doc = LilyPondParser.parse('\\language "english"\n\\relative c\' { cs4 df ef fss }')
    assert pitches(doc) == [
        Pitch(Phonet.C, 0, Accidental.SHARP), Pitch(Phonet.D, 0, Accidental.FLAT),
        Pitch(Phonet.E, 0, Accidental.FLAT), Pitch(Phonet.F, 0, Accidental.DOUBLE_SHARP),
    ]


def test_decode_absolute_pitches():
    doc = LilyPondParser.parse("{ c'4 c c,, r }")
    assert [e.pitches[0].octave for e in events(doc)[:3]] == [0, -1, -3]
    assert events(doc)[3] == RestEvent(Duration(4))


def test_decode_relative_without_start_pitch():
    doc = LilyPondParser.parse(r"\relative { c'2 d }")
    assert pitches(doc) == [Pitch(Phonet.C, 0), Pitch(Phonet.D, 0)]


def test_decode_fixed_pitches():
    doc = LilyPondParser.parse(r"\fixed c' { c2 g }")
    assert pitches(doc) == [Pitch(Phonet.C, 0), Pitch(Phonet.G, 0)]


def test_measures_follow_time_signature():
    doc = LilyPondParser.parse(r"\relative c' { \time 3/4 c4 d e f g a }")
    assert len(doc.measures) == 2
    assert doc.measures[0].time_sig == Ratio(3, 4)
    assert doc.measures[1].time_sig is None
    assert pitches(doc, 1)[0] == Pitch(Phonet.F, 0)


def test_early_bar_check_closes_measure():
    doc = LilyPondParser.parse(r"\relative c' { c2 | d1 }")
    assert len(events(doc)) == 1
    assert pitches(doc, 1) == [Pitch(Phonet.D, 0)]


def test_decode_simultaneous_voices():
    doc = LilyPondParser.parse(r"\relative c' << { e1 } \\ { c1 } >>")
    voices = doc.measures[0].parts[0].voices
    assert [v.events[0].pitches[0] for v in voices] == [Pitch(Phonet.E, 0), Pitch(Phonet.C, 0)]
    assert [v.staff for v in voices] == [1, 1]


def test_decode_piano_staff():
    text = r"""
\score {
  \new PianoStaff <<
    \new Staff = "up" \relative c'' { c1 }
    \new Staff = "down" \relative c { \clef bass c1 }
  >>
  \layout { }
}
"""
    doc = LilyPondParser.parse(text)
    upper, lower = doc.measures[0].parts[0].voices
    assert (upper.staff, lower.staff) == (1, 2)
    assert upper.events[0].pitches == [Pitch(Phonet.C, 1)]
    assert lower.events[0] == ContextChange(clef=Clef.BASS)
    assert lower.events[1].pitches == [Pitch(Phonet.C, -1)]


def test_decode_named_parts():
    doc = LilyPondParser.parse(r"""<< \new Staff = "1_1" { c'1 } \new Staff = "2_1" { e'1 } >>""")
    assert len(doc.measures[0].parts) == 2
    assert doc.measures[0].parts[1].voices[0].events[0].pitches == [Pitch(Phonet.E, 0)]


def test_decode_tuplets():
    doc = LilyPondParser.parse(r"\relative c' { \tuplet 3/2 { c8 d e } \times 2/3 { f8 g a } c2 }")
    first, second, _ = events(doc)
    assert isinstance(first, TupletEvent) and first.ratio == Ratio(2, 3)
    assert second.ratio == Ratio(2, 3)
    assert [e.duration for e in first.events] == [Duration(8)] * 3


def test_decode_tremolos():
    doc = LilyPondParser.parse(r"\relative c' { \repeat tremolo 4 { c16 e } c4:16 d }")
    tremolo, single, _ = events(doc)
    assert tremolo == TremoloEvent([Pitch(Phonet.C, 0)], [Pitch(Phonet.E, 0)], 4, 16)
    assert single.tremolo == 16


def test_decode_header():
    doc = LilyPondParser.parse('\\header { title = "T" poet = "P" tagline = ##f }\n{ c\'1 }')
    assert doc.metadata == Metadata(title="T", lyricist="P")


def test_decode_partial():
    doc = LilyPondParser.parse(r"\relative c' { \partial 4 g4 | c1 }")
    assert doc.measures[0].partial
    assert pitches(doc) == [Pitch(Phonet.G, -1)]
    assert pitches(doc, 1) == [Pitch(Phonet.C, 0)]


def test_decode_volta_repeat_as_barlines():
    doc = LilyPondParser.parse(r"\relative c' { \repeat volta 2 { c1 } d1 }")
    assert events(doc)[0] == BarlineEvent(".|:")
    assert events(doc)[-1] == BarlineEvent(":|.")
    assert pitches(doc, 1) == [Pitch(Phonet.D, 0)]


def test_decode_unfold_repeat():
    doc = LilyPondParser.parse(r"\relative c' { \repeat unfold 2 { c2 } }")
    assert len(events(doc)) == 2


def test_decode_staff_change():
    text = r"""
\new PianoStaff <<
  \new Staff = "1" { c'2 \change Staff = "2" c2 }
  \new Staff = "2" { \clef bass s1 }
>>
"""
    doc = LilyPondParser.parse(text)
    high, change, low = events(doc)
    assert change == ContextChange(staff=2)
    assert low.staff == 2


def test_decode_errors():
    with pytest.raises(EmptyInputError):
        LilyPondParser.parse("")
    with pytest.raises(ParseError):
        LilyPondParser.parse(r"\relative c' { c4 d")
    with pytest.raises(ParseError):
        LilyPondParser.parse(r"{ c4 \repeat tremolo 4 { } }")


def test_round_trip_through_lilypond():
    doc = LylParser.parse(r"\key g \major \time 3/4 g4( a-. b) | c2.~\p | c2. |")
    decoded = LilyPondParser.parse(LilyPondGenerator.generate(doc))
    assert decoded == doc
    assert events(decoded, 1)[0].marks == [Tie(True), Dynamic(DynamicType.P)]
