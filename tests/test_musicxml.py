import xml.etree.ElementTree as ET

import pytest

from lilylet.core.errors import ParseError, EmptyInputError, EncodeError
from lilylet.core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Accidental, Duration, Ratio, KeySignature,
    Clef, Tempo, NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Articulation, ArticulationType, Dynamic, DynamicType, Hairpin, HairpinType, Fingering,
)
from lilylet.formats.lyl.parser import LylParser
from lilylet.formats.musicxml.generator import MusicXmlGenerator, DIVISIONS
from lilylet.formats.musicxml.parser import MusicXmlParser


def single_voice(events, key=None, time_sig=None, metadata=None):
    measure = Measure(parts=[Part(voices=[Voice(events=events)])], key=key, time_sig=time_sig)
    return Document(measures=[measure], metadata=metadata)


def parse_xml(text):
    return ET.fromstring(text.encode("utf-8"))


def test_header_and_part_list():
    doc = single_voice([NoteEvent([Pitch(Phonet.C)], Duration(1))],
                       metadata=Metadata(title="Piece", composer="Someone"))
    xml = MusicXmlGenerator.generate(doc)
    assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert "<!DOCTYPE score-partwise" in xml
    root = parse_xml(xml)
    assert root.tag == "score-partwise"
    assert root.get("version") == "4.0"
    assert root.findtext("work/work-title") == "Piece"
    assert root.find("identification/creator[@type='composer']").text == "Someone"
    assert root.findtext("part-list/score-part/part-name") == "Piece"


def test_attributes_and_notes():
    doc = single_voice([NoteEvent([Pitch(Phonet.F, 1, Accidental.SHARP)], Duration(4, 1)),
                        NoteEvent([Pitch(Phonet.B, -1, Accidental.FLAT)], Duration(8)),
                        RestEvent(Duration(2))],
                       key=KeySignature(Phonet.D), time_sig=Ratio(4, 4))
    root = parse_xml(MusicXmlGenerator.generate(doc))
    measure = root.find("part/measure")
    assert measure.findtext("attributes/divisions") == str(DIVISIONS)
    assert measure.findtext("attributes/key/fifths") == "2"
    assert measure.findtext("attributes/time/beats") == "4"
    notes = measure.findall("note")
    assert notes[0].findtext("pitch/step") == "F"
    assert notes[0].findtext("pitch/alter") == "1"
    assert notes[0].findtext("pitch/octave") == "5"
    assert notes[0].findtext("duration") == str(DIVISIONS * 3 // 2)
    assert notes[0].findtext("type") == "quarter"
    assert len(notes[0].findall("dot")) == 1
    assert notes[1].findtext("pitch/alter") == "-1"
    assert notes[1].findtext("pitch/octave") == "3"
    assert notes[2].find("rest") is not None
    assert notes[2].findtext("duration") == str(DIVISIONS * 2)


def test_tuplet_time_modification():
    triplet = TupletEvent(Ratio(2, 3), [NoteEvent([Pitch(Phonet(p))], Duration(8)) for p in "cde"])
    root = parse_xml(MusicXmlGenerator.generate(single_voice([triplet, NoteEvent([Pitch(Phonet.C)], Duration(4, 1))])))
    notes = root.findall("part/measure/note")
    assert notes[0].findtext("time-modification/actual-notes") == "3"
    assert notes[0].findtext("time-modification/normal-notes") == "2"
    assert notes[0].findtext("duration") == str(DIVISIONS // 3)
    assert notes[0].find("notations/tuplet").get("type") == "start"
    assert notes[2].find("notations/tuplet").get("type") == "stop"


def test_ties_carry_across_measures():
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.C)], Duration(1), [Tie()])])])]),
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.C)], Duration(1))])])]),
    ])
    root = parse_xml(MusicXmlGenerator.generate(doc))
    first, second = root.findall("part/measure/note")
    assert first.find("tie").get("type") == "start"
    assert second.find("tie").get("type") == "stop"


def test_two_staves_and_voices():
    doc = LylParser.parse(r'\staff "1" c1 \\ \staff "2" \clef "bass" c,1 |')
    root = parse_xml(MusicXmlGenerator.generate(doc))
    measure = root.find("part/measure")
    assert measure.findtext("attributes/staves") == "2"
    assert measure.find("backup") is not None
    assert [n.findtext("staff") for n in measure.findall("note")] == ["1", "2"]
    assert [c.findtext("sign") for c in measure.findall("attributes/clef")] == ["F"]


def test_invalid_duration_raises():
    doc = single_voice([NoteEvent([Pitch(Phonet.C)], Duration(3))])
    with pytest.raises(EncodeError):
        MusicXmlGenerator.generate(doc)


def test_decode_round_trip_events():
    events = [
        ContextChange(clef=Clef.TREBLE),
        NoteEvent([Pitch(Phonet.E, 0)], Duration(8), [Slur(True), Articulation(ArticulationType.STACCATO)]),
        NoteEvent([Pitch(Phonet.G, 0)], Duration(8), [Slur(False)]),
        TupletEvent(Ratio(2, 3), [NoteEvent([Pitch(Phonet(p), 1)], Duration(8)) for p in "cde"]),
        NoteEvent([Pitch(Phonet.C, 0), Pitch(Phonet.E, 0)], Duration(2), [Fingering(2)]),
    ]
    doc = single_voice(events, key=KeySignature(Phonet.G), time_sig=Ratio(4, 4),
                       metadata=Metadata(title="Back", composer="Again"))
    decoded = MusicXmlParser.parse(MusicXmlGenerator.generate(doc))
    assert decoded.metadata == Metadata(title="Back", composer="Again")
    assert decoded.measures[0].key == KeySignature(Phonet.G)
    assert decoded.measures[0].time_sig == Ratio(4, 4)
    decoded_events = decoded.measures[0].parts[0].voices[0].events
    assert decoded_events[1:] == events[1:]
    assert decoded_events[0] == ContextChange(clef=Clef.TREBLE)


def test_decode_dynamics_and_hairpins():
    events = [
        NoteEvent([Pitch(Phonet.C)], Duration(4), [Dynamic(DynamicType.P), Hairpin(HairpinType.CRESCENDO_START)]),
        NoteEvent([Pitch(Phonet.D)], Duration(4)),
        NoteEvent([Pitch(Phonet.E)], Duration(2), [Hairpin(HairpinType.CRESCENDO_END), Dynamic(DynamicType.F)]),
    ]
    decoded = MusicXmlParser.parse(MusicXmlGenerator.generate(single_voice(events)))
    first, _, last = decoded.measures[0].parts[0].voices[0].events
    assert set(first.marks) == {Dynamic(DynamicType.P), Hairpin(HairpinType.CRESCENDO_START)}
    assert set(last.marks) == {Hairpin(HairpinType.CRESCENDO_END), Dynamic(DynamicType.F)}


def test_decode_tremolo_pair():
    tremolo = TremoloEvent([Pitch(Phonet.C)], [Pitch(Phonet.E)], 4, 16)
    decoded = MusicXmlParser.parse(MusicXmlGenerator.generate(single_voice([tremolo, RestEvent(Duration(2))])))
    assert decoded.measures[0].parts[0].voices[0].events[0] == tremolo


def test_decode_tempo_and_barline():
    events = [ContextChange(tempo=Tempo("Allegro", Duration(4), 120)), NoteEvent([Pitch(Phonet.C)], Duration(1)),
              BarlineEvent("|.")]
    decoded = MusicXmlParser.parse(MusicXmlGenerator.generate(single_voice(events)))
    decoded_events = decoded.measures[0].parts[0].voices[0].events
    assert decoded_events[0] == ContextChange(tempo=Tempo("Allegro", Duration(4), 120))
    assert decoded_events[-1] == BarlineEvent("|.")


def test_decode_multiple_parts():
    doc = LylParser.parse(r"c1 \\\\ e1 | d1 \\\\ f1 |")
    decoded = MusicXmlParser.parse(MusicXmlGenerator.generate(doc))
    assert len(decoded.measures) == 2
    assert all(len(m.parts) == 2 for m in decoded.measures)
    assert decoded.measures[1].parts[1].voices[0].events[0].pitches == [Pitch(Phonet.F, 0)]


def test_decode_divisions_other_than_default():
    xml = """<score-partwise version="4.0">
  <part-list><score-part id="P1"><part-name>X</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes><divisions>2</divisions><time><beats>2</beats><beat-type>4</beat-type></time></attributes>
      <note><pitch><step>A</step><octave>4</octave></pitch><duration>3</duration><voice>1</voice></note>
      <note><pitch><step>B</step><octave>4</octave></pitch><duration>1</duration><voice>1</voice></note>
    </measure>
  </part>
</score-partwise>"""
    doc = MusicXmlParser.parse(xml)
    a, b = doc.measures[0].parts[0].voices[0].events
    assert a.duration == Duration(4, 1)
    assert b.duration == Duration(8)
    assert doc.measures[0].parts[0].name == "X"


def test_malformed_input():
    with pytest.raises(ParseError):
        MusicXmlParser.parse("<score-partwise")
    with pytest.raises(ParseError):
        MusicXmlParser.parse("<score-timewise/>")
    with pytest.raises(EmptyInputError):
        MusicXmlParser.parse('<score-partwise version="4.0"><part-list/></score-partwise>')
