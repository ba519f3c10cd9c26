import copy
import xml.etree.ElementTree as ET

import pytest

import lilylet
from lilylet.core.types import Ratio, NoteEvent, RestEvent, TupletEvent, TremoloEvent

SCORE = r"""[title "Everything"]
[composer "Various"]
\key d \major \time 3/4 \clef "treble" d4(\p\< fs a)\! | <d, fs a>2.~ |
<d fs a>4 \times 2/3 { b'8 cs d } e4\fermata | \repeat tremolo 4 { d16 fs16 } a4:32 |
\stemDown a4-. b-> \stemNeutral c!-_ \bar "|." |
"""

PIANO = r"""\staff "1" c'2 e \\ \staff "2" \clef "bass" c,,1 |
\staff "1" g'1 \\ \staff "2" g,,1 |
"""

ENCODERS = [lilylet.serialize_native, lilylet.encode_musicxml, lilylet.encode_lilypond, lilylet.encode_mei]


@pytest.fixture(params=[SCORE, PIANO], ids=["score", "piano"])
def doc(request):
    return lilylet.parse_native(request.param)


@pytest.mark.parametrize("encode", ENCODERS)
def test_encoders_leave_document_untouched(doc, encode):
    before = copy.deepcopy(doc)
    encode(doc)
    assert doc == before


@pytest.mark.parametrize("encode", ENCODERS)
def test_encoders_are_deterministic(doc, encode):
    assert encode(doc) == encode(doc)


def test_tuplet_ratio_in_every_format():
    doc = lilylet.parse_native(r"\times 2/3 { c8 d e } c2. |")
    tuplet = doc.measures[0].parts[0].voices[0].events[0]
    assert isinstance(tuplet, TupletEvent) and tuplet.ratio == Ratio(2, 3)

    assert "\\times 2/3 { c8 d e }" in lilylet.serialize_native(doc)
    assert "\\tuplet 3/2 { c8 d e }" in lilylet.encode_lilypond(doc)

    xml = ET.fromstring(lilylet.encode_musicxml(doc).encode("utf-8"))
    modification = xml.find("part/measure/note/time-modification")
    assert modification.findtext("actual-notes") == "3"
    assert modification.findtext("normal-notes") == "2"

    mei = ET.fromstring(lilylet.encode_mei(doc).encode("utf-8"))
    element = next(mei.iter("{http://www.music-encoding.org/ns/mei}tuplet"))
    assert (element.get("num"), element.get("numbase")) == ("3", "2")


def timed_value(event):
    if isinstance(event, NoteEvent):
        return tuple(event.pitches), event.duration, event.tremolo
    if isinstance(event, RestEvent):
        return "rest", event.duration
    if isinstance(event, TupletEvent):
        return event.ratio, [timed_value(e) for e in event.events]
    return tuple(event.pitch_a), tuple(event.pitch_b), event.count, event.division


def music(doc):
    """Staff, pitches and durations of every voice, measure by measure."""
    return [
        [(voice.staff, [timed_value(e) for e in voice.events
                        if isinstance(e, (NoteEvent, RestEvent, TupletEvent, TremoloEvent))])
         for part in measure.parts for voice in part.voices]
        for measure in doc.measures
    ]


@pytest.mark.parametrize("decode, encode", [
    (lilylet.parse_native, lilylet.serialize_native),
    (lilylet.decode_musicxml, lilylet.encode_musicxml),
    (lilylet.decode_lilypond, lilylet.encode_lilypond),
], ids=["native", "musicxml", "lilypond"])
def test_decoders_read_what_encoders_write(doc, decode, encode):
    decoded = decode(encode(doc))
    assert music(decoded) == music(doc)


def test_score_keeps_its_title_and_shapes():
    doc = lilylet.parse_native(SCORE)
    shapes = [type(e) for m in doc.measures for e in m.parts[0].voices[0].events]
    assert TupletEvent in shapes and TremoloEvent in shapes
    assert len(doc.measures[1].parts[0].voices[0].events[0].pitches) == 3
    for decode, encode in [(lilylet.decode_musicxml, lilylet.encode_musicxml),
                           (lilylet.decode_lilypond, lilylet.encode_lilypond)]:
        assert decode(encode(doc)).metadata.title == "Everything"


def test_abc_to_every_encoder():
    doc = lilylet.decode_abc("X:1\nT:Tune\nM:6/8\nL:1/8\nK:Am\nABc def|(3efg a3|]\n")
    assert lilylet.serialize_native(doc).startswith('[title "Tune"]')
    assert "\\key a \\minor" in lilylet.encode_lilypond(doc)
    assert "<fifths>0</fifths>" in lilylet.encode_musicxml(doc)
    assert 'keysig="0"' in lilylet.encode_mei(doc)
