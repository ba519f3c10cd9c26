import xml.etree.ElementTree as ET

import pytest

from lilylet.core.errors import EncodeError
from lilylet.core.types import (
    Document, Measure, Part, Voice, Pitch, Phonet, Accidental, Duration, Ratio, KeySignature,
    Clef, Tempo, NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Dynamic, DynamicType, Hairpin, HairpinType, Articulation, ArticulationType, Ornament, OrnamentType,
)
from lilylet.formats.lyl.parser import LylParser
from lilylet.formats.mei.generator import MeiGenerator, DEFAULT_TITLE

NS = "{http://www.music-encoding.org/ns/mei}"
XML_ID = "{http://www.w3.org/XML/1998/namespace}id"


def encode(doc):
    return ET.fromstring(MeiGenerator.generate(doc).encode("utf-8"))


def find_all(root, tag):
    return list(root.iter(NS + tag))


def one_measure(events, **kwargs):
    return Document(measures=[Measure(parts=[Part(voices=[Voice(events=events)])], **kwargs)])


def test_root_and_head():
    root = encode(LylParser.parse('[title "Piece"]\n[composer "Someone"]\nc1 |'))
    assert root.tag == NS + "mei"
    assert root.get("meiversion") == "5.0"
    assert root.find(f"{NS}meiHead/{NS}fileDesc/{NS}titleStmt/{NS}title").text == "Piece"
    assert root.find(f"{NS}meiHead/{NS}fileDesc/{NS}titleStmt/{NS}composer").text == "Someone"


def test_default_title():
    root = encode(LylParser.parse("c1 |"))
    assert find_all(root, "title")[0].text == DEFAULT_TITLE


def test_empty_document_encodes_to_nothing():
    assert MeiGenerator.generate(Document()) == ""


def test_note_attributes():
    doc = one_measure([NoteEvent([Pitch(Phonet.F, 1, Accidental.SHARP)], Duration(4, 1)),
                       NoteEvent([Pitch(Phonet.B, -1)], Duration(8), [Articulation(ArticulationType.STACCATO)]),
                       RestEvent(Duration(2))])
    root = encode(doc)
    first, second = find_all(root, "note")
    assert (first.get("pname"), first.get("oct"), first.get("accid")) == ("f", "5", "s")
    assert (first.get("dur"), first.get("dots")) == ("4", "1")
    assert second.get("oct") == "3"
    assert second.find(NS + "artic").get("artic") == "stacc"
    assert find_all(root, "rest")[0].get("dur") == "2"


def test_ids_are_deterministic():
    doc = LylParser.parse(r"c4( d e f) | <c e g>1\p |")
    assert MeiGenerator.generate(doc) == MeiGenerator.generate(doc)
    ids = [e.get(XML_ID) for e in encode(doc).iter() if e.get(XML_ID)]
    assert len(ids) == len(set(ids))
    assert find_all(encode(doc), "note")[0].get(XML_ID).startswith("note-")


def test_score_def_and_key_changes():
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.G)], Duration(1))])])],
                key=KeySignature(Phonet.G), time_sig=Ratio(3, 4)),
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.B)], Duration(1))])])],
                key=KeySignature(Phonet.E, Accidental.FLAT)),
    ])
    root = encode(doc)
    score_defs = find_all(root, "scoreDef")
    assert score_defs[0].get("keysig") == "1s"
    assert score_defs[0].get("meter.count") == "3"
    assert score_defs[1].get("keysig") == "3f"
    assert score_defs[1].get("meter.count") is None


def test_natural_key():
    root = encode(LylParser.parse("c1 |"))
    assert find_all(root, "scoreDef")[0].get("keysig") == "0"


def test_tuplet():
    triplet = TupletEvent(Ratio(2, 3), [NoteEvent([Pitch(Phonet(p))], Duration(8)) for p in "cde"])
    root = encode(one_measure([triplet, NoteEvent([Pitch(Phonet.C)], Duration(2, 1))]))
    tuplet = find_all(root, "tuplet")[0]
    assert (tuplet.get("num"), tuplet.get("numbase")) == ("3", "2")
    assert len(tuplet.findall(NS + "note")) == 3


def test_chord():
    root = encode(LylParser.parse("<c e g>1 |"))
    chord = find_all(root, "chord")[0]
    assert chord.get("dur") == "1"
    assert [n.get("pname") for n in chord.findall(NS + "note")] == ["c", "e", "g"]


def test_ties_across_measures():
    doc = LylParser.parse("c1~ | c1 |")
    first, second = find_all(encode(doc), "note")
    assert first.get("tie") == "i"
    assert second.get("tie") == "t"


def test_slurs():
    first, _, last = find_all(encode(LylParser.parse("c2( d4 e) |")), "note")
    assert first.get("slur") == "i1"
    assert last.get("slur") == "t1"


def test_dynamics_and_hairpins():
    doc = one_measure([
        NoteEvent([Pitch(Phonet.C)], Duration(2), [Dynamic(DynamicType.P), Hairpin(HairpinType.CRESCENDO_START)]),
        NoteEvent([Pitch(Phonet.E)], Duration(2), [Hairpin(HairpinType.CRESCENDO_END)]),
    ])
    root = encode(doc)
    first, second = find_all(root, "note")
    dynam = find_all(root, "dynam")[0]
    assert dynam.text == "p"
    assert dynam.get("startid") == "#" + first.get(XML_ID)
    hairpin = find_all(root, "hairpin")[0]
    assert hairpin.get("form") == "cres"
    assert hairpin.get("startid") == "#" + first.get(XML_ID)
    assert hairpin.get("endid") == "#" + second.get(XML_ID)


def test_hairpin_spanning_measures_lives_where_it_starts():
    doc = LylParser.parse(r"c1\> | d1\! |")
    root = encode(doc)
    first_measure, second_measure = find_all(root, "measure")
    assert first_measure.find(NS + "hairpin").get("form") == "dim"
    assert second_measure.find(NS + "hairpin") is None


def test_fermata_and_trill():
    doc = one_measure([NoteEvent([Pitch(Phonet.C)], Duration(1),
                                 [Ornament(OrnamentType.FERMATA), Ornament(OrnamentType.TRILL)])])
    note = find_all(encode(doc), "note")[0]
    assert note.find(NS + "fermata") is not None
    assert note.find(NS + "trill") is not None


def test_tremolos():
    doc = one_measure([
        TremoloEvent([Pitch(Phonet.C)], [Pitch(Phonet.E)], 4, 16),
        NoteEvent([Pitch(Phonet.G)], Duration(2), tremolo=16),
    ])
    root = encode(doc)
    ftrem = find_all(root, "fTrem")[0]
    assert ftrem.get("unitdur") == "16"
    assert [n.get("dur") for n in ftrem.findall(NS + "note")] == ["4", "4"]
    btrem = find_all(root, "bTrem")[0]
    assert btrem.find(NS + "note").get("pname") == "g"


def test_two_staves_get_a_brace():
    doc = LylParser.parse(r'\staff "1" c1 \\ \staff "2" \clef "bass" c,1 |')
    root = encode(doc)
    group = find_all(root, "staffGrp")[0]
    assert group.get("symbol") == "brace"
    staff_defs = group.findall(NS + "staffDef")
    assert [d.get("clef.shape") for d in staff_defs] == ["G", "F"]
    assert len(find_all(root, "staff")) == 2


def test_rests_spaces_and_measure_rests():
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(events=[RestEvent(Duration(2), invisible=True), RestEvent(Duration(2))])])]),
        Measure(parts=[Part(voices=[Voice(events=[RestEvent(Duration(1), full_measure=True)])])]),
    ])
    root = encode(doc)
    assert len(find_all(root, "space")) == 1
    assert len(find_all(root, "mRest")) == 1


def test_partial_measure_and_barlines():
    doc = Document(measures=[
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.G)], Duration(4))])])], partial=True),
        Measure(parts=[Part(voices=[Voice(events=[NoteEvent([Pitch(Phonet.C)], Duration(1)), BarlineEvent("|.")])])]),
    ])
    first, second = find_all(encode(doc), "measure")
    assert first.get("metcon") == "false"
    assert second.get("right") == "end"


def test_tempo_and_clef_changes():
    doc = one_measure([ContextChange(tempo=Tempo("Allegro", Duration(4), 120)),
                       NoteEvent([Pitch(Phonet.C)], Duration(2)),
                       ContextChange(clef=Clef.BASS),
                       NoteEvent([Pitch(Phonet.C, -1)], Duration(2))])
    root = encode(doc)
    tempo = find_all(root, "tempo")[0]
    assert tempo.get("midi.bpm") == "120"
    assert tempo.get("tstamp") == "1"
    assert tempo.text.startswith("Allegro")
    assert find_all(root, "clef")[0].get("shape") == "F"


def test_rejects_irregular_duration():
    with pytest.raises(EncodeError):
        MeiGenerator.generate(one_measure([NoteEvent([Pitch(Phonet.C)], Duration(3))]))


def test_does_not_change_input():
    doc = LylParser.parse(r"\times 2/3 { c8 d e } c2. |")
    before = repr(doc)
    MeiGenerator.generate(doc, None)
    assert repr(doc) == before
    assert doc.measures[0].parts[0].voices[0].events[0].events[0].duration.tuplet is None
