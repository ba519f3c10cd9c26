import logging
import xml.etree.ElementTree as ET
from fractions import Fraction
from typing import Dict, List, Optional, Set, Tuple

from ...core.types import (
    Document, Metadata, Measure, Voice, Pitch, Duration, KeySignature, Ratio, Tempo, Clef,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation,
    OrnamentType, PedalType, HairpinType, StemDirection,
)
from ...core.duration import fraction_to_division_dots, event_length, is_power_of_two
from ...core.theory import key_to_fifths
from ...core.marks import MEI_ACCIDENTAL, MEI_ARTICULATION
from ...core.layout import staff_counts, staff_offsets
from ...core.errors import EncodeError

logger = logging.getLogger(__name__)

MEI_NAMESPACE = "http://www.music-encoding.org/ns/mei"
XML_ID = "{http://www.w3.org/XML/1998/namespace}id"
DEFAULT_TITLE = "Lilylet Export"

CLEF_SHAPES = {Clef.TREBLE: ("G", 2), Clef.BASS: ("F", 4), Clef.ALTO: ("C", 3)}

ORNAMENT_ELEMENTS = {
    OrnamentType.TRILL: "trill",
    OrnamentType.ARPEGGIO: "arpeg",
    OrnamentType.TURN: "turn",
    OrnamentType.MORDENT: "mordent",
    OrnamentType.PRALL: "mordent",
}

PEDAL_SPANS = {
    PedalType.SUSTAIN_ON: ("sustain", True), PedalType.SUSTAIN_OFF: ("sustain", False),
    PedalType.SOSTENUTO_ON: ("sostenuto", True), PedalType.SOSTENUTO_OFF: ("sostenuto", False),
    PedalType.UNA_CORDA_ON: ("unacorda", True), PedalType.UNA_CORDA_OFF: ("unacorda", False),
}

# Right barline of a measure, or the left one for a forward repeat.
BARLINE_RENDITIONS = {
    "||": ("right", "dbl"),
    "|.": ("right", "end"),
    ":|.": ("right", "rptend"),
    ":..:": ("right", "rptboth"),
    ".|:": ("left", "rptstart"),
}


def key_sig(key: Optional[KeySignature]) -> str:
    fifths = key_to_fifths(key)
    if fifths == 0:
        return "0"
    return f"{abs(fifths)}{'s' if fifths > 0 else 'f'}"


def pitch_attributes(pitch: Pitch) -> Dict[str, str]:
    attrib = {"pname": pitch.phonet.value, "oct": str(pitch.octave + 4)}
    if pitch.accidental:
        attrib["accid"] = MEI_ACCIDENTAL[pitch.accidental]
    return attrib


def duration_attributes(duration: Duration) -> Dict[str, str]:
    if not is_power_of_two(duration.division):
        raise EncodeError(f"Duration division {duration.division} is not a power of two")
    attrib = {"dur": str(duration.division)}
    if duration.dots:
        attrib["dots"] = str(duration.dots)
    return attrib


def pitch_keys(pitches: List[Pitch]) -> Set[Tuple]:
    return {(p.phonet, p.octave) for p in pitches}


class _Ids:
    """Sequential xml:id values; each encode call starts from 1."""

    def __init__(self):
        self.count = 0

    def next(self, prefix: str) -> str:
        self.count += 1
        return f"{prefix}-{self.count:010d}"

    def element(self, parent: ET.Element, tag: str, **attrib) -> ET.Element:
        element = ET.SubElement(parent, tag, {k.replace("_", "."): str(v) for k, v in attrib.items()})
        element.set(XML_ID, self.next(tag.lower()))
        return element


class _Span:
    """An open control event waiting for the note that ends it."""

    def __init__(self, measure: ET.Element, tag: str, start_id: str, attrib: Dict[str, str]):
        self.measure = measure
        self.tag = tag
        self.start_id = start_id
        self.attrib = attrib


class _LayerState:
    """Per (staff, layer) state that survives measure boundaries."""

    def __init__(self):
        self.ties: Set[Tuple] = set()
        self.hairpin: Optional[_Span] = None
        self.pedals: Dict[str, _Span] = {}
        self.octave: Optional[_Span] = None
        self.pending_ottava: Optional[int] = None
        self.stem: Optional[StemDirection] = None
        self.last_id: Optional[str] = None


class _LayerWriter:
    """Writes one voice of one measure as an MEI layer."""

    def __init__(self, ids: _Ids, state: _LayerState, measure: ET.Element, staff: int, offset: int,
                 time: Ratio):
        self.ids = ids
        self.state = state
        self.measure = measure
        self.staff = staff
        self.offset = offset
        self.time = time
        self.elapsed = Fraction(0)

    def tstamp(self) -> str:
        beat = 1 + self.elapsed * self.time.denominator
        return str(int(beat)) if beat.denominator == 1 else str(float(beat))

    def control(self, tag: str, **attrib) -> ET.Element:
        return self.ids.element(self.measure, tag, staff=self.staff, **attrib)

    def write(self, layer: ET.Element, voice: Voice):
        self.events(layer, voice.events, voice)

    def events(self, parent: ET.Element, events: list, voice: Voice, ratio: Optional[Ratio] = None):
        container = parent
        for event in events:
            if isinstance(event, NoteEvent):
                if any(isinstance(m, Beam) and m.start for m in event.marks) and container is parent:
                    container = self.ids.element(parent, "beam")
                self.note(container, event, voice)
                if any(isinstance(m, Beam) and not m.start for m in event.marks):
                    container = parent
                self.advance(event_length(event), ratio)
            elif isinstance(event, RestEvent):
                self.rest(container, event)
                self.advance(self.rest_length(event), ratio)
            elif isinstance(event, TupletEvent):
                self.tuplet(container, event, voice)
            elif isinstance(event, TremoloEvent):
                self.tremolo(container, event)
                self.advance(event_length(event), ratio)
            elif isinstance(event, ContextChange):
                self.context(container, event)
            elif isinstance(event, BarlineEvent):
                pass
            else:
                raise TypeError(f"Unknown event {event!r}")

    def advance(self, length: Fraction, ratio: Optional[Ratio]):
        if ratio is not None:
            length *= Fraction(ratio.numerator, ratio.denominator)
        self.elapsed += length

    def rest_length(self, event: RestEvent) -> Fraction:
        if event.full_measure:
            return Fraction(self.time.numerator, self.time.denominator)
        return event.duration.as_fraction()

    def note(self, parent: ET.Element, event: NoteEvent, voice: Voice):
        if not event.pitches:
            raise EncodeError("Note event without pitches")
        attrib = duration_attributes(event.duration)
        if event.grace:
            attrib["grace"] = "unacc"

        keys = pitch_keys(event.pitches)
        tie_end = bool(self.state.ties) and keys == self.state.ties
        tie_start = any(isinstance(m, Tie) and m.start for m in event.marks)
        tie = "m" if tie_start and tie_end else "i" if tie_start else "t" if tie_end else None
        if tie:
            attrib["tie"] = tie
        self.state.ties = keys if tie_start else set()

        slurs = ["i1" if m.start else "t1" for m in event.marks if isinstance(m, Slur)]
        if slurs:
            attrib["slur"] = " ".join(slurs)
        stem = event.stem_direction or self.state.stem
        if stem and stem != StemDirection.AUTO:
            attrib["stem.dir"] = stem.value
        if event.staff and event.staff != voice.staff:
            attrib["staff"] = str(self.offset + event.staff)

        if event.tremolo:
            parent = self.ids.element(parent, "bTrem", unitdur=event.tremolo)
        if len(event.pitches) == 1:
            attrib.update(pitch_attributes(event.pitches[0]))
            element = ET.SubElement(parent, "note", attrib)
            element.set(XML_ID, self.ids.next("note"))
        else:
            element = ET.SubElement(parent, "chord", attrib)
            element.set(XML_ID, self.ids.next("chord"))
            for pitch in event.pitches:
                self.ids.element(element, "note", **pitch_attributes(pitch))
        element_id = element.get(XML_ID)
        self.children(element, event)
        self.controls(event, element_id)
        self.state.last_id = element_id

    def children(self, element: ET.Element, event: NoteEvent):
        artics = [MEI_ARTICULATION[m.type] for m in event.marks if isinstance(m, Articulation)]
        if artics:
            ET.SubElement(element, "artic", {"artic": " ".join(artics)})
        for mark in event.marks:
            if not isinstance(mark, Ornament):
                continue
            if mark.type == OrnamentType.FERMATA:
                self.ids.element(element, "fermata")
            elif mark.type == OrnamentType.SHORT_FERMATA:
                self.ids.element(element, "fermata", shape="angular")
            elif mark.type == OrnamentType.PRALL:
                self.ids.element(element, "mordent", form="upper")
            else:
                self.ids.element(element, ORNAMENT_ELEMENTS[mark.type])

    def controls(self, event: NoteEvent, element_id: str):
        state = self.state
        if state.pending_ottava:
            dis = 15 if abs(state.pending_ottava) >= 2 else 8
            place = "above" if state.pending_ottava > 0 else "below"
            state.octave = _Span(self.measure, "octave", element_id, {"dis": str(dis), "dis.place": place})
            state.pending_ottava = None

        for mark in event.marks:
            if isinstance(mark, Dynamic):
                self.control("dynam", startid=f"#{element_id}").text = mark.type.value
            elif isinstance(mark, Fingering):
                self.control("fing", startid=f"#{element_id}").text = str(mark.finger)
            elif isinstance(mark, Navigation):
                self.control("dir", startid=f"#{element_id}").text = mark.type.value.capitalize()
            elif isinstance(mark, Hairpin):
                if mark.type.is_start:
                    form = "cres" if mark.type == HairpinType.CRESCENDO_START else "dim"
                    state.hairpin = _Span(self.measure, "hairpin", element_id, {"form": form})
                elif state.hairpin:
                    self.close(state.hairpin, element_id)
                    state.hairpin = None
                else:
                    logger.debug(f"Hairpin end without a start at {element_id}, skipping")
            elif isinstance(mark, Pedal):
                kind, down = PEDAL_SPANS[mark.type]
                if down:
                    attrib = {"dir": "down"}
                    if kind != "sustain":
                        attrib["func"] = kind
                    state.pedals[kind] = _Span(self.measure, "pedal", element_id, attrib)
                elif kind in state.pedals:
                    self.close(state.pedals.pop(kind), element_id)

    def close(self, span: _Span, end_id: str):
        """Writes the control event into the measure where its span began."""
        self.ids.element(span.measure, span.tag, staff=self.staff, startid=f"#{span.start_id}",
                         endid=f"#{end_id}", **{k.replace(".", "_"): v for k, v in span.attrib.items()})

    def rest(self, parent: ET.Element, event: RestEvent):
        if event.full_measure:
            self.ids.element(parent, "mRest")
            return
        attrib = duration_attributes(event.duration)
        if event.invisible:
            element = ET.SubElement(parent, "space", attrib)
            element.set(XML_ID, self.ids.next("space"))
            return
        if event.pitch:
            attrib["ploc"] = event.pitch.phonet.value
            attrib["oloc"] = str(event.pitch.octave + 4)
        element = ET.SubElement(parent, "rest", attrib)
        element.set(XML_ID, self.ids.next("rest"))

    def tuplet(self, parent: ET.Element, event: TupletEvent, voice: Voice):
        if event.ratio.numerator <= 0 or event.ratio.denominator <= 0:
            raise EncodeError(f"Invalid tuplet ratio {event.ratio}")
        element = self.ids.element(parent, "tuplet", num=event.ratio.denominator, numbase=event.ratio.numerator)
        self.events(element, event.events, voice, event.ratio)

    def tremolo(self, parent: ET.Element, event: TremoloEvent):
        element = self.ids.element(parent, "fTrem", unitdur=event.division)
        duration = fraction_to_division_dots(event.count, event.division)
        for pitches in (event.pitch_a, event.pitch_b):
            if not pitches:
                raise EncodeError("Tremolo without pitches")
            attrib = duration_attributes(duration)
            if len(pitches) == 1:
                self.ids.element(element, "note", **attrib, **pitch_attributes(pitches[0]))
                continue
            chord = self.ids.element(element, "chord", **attrib)
            for pitch in pitches:
                self.ids.element(chord, "note", **pitch_attributes(pitch))

    def context(self, parent: ET.Element, event: ContextChange):
        if event.clef:
            shape, line = CLEF_SHAPES[event.clef]
            self.ids.element(parent, "clef", shape=shape, line=line)
        if event.key:
            self.ids.element(parent, "keySig", sig=key_sig(event.key))
        if event.time:
            self.ids.element(parent, "meterSig", count=event.time.numerator, unit=event.time.denominator)
        if event.stem_direction:
            self.state.stem = None if event.stem_direction == StemDirection.AUTO else event.stem_direction
        if event.ottava is not None:
            if event.ottava == 0:
                if self.state.octave and self.state.last_id:
                    self.close(self.state.octave, self.state.last_id)
                self.state.octave = None
                self.state.pending_ottava = None
            else:
                self.state.pending_ottava = event.ottava
        if event.tempo:
            self.tempo(event.tempo)

    def tempo(self, tempo: Tempo):
        attrib = {"tstamp": self.tstamp()}
        if tempo.bpm:
            attrib["midi.bpm"] = str(tempo.bpm)
            if tempo.beat:
                attrib["mm"] = str(tempo.bpm)
                attrib["mm.unit"] = str(tempo.beat.division)
                if tempo.beat.dots:
                    attrib["mm.dots"] = str(tempo.beat.dots)
        element = self.control("tempo", **{k.replace(".", "_"): v for k, v in attrib.items()})
        words = [tempo.text] if tempo.text else []
        if tempo.beat and tempo.bpm:
            words.append(f"{'♩' if tempo.beat.division == 4 else '♪' if tempo.beat.division >= 8 else '𝅗𝅥'} = {tempo.bpm}")
        if words:
            element.text = " ".join(words)


class MeiGenerator:
    @staticmethod
    def generate(doc: Document, options=None) -> str:
        """
        Encodes a Document as an MEI 5.0 score.

        Staves of all parts are numbered consecutively in one staff group. Spanning
        marks (hairpins, pedals, octave lines) become control events in the measure
        where they start, pointing at their first and last notes by xml:id.
        """
        if not doc.measures:
            logger.debug("Empty document, nothing to encode")
            return ""

        ids = _Ids()
        counts = staff_counts(doc) or [1]
        offsets = staff_offsets(counts)
        total = sum(counts)

        root = ET.Element("mei", {"xmlns": MEI_NAMESPACE, "meiversion": "5.0"})
        MeiGenerator._head(root, doc.metadata)
        music = ET.SubElement(root, "music")
        body = ET.SubElement(music, "body")
        mdiv = ids.element(body, "mdiv")
        score = ids.element(mdiv, "score")

        time = doc.measures[0].time_sig or Ratio(4, 4)
        MeiGenerator._score_def(ids, score, doc, doc.measures[0], total, offsets)
        section = ids.element(score, "section")

        states: Dict[Tuple[int, int], _LayerState] = {}
        for index, measure in enumerate(doc.measures):
            if index > 0 and (measure.key or measure.time_sig):
                change = ids.element(section, "scoreDef")
                if measure.key:
                    change.set("keysig", key_sig(measure.key))
                if measure.time_sig:
                    change.set("meter.count", str(measure.time_sig.numerator))
                    change.set("meter.unit", str(measure.time_sig.denominator))
            if measure.time_sig:
                time = measure.time_sig
            MeiGenerator._measure(ids, section, measure, index + 1, total, offsets, time, states)

        # Octave lines still open at the end close on their last note.
        for (staff, _), state in states.items():
            if state.octave and state.last_id:
                _LayerWriter(ids, state, state.octave.measure, staff, 0, time).close(state.octave, state.last_id)

        ET.indent(root, space="    ")
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"

    @staticmethod
    def _head(root: ET.Element, metadata: Optional[Metadata]):
        metadata = metadata or Metadata()
        head = ET.SubElement(root, "meiHead")
        file_desc = ET.SubElement(head, "fileDesc")
        title_stmt = ET.SubElement(file_desc, "titleStmt")
        ET.SubElement(title_stmt, "title").text = metadata.title or DEFAULT_TITLE
        if metadata.subtitle:
            ET.SubElement(title_stmt, "title", {"type": "subordinate"}).text = metadata.subtitle
        for role in ("composer", "arranger", "lyricist"):
            value = getattr(metadata, role)
            if value:
                ET.SubElement(title_stmt, role).text = value
        ET.SubElement(file_desc, "pubStmt")
        encoding_desc = ET.SubElement(head, "encodingDesc")
        project_desc = ET.SubElement(encoding_desc, "projectDesc")
        ET.SubElement(project_desc, "p").text = "Encoded with Lilylet"

    @staticmethod
    def _score_def(ids: _Ids, score: ET.Element, doc: Document, first: Measure, total: int, offsets: List[int]):
        time = first.time_sig or Ratio(4, 4)
        score_def = ids.element(score, "scoreDef")
        score_def.set("keysig", key_sig(first.key))
        score_def.set("meter.count", str(time.numerator))
        score_def.set("meter.unit", str(time.denominator))

        clefs = MeiGenerator._first_clefs(doc, offsets)
        group = ids.element(score_def, "staffGrp")
        if total > 1:
            group.set("symbol", "brace" if total == 2 else "bracket")
        for staff in range(1, total + 1):
            shape, line = CLEF_SHAPES[clefs.get(staff, Clef.TREBLE)]
            ids.element(group, "staffDef", n=staff, lines=5, clef_shape=shape, clef_line=line)

    @staticmethod
    def _first_clefs(doc: Document, offsets: List[int]) -> Dict[int, Clef]:
        """Clef each staff opens with: the first clef change it sees before any note."""
        clefs: Dict[int, Clef] = {}
        closed: Set[int] = set()
        for measure in doc.measures:
            for pi, part in enumerate(measure.parts):
                for voice in part.voices:
                    staff = offsets[pi] + voice.staff
                    for event in voice.events:
                        if isinstance(event, ContextChange) and event.clef and staff not in closed:
                            clefs.setdefault(staff, event.clef)
                        elif isinstance(event, (NoteEvent, RestEvent, TupletEvent, TremoloEvent)):
                            closed.add(staff)
        return clefs

    @staticmethod
    def _measure(ids: _Ids, section: ET.Element, measure: Measure, number: int, total: int,
                 offsets: List[int], time: Ratio, states: Dict[Tuple[int, int], _LayerState]):
        element = ids.element(section, "measure", n=number)
        if measure.partial:
            element.set("metcon", "false")

        by_staff: Dict[int, List[Tuple[Voice, int]]] = {}
        for pi, part in enumerate(measure.parts):
            for voice in part.voices:
                by_staff.setdefault(offsets[pi] + voice.staff, []).append((voice, offsets[pi]))

        writers = []
        for staff in range(1, total + 1):
            staff_element = ids.element(element, "staff", n=staff)
            voices = by_staff.get(staff, [])
            if not voices:
                ids.element(staff_element, "layer", n=1)
                continue
            for layer_n, (voice, offset) in enumerate(voices, start=1):
                layer = ids.element(staff_element, "layer", n=layer_n)
                state = states.setdefault((staff, layer_n), _LayerState())
                writer = _LayerWriter(ids, state, element, staff, offset, time)
                writers.append((writer, layer, voice))

        # Layers are filled after all staves exist so control events follow them.
        for writer, layer, voice in writers:
            writer.write(layer, voice)

        for _, _, voice in writers:
            for event in voice.events:
                if isinstance(event, BarlineEvent) and event.style in BARLINE_RENDITIONS:
                    side, rendition = BARLINE_RENDITIONS[event.style]
                    element.set(side, rendition)
