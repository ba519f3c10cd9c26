import logging
import math
import xml.etree.ElementTree as ET
from fractions import Fraction
from typing import Dict, List, Optional, Set, Tuple

from ...core.types import (
    Document, Metadata, Measure, Voice, Pitch, Duration, KeySignature, Ratio, Tempo, Clef,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation,
    OrnamentType, HairpinType, PedalType, StemDirection, Accidental,
)
from ...core.duration import fraction_to_division_dots, is_power_of_two, scaled
from ...core.theory import key_to_fifths, alter_of
from ...core.marks import ARTICULATION_TO_XML, ORNAMENT_TO_XML, BARLINE_TO_XML
from ...core.layout import staff_counts
from ...core.errors import EncodeError

logger = logging.getLogger(__name__)

# Ticks per quarter note. Divisible by 3, 5 and 7 so common tuplets stay integral.
DIVISIONS = 480

DOCTYPE = ('<!DOCTYPE score-partwise PUBLIC "-//Recordare//DTD MusicXML 4.0 Partwise//EN" '
           '"http://www.musicxml.org/dtds/partwise.dtd">')

TYPE_NAMES = {
    1: "whole", 2: "half", 4: "quarter", 8: "eighth", 16: "16th",
    32: "32nd", 64: "64th", 128: "128th", 256: "256th",
}

CLEF_SIGNS = {Clef.TREBLE: ("G", 2), Clef.BASS: ("F", 4), Clef.ALTO: ("C", 3)}

ACCIDENTAL_NAMES = {
    Accidental.NATURAL: "natural",
    Accidental.SHARP: "sharp",
    Accidental.FLAT: "flat",
    Accidental.DOUBLE_SHARP: "double-sharp",
    Accidental.DOUBLE_FLAT: "flat-flat",
}

PEDAL_TYPES = {
    PedalType.SUSTAIN_ON: ("start", None),
    PedalType.SUSTAIN_OFF: ("stop", None),
    PedalType.SOSTENUTO_ON: ("start", "sostenuto"),
    PedalType.SOSTENUTO_OFF: ("stop", "sostenuto"),
    PedalType.UNA_CORDA_ON: ("start", "una corda"),
    PedalType.UNA_CORDA_OFF: ("stop", "una corda"),
}

WEDGE_TYPES = {
    HairpinType.CRESCENDO_START: "crescendo",
    HairpinType.DIMINUENDO_START: "diminuendo",
    HairpinType.CRESCENDO_END: "stop",
    HairpinType.DIMINUENDO_END: "stop",
}


def ticks(value: Fraction) -> int:
    """Length of a whole-note fraction in divisions."""
    exact = value * 4 * DIVISIONS
    if exact.denominator != 1:
        logger.warning(f"Duration {value} is not a whole number of divisions, rounding")
    return int(round(exact))


def text_element(parent: ET.Element, tag: str, text, **attrib) -> ET.Element:
    element = ET.SubElement(parent, tag, {k.replace("_", "-"): v for k, v in attrib.items()})
    element.text = str(text)
    return element


def check_duration(duration: Duration):
    if not is_power_of_two(duration.division):
        raise EncodeError(f"Duration division {duration.division} is not a power of two")


class _PartWriter:
    """Writes the measures of one part, carrying ties, beams and clefs across measures."""

    def __init__(self, part_index: int, staves: int):
        self.part_index = part_index
        self.staves = staves
        self.time = Ratio(4, 4)
        self.ties: Dict[int, Set[Tuple]] = {}
        self.beams: Dict[int, bool] = {}

    def measure(self, root: ET.Element, measure: Measure, number: int, first: bool):
        element = ET.SubElement(root, "measure", {"number": str(number)})
        if measure.partial:
            element.set("implicit", "yes")
        if measure.time_sig:
            self.time = measure.time_sig

        part = measure.parts[self.part_index] if self.part_index < len(measure.parts) else None
        voices = part.voices if part else []

        clefs = self._leading_clefs(voices)
        if first or measure.key or measure.time_sig or clefs:
            self._attributes(element, measure.key, measure.time_sig, clefs, first)

        position = 0
        barlines: List[str] = []
        for voice_index, voice in enumerate(voices):
            if position:
                backup = ET.SubElement(element, "backup")
                text_element(backup, "duration", position)
            position = self._voice(element, voice, voice_index + 1, barlines)

        if not voices:
            self._whole_rest(element)

        for style in barlines:
            self._barline(element, style)

    def _leading_clefs(self, voices: List[Voice]) -> Dict[int, Clef]:
        clefs: Dict[int, Clef] = {}
        for voice in voices:
            for event in voice.events:
                if isinstance(event, (NoteEvent, RestEvent, TupletEvent, TremoloEvent)):
                    break
                if isinstance(event, ContextChange) and event.clef:
                    clefs.setdefault(event.staff or voice.staff, event.clef)
        return clefs

    def _attributes(self, parent: ET.Element, key: Optional[KeySignature], time: Optional[Ratio],
                    clefs: Dict[int, Clef], first: bool):
        attributes = ET.SubElement(parent, "attributes")
        if first:
            text_element(attributes, "divisions", DIVISIONS)
        if key or first:
            key_element = ET.SubElement(attributes, "key")
            text_element(key_element, "fifths", key_to_fifths(key))
            text_element(key_element, "mode", key.mode if key else "major")
        if time:
            time_element = ET.SubElement(attributes, "time")
            text_element(time_element, "beats", time.numerator)
            text_element(time_element, "beat-type", time.denominator)
        if first and self.staves > 1:
            text_element(attributes, "staves", self.staves)
        for staff in sorted(clefs):
            self._clef(attributes, clefs[staff], staff)

    def _clef(self, attributes: ET.Element, clef: Clef, staff: int):
        element = ET.SubElement(attributes, "clef")
        if self.staves > 1:
            element.set("number", str(staff))
        sign, line = CLEF_SIGNS[clef]
        text_element(element, "sign", sign)
        text_element(element, "line", line)

    def _whole_rest(self, parent: ET.Element):
        note = ET.SubElement(parent, "note")
        ET.SubElement(note, "rest", {"measure": "yes"})
        text_element(note, "duration", ticks(Fraction(self.time.numerator, self.time.denominator)))
        text_element(note, "voice", 1)

    def _voice(self, parent: ET.Element, voice: Voice, number: int, barlines: List[str]) -> int:
        position = 0
        leading = True
        pending: List[ET.Element] = []
        for event in voice.events:
            if isinstance(event, NoteEvent):
                leading = False
                self._directions(parent, event, voice, pending)
                position += self._note(parent, event, event.duration, voice, number)
            elif isinstance(event, RestEvent):
                leading = False
                self._flush(parent, pending)
                position += self._rest(parent, event, event.duration, voice, number)
            elif isinstance(event, TupletEvent):
                leading = False
                position += self._tuplet(parent, event, voice, number, pending)
            elif isinstance(event, TremoloEvent):
                leading = False
                self._flush(parent, pending)
                position += self._tremolo(parent, event, voice, number)
            elif isinstance(event, ContextChange):
                self._context(parent, event, voice, leading, pending)
            elif isinstance(event, BarlineEvent):
                if event.style not in barlines:
                    barlines.append(event.style)
            else:
                raise TypeError(f"Unknown event {event!r}")
        self._flush(parent, pending)
        return position

    def _flush(self, parent: ET.Element, pending: List[ET.Element]):
        parent.extend(pending)
        pending.clear()

    def _context(self, parent: ET.Element, event: ContextChange, voice: Voice, leading: bool,
                 pending: List[ET.Element]):
        clef = event.clef if not leading else None
        if event.key or event.time or clef:
            self._flush(parent, pending)
            attributes = ET.SubElement(parent, "attributes")
            if event.key:
                key_element = ET.SubElement(attributes, "key")
                text_element(key_element, "fifths", key_to_fifths(event.key))
                text_element(key_element, "mode", event.key.mode)
            if event.time:
                self.time = event.time
                time_element = ET.SubElement(attributes, "time")
                text_element(time_element, "beats", event.time.numerator)
                text_element(time_element, "beat-type", event.time.denominator)
            if clef:
                self._clef(attributes, clef, event.staff or voice.staff)
        if event.tempo:
            pending.append(self._tempo(event.tempo, voice.staff))
        if event.ottava is not None:
            direction = self._direction("above" if event.ottava >= 0 else "below", voice.staff)
            shift = ET.SubElement(direction.find("direction-type"), "octave-shift")
            if event.ottava == 0:
                shift.set("type", "stop")
            else:
                shift.set("type", "down" if event.ottava > 0 else "up")
                shift.set("size", str(7 * abs(event.ottava) + 1))
            pending.append(direction)

    def _direction(self, placement: Optional[str], staff: int) -> ET.Element:
        direction = ET.Element("direction")
        if placement:
            direction.set("placement", placement)
        ET.SubElement(direction, "direction-type")
        if self.staves > 1:
            text_element(direction, "staff", staff)
        return direction

    def _tempo(self, tempo: Tempo, staff: int) -> ET.Element:
        direction = ET.Element("direction", {"placement": "above"})
        if tempo.beat and tempo.bpm:
            metronome = ET.SubElement(ET.SubElement(direction, "direction-type"), "metronome")
            text_element(metronome, "beat-unit", TYPE_NAMES.get(tempo.beat.division, "quarter"))
            for _ in range(tempo.beat.dots):
                ET.SubElement(metronome, "beat-unit-dot")
            text_element(metronome, "per-minute", tempo.bpm)
        if tempo.text:
            text_element(ET.SubElement(direction, "direction-type"), "words", tempo.text)
        if self.staves > 1:
            text_element(direction, "staff", staff)
        if tempo.bpm:
            bpm = Fraction(tempo.bpm)
            if tempo.beat:
                bpm *= tempo.beat.as_fraction() * 4
            ET.SubElement(direction, "sound", {"tempo": str(float(bpm)).rstrip("0").rstrip(".")})
        return direction

    def _directions(self, parent: ET.Element, event: NoteEvent, voice: Voice, pending: List[ET.Element]):
        staff = event.staff or voice.staff
        for mark in event.marks:
            if isinstance(mark, Dynamic):
                direction = self._direction("below", staff)
                dynamics = ET.SubElement(direction.find("direction-type"), "dynamics")
                ET.SubElement(dynamics, mark.type.value)
            elif isinstance(mark, Hairpin):
                direction = self._direction("below", staff)
                ET.SubElement(direction.find("direction-type"), "wedge", {"type": WEDGE_TYPES[mark.type]})
            elif isinstance(mark, Pedal):
                direction = self._direction("below", staff)
                kind, label = PEDAL_TYPES[mark.type]
                if label:
                    text_element(direction.find("direction-type"), "words", label)
                else:
                    ET.SubElement(direction.find("direction-type"), "pedal", {"type": kind, "line": "yes"})
            elif isinstance(mark, Navigation):
                direction = self._direction("above", staff)
                ET.SubElement(direction.find("direction-type"), mark.type.value)
            else:
                continue
            pending.append(direction)
        self._flush(parent, pending)

    def _duration(self, note: ET.Element, duration: Duration):
        check_duration(duration)
        text_element(note, "type", TYPE_NAMES.get(duration.division, "whole"))
        for _ in range(duration.dots):
            ET.SubElement(note, "dot")

    def _time_modification(self, note: ET.Element, duration: Duration):
        if duration.tuplet:
            modification = ET.SubElement(note, "time-modification")
            text_element(modification, "actual-notes", duration.tuplet.denominator)
            text_element(modification, "normal-notes", duration.tuplet.numerator)

    def _note(self, parent: ET.Element, event: NoteEvent, duration: Duration, voice: Voice, number: int,
              tuplet: Optional[str] = None, tremolo: Optional[Tuple[str, int]] = None) -> int:
        if not event.pitches:
            raise EncodeError("Note event without pitches")
        staff = event.staff or voice.staff
        length = 0 if event.grace else ticks(duration.as_fraction())
        previous_ties = self.ties.get(number, set())
        current_ties = set()
        tied = any(isinstance(m, Tie) and m.start for m in event.marks)
        beam = self._beam_state(event, number)

        for index, pitch in enumerate(event.pitches):
            key = (pitch.phonet, pitch.octave, alter_of(pitch.accidental))
            stop = key in previous_ties
            start = tied
            if start:
                current_ties.add(key)

            note = ET.SubElement(parent, "note")
            if event.grace:
                ET.SubElement(note, "grace")
            if index > 0:
                ET.SubElement(note, "chord")
            self._pitch(note, pitch)
            if not event.grace:
                text_element(note, "duration", length)
            if stop:
                ET.SubElement(note, "tie", {"type": "stop"})
            if start:
                ET.SubElement(note, "tie", {"type": "start"})
            text_element(note, "voice", number)
            self._duration(note, duration)
            if pitch.accidental:
                text_element(note, "accidental", ACCIDENTAL_NAMES[pitch.accidental])
            self._time_modification(note, duration)
            if event.stem_direction and event.stem_direction != StemDirection.AUTO:
                text_element(note, "stem", event.stem_direction.value)
            if self.staves > 1:
                text_element(note, "staff", staff)
            if beam and index == 0:
                text_element(note, "beam", beam, number="1")
            self._notations(note, event, index, stop, start, tuplet if index == 0 else None,
                            tremolo if index == 0 else None)

        self.ties[number] = current_ties
        return length

    def _beam_state(self, event: NoteEvent, number: int) -> Optional[str]:
        if event.grace:
            return None
        beams = [m for m in event.marks if isinstance(m, Beam)]
        open_beam = self.beams.get(number, False)
        if any(b.start for b in beams):
            self.beams[number] = True
            return "begin"
        if beams:
            self.beams[number] = False
            return "end" if open_beam else None
        return "continue" if open_beam else None

    def _pitch(self, note: ET.Element, pitch: Pitch):
        element = ET.SubElement(note, "pitch")
        text_element(element, "step", pitch.phonet.value.upper())
        alter = alter_of(pitch.accidental)
        if alter:
            text_element(element, "alter", alter)
        text_element(element, "octave", pitch.octave + 4)

    def _notations(self, note: ET.Element, event: NoteEvent, index: int, tie_stop: bool, tie_start: bool,
                   tuplet: Optional[str], tremolo: Optional[Tuple[str, int]]):
        notations = ET.Element("notations")
        if tie_stop:
            ET.SubElement(notations, "tied", {"type": "stop"})
        if tie_start:
            ET.SubElement(notations, "tied", {"type": "start"})
        if index == 0:
            for mark in event.marks:
                if isinstance(mark, Slur):
                    ET.SubElement(notations, "slur", {"type": "start" if mark.start else "stop", "number": "1"})
        if tuplet:
            ET.SubElement(notations, "tuplet", {"type": tuplet, "number": "1"})

        ornaments = [m.type for m in event.marks if isinstance(m, Ornament)]
        if index == 0:
            if OrnamentType.FERMATA in ornaments:
                ET.SubElement(notations, "fermata", {"type": "upright"})
            if OrnamentType.SHORT_FERMATA in ornaments:
                text_element(notations, "fermata", "angled", type="upright")
        if OrnamentType.ARPEGGIO in ornaments:
            ET.SubElement(notations, "arpeggiate")

        if index == 0:
            articulations = [m for m in event.marks if isinstance(m, Articulation)]
            if articulations:
                element = ET.SubElement(notations, "articulations")
                for mark in articulations:
                    child = ET.SubElement(element, ARTICULATION_TO_XML[mark.type])
                    if mark.placement:
                        child.set("placement", mark.placement.value)

            xml_ornaments = [ORNAMENT_TO_XML[o] for o in ornaments if o in ORNAMENT_TO_XML]
            if xml_ornaments or event.tremolo or tremolo:
                element = ET.SubElement(notations, "ornaments")
                for name in xml_ornaments:
                    ET.SubElement(element, name)
                if event.tremolo:
                    strokes = max(1, int(math.log2(event.tremolo)) - 2)
                    text_element(element, "tremolo", strokes, type="single")
                if tremolo:
                    text_element(element, "tremolo", tremolo[1], type=tremolo[0])

            fingerings = [m for m in event.marks if isinstance(m, Fingering)]
            if fingerings:
                technical = ET.SubElement(notations, "technical")
                for mark in fingerings:
                    text_element(technical, "fingering", mark.finger)

        if len(notations):
            note.append(notations)

    def _rest(self, parent: ET.Element, event: RestEvent, duration: Duration, voice: Voice, number: int,
              tuplet: Optional[str] = None) -> int:
        if event.full_measure:
            length = ticks(Fraction(self.time.numerator, self.time.denominator))
        else:
            length = ticks(duration.as_fraction())
        if event.invisible and not tuplet:
            forward = ET.SubElement(parent, "forward")
            text_element(forward, "duration", length)
            return length

        note = ET.SubElement(parent, "note")
        rest = ET.SubElement(note, "rest")
        if event.full_measure:
            rest.set("measure", "yes")
        elif event.pitch:
            text_element(rest, "display-step", event.pitch.phonet.value.upper())
            text_element(rest, "display-octave", event.pitch.octave + 4)
        text_element(note, "duration", length)
        text_element(note, "voice", number)
        if not event.full_measure:
            self._duration(note, duration)
            self._time_modification(note, duration)
        if self.staves > 1:
            text_element(note, "staff", voice.staff)
        if tuplet:
            notations = ET.SubElement(note, "notations")
            ET.SubElement(notations, "tuplet", {"type": tuplet, "number": "1"})
        return length

    def _tuplet(self, parent: ET.Element, event: TupletEvent, voice: Voice, number: int,
                pending: List[ET.Element]) -> int:
        if event.ratio.numerator <= 0 or event.ratio.denominator <= 0:
            raise EncodeError(f"Invalid tuplet ratio {event.ratio}")
        total = 0
        last = len(event.events) - 1
        for index, sub in enumerate(event.events):
            marker = "start" if index == 0 else "stop" if index == last else None
            # Scratch copy: the stored event never carries the ratio.
            duration = scaled(sub.duration, event.ratio)
            if isinstance(sub, NoteEvent):
                self._directions(parent, sub, voice, pending)
                total += self._note(parent, sub, duration, voice, number, tuplet=marker)
            else:
                self._flush(parent, pending)
                total += self._rest(parent, sub, duration, voice, number, tuplet=marker)
        return total

    def _tremolo(self, parent: ET.Element, event: TremoloEvent, voice: Voice, number: int) -> int:
        duration = fraction_to_division_dots(event.count, event.division)
        strokes = max(1, int(math.log2(event.division)) - 2)
        total = 0
        for kind, pitches in (("start", event.pitch_a), ("stop", event.pitch_b)):
            note = NoteEvent(pitches=pitches, duration=duration)
            total += self._note(parent, note, duration, voice, number, tremolo=(kind, strokes))
        return total

    def _barline(self, parent: ET.Element, style: str):
        if style == "|":
            return
        bar_style, repeat = BARLINE_TO_XML.get(style, ("regular", None))
        barline = ET.SubElement(parent, "barline", {"location": "left" if repeat == "forward" else "right"})
        text_element(barline, "bar-style", bar_style)
        if repeat:
            ET.SubElement(barline, "repeat", {"direction": repeat})


class MusicXmlGenerator:
    @staticmethod
    def generate(doc: Document, options=None) -> str:
        """
        Encodes a Document as a partwise MusicXML 4.0 score.

        Options are accepted for symmetry with the LilyPond encoder; page layout is
        left to the rendering application.
        """
        root = ET.Element("score-partwise", {"version": "4.0"})
        MusicXmlGenerator._header(root, doc.metadata)

        counts = staff_counts(doc) or [1]
        part_count = len(counts)
        part_list = ET.SubElement(root, "part-list")
        for index in range(part_count):
            score_part = ET.SubElement(part_list, "score-part", {"id": f"P{index + 1}"})
            text_element(score_part, "part-name", MusicXmlGenerator._part_name(doc, index, part_count))

        for index in range(part_count):
            part = ET.SubElement(root, "part", {"id": f"P{index + 1}"})
            writer = _PartWriter(index, counts[index])
            for number, measure in enumerate(doc.measures, start=1):
                writer.measure(part, measure, number, number == 1)
            logger.debug(f"Wrote part P{index + 1} with {len(doc.measures)} measures")

        ET.indent(root, space="  ")
        body = ET.tostring(root, encoding="unicode")
        return f'<?xml version="1.0" encoding="UTF-8"?>\n{DOCTYPE}\n{body}\n'

    @staticmethod
    def _header(root: ET.Element, metadata: Optional[Metadata]):
        metadata = metadata or Metadata()
        if metadata.title:
            work = ET.SubElement(root, "work")
            text_element(work, "work-title", metadata.title)
        if metadata.subtitle:
            text_element(root, "movement-title", metadata.subtitle)

        identification = ET.SubElement(root, "identification")
        for role in ("composer", "arranger", "lyricist"):
            value = getattr(metadata, role)
            if value:
                text_element(identification, "creator", value, type=role)
        encoding = ET.SubElement(identification, "encoding")
        text_element(encoding, "software", "Lilylet")

    @staticmethod
    def _part_name(doc: Document, index: int, part_count: int) -> str:
        for measure in doc.measures:
            if index < len(measure.parts) and measure.parts[index].name:
                return measure.parts[index].name
        if part_count == 1:
            return (doc.metadata.title if doc.metadata and doc.metadata.title else None) or "Music"
        return f"Part {index + 1}"
