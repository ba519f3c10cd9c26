import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, List, Optional, Tuple

from ...core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Duration, Ratio, Tempo, Clef,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent, Event,
    Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation,
    OrnamentType, HairpinType, NavigationMarkType, Placement, StemDirection, Accidental, Mark,
)
from ...core.duration import fraction_to_division_dots
from ...core.theory import fifths_to_key, accidental_for_alter
from ...core.marks import XML_TO_ARTICULATION, XML_TO_ORNAMENT, XML_TO_DYNAMIC, XML_PEDAL, XML_BAR_STYLE
from ...core.errors import ParseError, EmptyInputError

logger = logging.getLogger(__name__)

TYPE_TO_DIVISION = {
    "whole": 1, "half": 2, "quarter": 4, "eighth": 8, "16th": 16,
    "32nd": 32, "64th": 64, "128th": 128, "256th": 256,
}
LONG_TYPES = ("breve", "long", "maxima")

CLEF_SIGNS = {"G": Clef.TREBLE, "F": Clef.BASS, "C": Clef.ALTO}

# <accidental> names that matter when <alter> alone cannot tell (written naturals).
ACCIDENTAL_NAMES = {
    "natural": Accidental.NATURAL,
    "sharp": Accidental.SHARP,
    "flat": Accidental.FLAT,
    "double-sharp": Accidental.DOUBLE_SHARP,
    "sharp-sharp": Accidental.DOUBLE_SHARP,
    "flat-flat": Accidental.DOUBLE_FLAT,
}

CREATOR_FIELDS = {"composer": "composer", "arranger": "arranger", "lyricist": "lyricist", "poet": "lyricist"}


def child_text(element: Optional[ET.Element], path: str, default: Optional[str] = None) -> Optional[str]:
    if element is None:
        return default
    found = element.find(path)
    if found is None or found.text is None:
        return default
    return found.text.strip()


def child_int(element: Optional[ET.Element], path: str, default: Optional[int] = None) -> Optional[int]:
    text = child_text(element, path)
    try:
        return int(float(text)) if text is not None else default
    except ValueError:
        logger.debug(f"Ignoring non-numeric <{path}> value '{text}'")
        return default


def parse_type(note: ET.Element) -> Optional[Duration]:
    """Written duration from <type> and <dot/> children, or None when <type> is missing."""
    name = child_text(note, "type")
    if name is None:
        return None
    dots = len(note.findall("dot"))
    if name in LONG_TYPES:
        logger.warning(f"Note value '{name}' is longer than a whole note, writing a whole note")
        return Duration(1, dots)
    if name not in TYPE_TO_DIVISION:
        logger.warning(f"Unknown note type '{name}', assuming a quarter")
        return Duration(4, dots)
    return Duration(TYPE_TO_DIVISION[name], dots)


@dataclass
class _VoiceBuilder:
    staff: int
    events: List[Event] = field(default_factory=list)
    elapsed: int = 0
    last_note: Optional[NoteEvent] = None
    tuplet: Optional[TupletEvent] = None
    tremolo_start: Optional[NoteEvent] = None


class _PartReader:
    """Reads the <measure> elements of one <part>, keeping attribute state between measures."""

    def __init__(self, part_element: ET.Element, name: Optional[str]):
        self.element = part_element
        self.name = name
        self.divisions = 1
        self.time = Ratio(4, 4)
        self.wedges: Dict[str, HairpinType] = {}

    def read(self) -> List[Tuple[Part, Dict]]:
        return [self._measure(element) for element in self.element.findall("measure")]

    def _measure(self, element: ET.Element):
        voices: Dict[str, _VoiceBuilder] = {}
        pending_marks: Dict[int, List[Mark]] = {}
        pending_context: Dict[int, List[ContextChange]] = {}
        heading = {"key": None, "time": None, "barlines": []}
        position = 0
        last_voice: Optional[_VoiceBuilder] = None
        seen_note = False

        for child in element:
            if child.tag == "attributes":
                self._attributes(child, heading, pending_context, at_start=not seen_note)
            elif child.tag == "direction":
                self._direction(child, pending_marks, pending_context)
            elif child.tag == "backup":
                position -= self._ticks(child)
                position = max(position, 0)
            elif child.tag == "forward":
                position += self._ticks(child)
            elif child.tag == "note":
                seen_note = True
                voice_id = child_text(child, "voice", "1")
                staff = child_int(child, "staff", 1)
                is_chord = child.find("chord") is not None
                voice = voices.get(voice_id)
                if voice is None:
                    voice = voices[voice_id] = _VoiceBuilder(staff=staff)
                last_voice = voice

                if not is_chord and voice.elapsed < position:
                    self._pad(voice, position - voice.elapsed)

                context = pending_context.pop(staff, []) + pending_context.pop(0, [])
                for change in context:
                    self._close_tuplet(voice)
                    if change.staff == voice.staff:
                        change.staff = None
                    voice.events.append(change)

                length = self._note(child, voice, staff, pending_marks.pop(staff, []), is_chord)
                if not is_chord:
                    position += length
                    voice.elapsed = position
            elif child.tag == "barline":
                style = self._barline(child)
                if style:
                    heading["barlines"].append(style)
            else:
                logger.debug(f"Skipping <{child.tag}> in measure {element.get('number')}")

        # Trailing <forward> elements with nothing after them.
        if last_voice is not None and last_voice.elapsed < position:
            self._pad(last_voice, position - last_voice.elapsed)

        built = []
        for voice in voices.values():
            self._close_tuplet(voice)
            if voice.tremolo_start is not None:
                logger.warning("Unterminated two-note tremolo, keeping the first note")
                voice.events.append(voice.tremolo_start)
            built.append(Voice(staff=voice.staff, events=voice.events))

        leftovers = [c for changes in pending_context.values() for c in changes]
        if leftovers:
            if not built:
                built.append(Voice())
            built[0].events.extend(leftovers)
        if heading["barlines"]:
            if not built:
                built.append(Voice())
            built[0].events.extend(BarlineEvent(style) for style in heading["barlines"])

        heading["partial"] = element.get("implicit") == "yes"
        return Part(voices=built, name=self.name), heading

    def _ticks(self, element: ET.Element) -> int:
        return child_int(element, "duration", 0)

    def _fraction(self, ticks: int) -> Fraction:
        return Fraction(ticks, 4 * self.divisions)

    def _pad(self, voice: _VoiceBuilder, ticks: int):
        self._close_tuplet(voice)
        value = self._fraction(ticks)
        duration = fraction_to_division_dots(value.numerator, value.denominator)
        voice.events.append(RestEvent(duration=duration, invisible=True))
        voice.elapsed += ticks

    def _attributes(self, element: ET.Element, heading: Dict, pending_context: Dict[int, List[ContextChange]],
                    at_start: bool):
        self.divisions = child_int(element, "divisions", self.divisions)

        key_element = element.find("key")
        if key_element is not None and key_element.find("fifths") is not None:
            key = fifths_to_key(child_int(key_element, "fifths", 0), child_text(key_element, "mode"))
            if key is not None:
                if at_start:
                    heading["key"] = key
                else:
                    pending_context.setdefault(0, []).append(ContextChange(key=key))

        time_element = element.find("time")
        if time_element is not None and time_element.find("beats") is not None:
            beats = child_text(time_element, "beats", "4")
            beat_type = child_int(time_element, "beat-type", 4)
            try:
                numerator = sum(int(b) for b in beats.split("+"))
            except ValueError:
                raise ParseError(f"Invalid time signature beats '{beats}'")
            time = Ratio(numerator, beat_type)
            self.time = time
            if at_start:
                heading["time"] = time
            else:
                pending_context.setdefault(0, []).append(ContextChange(time=time))

        for clef_element in element.findall("clef"):
            sign = child_text(clef_element, "sign", "G")
            clef = CLEF_SIGNS.get(sign)
            if clef is None:
                logger.warning(f"Unsupported clef sign '{sign}', skipping")
                continue
            staff = int(clef_element.get("number", "1"))
            pending_context.setdefault(staff, []).append(ContextChange(clef=clef, staff=staff))

    def _direction(self, element: ET.Element, pending_marks: Dict[int, List[Mark]],
                   pending_context: Dict[int, List[ContextChange]]):
        staff = child_int(element, "staff", 1)
        marks = pending_marks.setdefault(staff, [])
        tempo_text = None
        beat = None
        bpm = None

        for direction_type in element.findall("direction-type"):
            for child in direction_type:
                if child.tag == "dynamics":
                    for dynamic in child:
                        if dynamic.tag in XML_TO_DYNAMIC:
                            marks.append(Dynamic(XML_TO_DYNAMIC[dynamic.tag]))
                        else:
                            logger.debug(f"Skipping dynamic <{dynamic.tag}>")
                elif child.tag == "wedge":
                    marks.append(Hairpin(self._wedge(child)))
                elif child.tag == "pedal":
                    kind = child.get("type")
                    if kind in XML_PEDAL:
                        marks.append(Pedal(XML_PEDAL[kind]))
                elif child.tag == "metronome":
                    unit = child_text(child, "beat-unit", "quarter")
                    beat = Duration(TYPE_TO_DIVISION.get(unit, 4), len(child.findall("beat-unit-dot")))
                    bpm = child_int(child, "per-minute")
                elif child.tag == "words":
                    tempo_text = (child.text or "").strip() or None
                elif child.tag == "octave-shift":
                    pending_context.setdefault(staff, []).append(ContextChange(ottava=self._octave_shift(child)))
                elif child.tag == "coda":
                    marks.append(Navigation(NavigationMarkType.CODA))
                elif child.tag == "segno":
                    marks.append(Navigation(NavigationMarkType.SEGNO))
                else:
                    logger.debug(f"Skipping direction <{child.tag}>")

        sound = element.find("sound")
        if bpm is None and sound is not None and sound.get("tempo"):
            bpm = int(round(float(sound.get("tempo"))))
            beat = beat or Duration(4)
        if bpm is not None or (tempo_text and element.get("placement") == "above"):
            tempo = Tempo(text=tempo_text, beat=beat if bpm else None, bpm=bpm)
            pending_context.setdefault(staff, []).append(ContextChange(tempo=tempo))
        elif tempo_text:
            logger.debug(f"Skipping direction words '{tempo_text}'")

    def _wedge(self, element: ET.Element) -> HairpinType:
        number = element.get("number", "1")
        kind = element.get("type")
        if kind == "crescendo":
            self.wedges[number] = HairpinType.CRESCENDO_START
            return HairpinType.CRESCENDO_START
        if kind == "diminuendo":
            self.wedges[number] = HairpinType.DIMINUENDO_START
            return HairpinType.DIMINUENDO_START
        opened = self.wedges.pop(number, HairpinType.CRESCENDO_START)
        if opened == HairpinType.DIMINUENDO_START:
            return HairpinType.DIMINUENDO_END
        return HairpinType.CRESCENDO_END

    def _octave_shift(self, element: ET.Element) -> int:
        kind = element.get("type")
        if kind == "stop":
            return 0
        octaves = (int(element.get("size", "8")) - 1) // 7
        return octaves if kind == "down" else -octaves

    def _barline(self, element: ET.Element) -> Optional[str]:
        repeat = element.find("repeat")
        if repeat is not None:
            return ":|." if repeat.get("direction") == "backward" else ".|:"
        style = XML_BAR_STYLE.get(child_text(element, "bar-style", "regular"), "|")
        return None if style == "|" else style

    def _duration(self, note: ET.Element, ratio: Optional[Ratio]) -> Duration:
        duration = parse_type(note)
        if duration is not None:
            return duration
        ticks = self._ticks(note)
        if ticks <= 0:
            return Duration(4)
        value = self._fraction(ticks)
        if ratio is not None:
            value *= Fraction(ratio.denominator, ratio.numerator)
        return fraction_to_division_dots(value.numerator, value.denominator)

    def _pitch(self, note: ET.Element) -> Optional[Pitch]:
        pitch = note.find("pitch")
        if pitch is None:
            return None
        step = child_text(pitch, "step", "C").lower()
        alter = child_int(pitch, "alter", 0)
        written = ACCIDENTAL_NAMES.get(child_text(note, "accidental", ""))
        accidental = accidental_for_alter(alter, explicit_natural=written == Accidental.NATURAL)
        return Pitch(Phonet(step), child_int(pitch, "octave", 4) - 4, accidental)

    def _note(self, element: ET.Element, voice: _VoiceBuilder, staff: int, marks: List[Mark],
              is_chord: bool) -> int:
        pitch = self._pitch(element)
        if is_chord and voice.last_note is not None and pitch is not None:
            voice.last_note.pitches.append(pitch)
            voice.last_note.marks.extend(m for m in self._notations(element, voice.last_note)
                                         if m not in voice.last_note.marks)
            return 0

        modification = element.find("time-modification")
        ratio = None
        if modification is not None:
            ratio = Ratio(child_int(modification, "normal-notes", 2), child_int(modification, "actual-notes", 3))
        duration = self._duration(element, ratio)
        length = self._ticks(element)

        rest = element.find("rest")
        if rest is not None:
            event = self._rest(rest, duration)
            self._place(voice, event, element, ratio)
            voice.last_note = None
            return length

        if pitch is None:
            logger.warning("Skipping note without pitch or rest")
            return length

        grace = element.find("grace") is not None
        note = NoteEvent(pitches=[pitch], duration=duration, marks=list(marks), grace=grace)
        stem = child_text(element, "stem")
        if stem in ("up", "down"):
            note.stem_direction = StemDirection(stem)
        if staff != voice.staff:
            note.staff = staff

        if any(t.get("type") == "start" for t in element.findall("tie")):
            note.marks.append(Tie())
        beam = element.find("beam[@number='1']")
        if beam is None:
            beam = element.find("beam")
        if beam is not None and beam.text in ("begin", "end"):
            note.marks.append(Beam(start=beam.text == "begin"))
        note.marks.extend(m for m in self._notations(element, note) if m not in note.marks)

        tremolo = element.find("notations/ornaments/tremolo")
        if tremolo is not None and tremolo.get("type") in ("start", "stop"):
            if self._tremolo_pair(voice, note, tremolo):
                return length

        self._place(voice, note, element, ratio)
        voice.last_note = note
        return length

    def _rest(self, rest: ET.Element, duration: Duration) -> RestEvent:
        if rest.get("measure") == "yes":
            full = fraction_to_division_dots(self.time.numerator, self.time.denominator)
            return RestEvent(duration=full, full_measure=True)
        event = RestEvent(duration=duration)
        step = child_text(rest, "display-step")
        if step:
            event.pitch = Pitch(Phonet(step.lower()), child_int(rest, "display-octave", 4) - 4)
        return event

    def _notations(self, element: ET.Element, note: NoteEvent) -> List[Mark]:
        marks: List[Mark] = []
        for notations in element.findall("notations"):
            for child in notations:
                if child.tag == "tied":
                    if child.get("type") == "start":
                        marks.append(Tie())
                elif child.tag == "slur":
                    kind = child.get("type")
                    if kind in ("start", "stop"):
                        marks.append(Slur(start=kind == "start"))
                elif child.tag == "fermata":
                    angled = (child.text or "").strip() in ("angled", "square")
                    marks.append(Ornament(OrnamentType.SHORT_FERMATA if angled else OrnamentType.FERMATA))
                elif child.tag == "arpeggiate":
                    marks.append(Ornament(OrnamentType.ARPEGGIO))
                elif child.tag == "articulations":
                    for articulation in child:
                        if articulation.tag in XML_TO_ARTICULATION:
                            placement = articulation.get("placement")
                            marks.append(Articulation(XML_TO_ARTICULATION[articulation.tag],
                                                      Placement(placement) if placement in ("above", "below") else None))
                        else:
                            logger.debug(f"Skipping articulation <{articulation.tag}>")
                elif child.tag == "ornaments":
                    for ornament in child:
                        if ornament.tag in XML_TO_ORNAMENT:
                            marks.append(Ornament(XML_TO_ORNAMENT[ornament.tag]))
                        elif ornament.tag == "tremolo" and ornament.get("type", "single") == "single":
                            strokes = int((ornament.text or "1").strip() or 1)
                            note.tremolo = 2 ** (strokes + 2)
                elif child.tag == "technical":
                    for finger in child.findall("fingering"):
                        try:
                            marks.append(Fingering(int((finger.text or "").strip())))
                        except ValueError:
                            logger.debug(f"Skipping fingering '{finger.text}'")
                elif child.tag != "tuplet":
                    logger.debug(f"Skipping notation <{child.tag}>")
        return marks

    def _tremolo_pair(self, voice: _VoiceBuilder, note: NoteEvent, tremolo: ET.Element) -> bool:
        """Holds the first note of a two-note tremolo and merges it with the second."""
        strokes = int((tremolo.text or "1").strip() or 1)
        if tremolo.get("type") == "start":
            voice.tremolo_start = note
            return True
        first = voice.tremolo_start
        voice.tremolo_start = None
        if first is None:
            return False
        division = 2 ** (strokes + 2)
        count = first.duration.as_fraction() * division
        if count.denominator != 1:
            logger.warning("Tremolo length does not fit its stroke count, keeping plain notes")
            voice.events.extend([first, note])
            return True
        self._close_tuplet(voice)
        voice.events.append(TremoloEvent(first.pitches, note.pitches, int(count), division))
        voice.last_note = None
        return True

    def _place(self, voice: _VoiceBuilder, event, element: ET.Element, ratio: Optional[Ratio]):
        """Appends a timed event, collecting it into a tuplet when it has a time modification."""
        if ratio is None:
            self._close_tuplet(voice)
            voice.events.append(event)
            return
        if voice.tuplet is None or voice.tuplet.ratio != ratio:
            self._close_tuplet(voice)
            voice.tuplet = TupletEvent(ratio=ratio)
        voice.tuplet.events.append(event)
        if any(t.get("type") == "stop" for t in element.findall("notations/tuplet")):
            self._close_tuplet(voice)

    def _close_tuplet(self, voice: _VoiceBuilder):
        if voice.tuplet is not None:
            if voice.tuplet.events:
                voice.events.append(voice.tuplet)
            voice.tuplet = None


class MusicXmlParser:
    @staticmethod
    def parse(xml_text: str) -> Document:
        """
        Decodes a partwise MusicXML score. Every <part> becomes a Part of each measure.
        """
        try:
            root = ET.fromstring(xml_text.encode("utf-8") if isinstance(xml_text, str) else xml_text)
        except ET.ParseError as e:
            raise ParseError(f"Malformed MusicXML: {e}")

        if root.tag != "score-partwise":
            raise ParseError(f"Unsupported MusicXML root element <{root.tag}>")

        metadata = MusicXmlParser._metadata(root)
        names = {}
        for score_part in root.findall("part-list/score-part"):
            names[score_part.get("id")] = child_text(score_part, "part-name")

        parts = root.findall("part")
        if not parts:
            raise EmptyInputError("MusicXML score has no parts")

        measures: List[Measure] = []
        for part_index, part_element in enumerate(parts):
            reader = _PartReader(part_element, names.get(part_element.get("id")))
            for measure_index, (part, heading) in enumerate(reader.read()):
                if measure_index >= len(measures):
                    measures.append(Measure())
                measure = measures[measure_index]
                while len(measure.parts) < part_index:
                    measure.parts.append(Part())
                measure.parts.append(part)
                if part_index == 0:
                    measure.key = heading["key"]
                    measure.time_sig = heading["time"]
                    measure.partial = heading["partial"]

        if not measures:
            raise EmptyInputError("MusicXML score has no measures")
        logger.debug(f"Decoded {len(measures)} measures from {len(parts)} MusicXML parts")
        return Document(measures=measures, metadata=metadata)

    @staticmethod
    def _metadata(root: ET.Element) -> Optional[Metadata]:
        metadata = Metadata()
        work_title = child_text(root, "work/work-title")
        movement_title = child_text(root, "movement-title")
        metadata.title = work_title or movement_title
        if work_title and movement_title and movement_title != work_title:
            metadata.subtitle = movement_title
        for creator in root.findall("identification/creator"):
            attr = CREATOR_FIELDS.get(creator.get("type", ""))
            if attr and creator.text and not getattr(metadata, attr):
                setattr(metadata, attr, creator.text.strip())
        return None if metadata.is_empty() else metadata
