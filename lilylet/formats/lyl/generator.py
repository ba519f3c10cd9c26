from typing import Dict, List, Optional
import logging

from ...core.types import (
    Document, Metadata, Measure, Voice, Pitch, Duration, KeySignature, Ratio, Tempo, Clef,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation,
    StemDirection, Placement, Mark,
)
from ...core.pitch import ORIGIN, PitchEnv, encode_relative, encode_chord, marker_text
from ...core.marks import (
    ACCIDENTAL_SUFFIX, ARTICULATION_SYMBOL, ORNAMENT_COMMAND, DYNAMIC_COMMAND, HAIRPIN_COMMAND,
    PEDAL_COMMAND, NAVIGATION_COMMAND, STEM_COMMAND,
)
from ...core.errors import EncodeError

logger = logging.getLogger(__name__)

METADATA_FIELDS = [
    ("title", "title"), ("subtitle", "subtitle"), ("composer", "composer"),
    ("arranger", "arranger"), ("lyricist", "lyricist"), ("opus", "opus"),
    ("instrument", "instrument"), ("genre", "genre"), ("auto-beam", "auto_beam"),
]


def escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def pitch_text(pitch: Pitch, markers: int) -> str:
    accidental = ACCIDENTAL_SUFFIX[pitch.accidental] if pitch.accidental else ""
    return pitch.phonet.value + accidental + marker_text(markers)


def key_text(key: KeySignature) -> str:
    accidental = ACCIDENTAL_SUFFIX[key.accidental] if key.accidental else ""
    return f"\\key {key.pitch.value}{accidental} \\{key.mode}"


def time_text(time: Ratio) -> str:
    prefix = "\\numericTimeSignature " if (time.numerator, time.denominator) in ((4, 4), (2, 2)) else ""
    return f"{prefix}\\time {time.numerator}/{time.denominator}"


def duration_text(duration: Duration) -> str:
    return f"{duration.division}{'.' * duration.dots}"


def tempo_text(tempo: Tempo) -> str:
    parts = ["\\tempo"]
    if tempo.text:
        parts.append(f'"{escape(tempo.text)}"')
    if tempo.beat and tempo.bpm:
        parts.append(f"{duration_text(tempo.beat)}={tempo.bpm}")
    return " ".join(parts)


def mark_text(mark: Mark) -> str:
    if isinstance(mark, Tie):
        return "~" if mark.start else ""
    if isinstance(mark, Slur):
        return "(" if mark.start else ")"
    if isinstance(mark, Beam):
        return "[" if mark.start else "]"
    if isinstance(mark, Articulation):
        prefix = {Placement.ABOVE: "^", Placement.BELOW: "_"}.get(mark.placement, "-")
        return prefix + ARTICULATION_SYMBOL[mark.type]
    if isinstance(mark, Ornament):
        return "\\" + ORNAMENT_COMMAND[mark.type]
    if isinstance(mark, Dynamic):
        return "\\" + DYNAMIC_COMMAND[mark.type]
    if isinstance(mark, Hairpin):
        return "\\" + HAIRPIN_COMMAND[mark.type]
    if isinstance(mark, Pedal):
        return "\\" + PEDAL_COMMAND[mark.type]
    if isinstance(mark, Fingering):
        return f"-{mark.finger}"
    if isinstance(mark, Navigation):
        return "\\" + NAVIGATION_COMMAND[mark.type]
    raise TypeError(f"Unknown mark {mark!r}")


class _VoiceWriter:
    """Writes one voice of one measure, threading pitch and duration state."""

    def __init__(self, voice: Voice, generator_state: "_State", grand_staff: bool):
        self.voice = voice
        self.state = generator_state
        self.grand_staff = grand_staff
        self.env: PitchEnv = ORIGIN
        self.prev: Optional[Duration] = None
        self.stem: Optional[StemDirection] = None
        self.parts: List[str] = []

    def pitches(self, pitches: List[Pitch]) -> str:
        if not pitches:
            raise EncodeError("Note event without pitches")
        if len(pitches) == 1:
            markers, self.env = encode_relative(self.env, pitches[0])
            return pitch_text(pitches[0], markers)
        markers, self.env = encode_chord(self.env, pitches)
        return "<" + " ".join(pitch_text(p, m) for p, m in zip(pitches, markers)) + ">"

    def duration(self, duration: Duration) -> str:
        text = "" if duration.same_value(self.prev) else duration_text(duration)
        self.prev = duration
        return text

    def note(self, event: NoteEvent) -> str:
        text = ("\\grace " if event.grace else "") + self.pitches(event.pitches) + self.duration(event.duration)
        if event.tremolo:
            text += f":{event.tremolo}"
        return text + "".join(mark_text(m) for m in event.marks)

    def rest(self, event: RestEvent) -> str:
        if event.full_measure:
            return "R" + self.duration(event.duration)
        if event.invisible:
            return "s" + self.duration(event.duration)
        if event.pitch is not None:
            return self.pitches([event.pitch]) + self.duration(event.duration) + "\\rest"
        return "r" + self.duration(event.duration)

    def context(self, event: ContextChange) -> str:
        parts = []
        if event.clef:
            parts.append(f'\\clef "{event.clef.value}"')
        if event.key:
            parts.append(key_text(event.key))
        if event.time:
            parts.append(time_text(event.time))
        if event.ottava is not None:
            parts.append(f"\\ottava #{event.ottava}")
        if event.stem_direction:
            parts.append("\\" + STEM_COMMAND[event.stem_direction])
        if event.tempo:
            parts.append(tempo_text(event.tempo))
        return " ".join(parts)

    def tuplet(self, event: TupletEvent) -> str:
        if event.ratio.numerator <= 0 or event.ratio.denominator <= 0:
            raise EncodeError(f"Invalid tuplet ratio {event.ratio}")
        inner = []
        for sub in event.events:
            inner.append(self.note(sub) if isinstance(sub, NoteEvent) else self.rest(sub))
        return f"\\times {event.ratio} {{ {' '.join(inner)} }}"

    def tremolo(self, event: TremoloEvent) -> str:
        first = self.pitches(event.pitch_a) + str(event.division)
        second = self.pitches(event.pitch_b) + str(event.division)
        self.prev = Duration(event.division)
        return f"\\repeat tremolo {event.count} {{ {first} {second} }}"

    def write(self, key: Optional[KeySignature], time: Optional[Ratio]) -> str:
        voice, state = self.voice, self.state
        if self.grand_staff or voice.staff != state.staff:
            self.parts.append(f'\\staff "{voice.staff}"')
        state.staff = voice.staff
        if key:
            self.parts.append(key_text(key))
        if time:
            self.parts.append(time_text(time))

        clef = state.clefs.get(voice.staff)
        if clef and voice.staff not in state.emitted:
            self.parts.append(f'\\clef "{clef.value}"')
            state.emitted[voice.staff] = clef

        for event in voice.events:
            if isinstance(event, NoteEvent):
                self.switch_staff(event.staff or voice.staff)
                if event.stem_direction != self.stem:
                    self.parts.append("\\" + STEM_COMMAND[event.stem_direction or StemDirection.AUTO])
                    self.stem = event.stem_direction
                self.parts.append(self.note(event))
            elif isinstance(event, RestEvent):
                self.parts.append(self.rest(event))
            elif isinstance(event, ContextChange):
                if event.staff and event.staff != voice.staff:
                    continue
                if event.clef:
                    staff = event.staff or voice.staff
                    if state.emitted.get(staff) == event.clef:
                        event = ContextChange(key=event.key, time=event.time, ottava=event.ottava,
                                              stem_direction=event.stem_direction, tempo=event.tempo)
                    else:
                        state.emitted[staff] = event.clef
                text = self.context(event)
                if text:
                    self.parts.append(text)
            elif isinstance(event, TupletEvent):
                self.parts.append(self.tuplet(event))
            elif isinstance(event, TremoloEvent):
                self.parts.append(self.tremolo(event))
            elif isinstance(event, BarlineEvent):
                if event.style and event.style != "|":
                    self.parts.append(f'\\bar "{event.style}"')
            else:
                raise TypeError(f"Unknown event {event!r}")
        return " ".join(self.parts)

    def switch_staff(self, staff: int):
        if staff == self.state.staff:
            return
        self.state.staff = staff
        self.parts.append(f'\\staff "{staff}"')
        clef = self.state.clefs.get(staff)
        if clef and staff not in self.state.emitted:
            self.parts.append(f'\\clef "{clef.value}"')
            self.state.emitted[staff] = clef


class _State:
    def __init__(self):
        self.staff = 1
        self.clefs: Dict[int, Clef] = {}
        self.emitted: Dict[int, Clef] = {}


class LylGenerator:
    @staticmethod
    def generate(doc: Document) -> str:
        """
        Serializes a Document to native Lilylet notation.
        """
        sections = []
        if doc.metadata:
            header = LylGenerator._metadata(doc.metadata)
            if header:
                sections.append(header + "\n")

        grand_staff = any(v.staff > 1 for m in doc.measures for p in m.parts for v in p.voices)
        state = _State()
        measures = []
        for number, measure in enumerate(doc.measures, start=1):
            LylGenerator._collect_clefs(measure, state)
            text = LylGenerator._measure(measure, state, grand_staff) or "s1"
            measures.append(f"{text} | %{number}")
        sections.append("\n\n".join(measures))
        return "\n".join(sections) + "\n"

    @staticmethod
    def _metadata(metadata: Metadata) -> str:
        lines = []
        for name, attr in METADATA_FIELDS:
            value = getattr(metadata, attr)
            if value:
                lines.append(f'[{name} "{escape(value)}"]')
        return "\n".join(lines)

    @staticmethod
    def _collect_clefs(measure: Measure, state: _State):
        for part in measure.parts:
            for voice in part.voices:
                for event in voice.events:
                    if isinstance(event, ContextChange) and event.clef:
                        state.clefs.setdefault(event.staff or voice.staff, event.clef)

    @staticmethod
    def _measure(measure: Measure, state: _State, grand_staff: bool) -> str:
        parts = []
        for part_index, part in enumerate(measure.parts):
            voices = []
            for voice_index, voice in enumerate(part.voices):
                first = part_index == 0 and voice_index == 0
                writer = _VoiceWriter(voice, state, grand_staff)
                voices.append(writer.write(measure.key if first else None, measure.time_sig if first else None))
            if voices:
                parts.append(" \\\\\n".join(voices))
        return " \\\\\\\\\n".join(parts)
