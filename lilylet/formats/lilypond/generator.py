import logging
from fractions import Fraction
from typing import Dict, List, Optional, Union

from ...core.types import (
    Document, Metadata, Voice, Pitch, Duration, Ratio, Tempo, Placement,
    NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation,
    StemDirection, Accidental, Mark,
)
from ...core.pitch import ORIGIN, PitchEnv, encode_relative, encode_chord, marker_text
from ...core.duration import is_power_of_two, event_length, fraction_to_division_dots
from ...core.layout import staff_counts, staff_offsets
from ...core.marks import (
    ACCIDENTAL_SUFFIX, LILYPOND_ARTICULATION_SYMBOL, ORNAMENT_COMMAND, DYNAMIC_COMMAND, HAIRPIN_COMMAND,
    PEDAL_COMMAND, NAVIGATION_COMMAND, STEM_COMMAND,
)
from ...core.config import EncoderOptions
from ...core.errors import EncodeError
from ..lyl.generator import escape, key_text, duration_text

logger = logging.getLogger(__name__)

LILYPOND_VERSION = "2.22.0"

HEADER_FIELDS = [
    ("title", "title"), ("subtitle", "subtitle"), ("composer", "composer"),
    ("arranger", "arranger"), ("poet", "lyricist"), ("opus", "opus"),
    ("instrument", "instrument"),
]

TRUE_WORDS = ("true", "yes", "on", "1")


def pitch_text(pitch: Pitch, markers: int) -> str:
    """LilyPond spelling: a natural is a reminder `!` written after the octave marks."""
    if pitch.accidental == Accidental.NATURAL:
        return pitch.phonet.value + marker_text(markers) + "!"
    accidental = ACCIDENTAL_SUFFIX[pitch.accidental] if pitch.accidental else ""
    return pitch.phonet.value + accidental + marker_text(markers)


def spacer(time: Optional[Ratio]) -> str:
    """Spacer rest filling a whole measure of the given meter."""
    if time is None:
        return "s1"
    return f"s{time.denominator}*{time.numerator}"


def partial_text(voice: Voice) -> str:
    length = sum((event_length(e) for e in voice.events
                  if isinstance(e, (NoteEvent, RestEvent, TupletEvent, TremoloEvent))), Fraction(0))
    if length <= 0:
        return ""
    return "\\partial " + duration_text(fraction_to_division_dots(length.numerator, length.denominator))


def tempo_text(tempo: Tempo) -> str:
    parts = ["\\tempo"]
    if tempo.text:
        parts.append(f'"{escape(tempo.text)}"')
    if tempo.beat and tempo.bpm:
        parts.append(f"{duration_text(tempo.beat)} = {tempo.bpm}")
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
        return prefix + LILYPOND_ARTICULATION_SYMBOL[mark.type]
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
    """Writes one voice of one measure inside its own \\relative c' block."""

    def __init__(self, voice: Voice, offset: int):
        self.voice = voice
        self.offset = offset
        self.env: PitchEnv = ORIGIN
        self.prev: Optional[Duration] = None
        self.stem: Optional[StemDirection] = None
        self.staff = voice.staff
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
        if not is_power_of_two(duration.division):
            raise EncodeError(f"Duration division {duration.division} is not a power of two")
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
            parts.append(f"\\clef {event.clef.value}")
        if event.key:
            parts.append(key_text(event.key))
        if event.time:
            parts.append(f"\\time {event.time}")
        if event.ottava is not None:
            parts.append(f"\\ottava #{event.ottava}")
        if event.stem_direction:
            parts.append("\\" + STEM_COMMAND[event.stem_direction])
            self.stem = None if event.stem_direction == StemDirection.AUTO else event.stem_direction
        if event.tempo:
            parts.append(tempo_text(event.tempo))
        return " ".join(parts)

    def tuplet(self, event: TupletEvent) -> str:
        if event.ratio.numerator <= 0 or event.ratio.denominator <= 0:
            raise EncodeError(f"Invalid tuplet ratio {event.ratio}")
        inner = [self.note(sub) if isinstance(sub, NoteEvent) else self.rest(sub) for sub in event.events]
        return f"\\tuplet {event.ratio.denominator}/{event.ratio.numerator} {{ {' '.join(inner)} }}"

    def tremolo(self, event: TremoloEvent) -> str:
        first = self.pitches(event.pitch_a) + str(event.division)
        second = self.pitches(event.pitch_b) + str(event.division)
        self.prev = Duration(event.division)
        return f"\\repeat tremolo {event.count} {{ {first} {second} }}"

    def switch_staff(self, staff: int):
        if staff != self.staff:
            self.staff = staff
            self.parts.append(f'\\change Staff = "{self.offset + staff}"')

    def write(self, heading: List[str]) -> str:
        self.parts.extend(text for text in heading if text)
        for event in self.voice.events:
            if isinstance(event, NoteEvent):
                self.switch_staff(event.staff or self.voice.staff)
                if event.stem_direction != self.stem:
                    self.parts.append("\\" + STEM_COMMAND[event.stem_direction or StemDirection.AUTO])
                    self.stem = event.stem_direction
                self.parts.append(self.note(event))
            elif isinstance(event, RestEvent):
                self.parts.append(self.rest(event))
            elif isinstance(event, ContextChange):
                if event.staff and event.staff != self.staff:
                    continue
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
        self.switch_staff(self.voice.staff)
        if self.stem is not None:
            self.parts.append("\\" + STEM_COMMAND[StemDirection.AUTO])
        return " ".join(self.parts)


class LilyPondGenerator:
    @staticmethod
    def generate(doc: Document, options: Union[EncoderOptions, Dict, None] = None) -> str:
        """
        Renders a Document as a complete LilyPond score.

        Every part's staves go into one GrandStaff, numbered consecutively. Each measure
        of each voice is its own \\relative c' block so octave context never leaks
        between measures.
        """
        if not isinstance(options, EncoderOptions):
            options = EncoderOptions.from_dict(options)

        counts = staff_counts(doc)
        offsets = staff_offsets(counts)
        total = sum(counts) or 1

        # staff -> measure -> voice texts
        staves: Dict[int, List[List[str]]] = {staff: [[] for _ in doc.measures] for staff in range(1, total + 1)}
        times: List[Optional[Ratio]] = []
        time: Optional[Ratio] = None

        for mi, measure in enumerate(doc.measures):
            if measure.time_sig:
                time = measure.time_sig
            times.append(time)
            headed = set()
            for pi, part in enumerate(measure.parts):
                for voice in part.voices:
                    staff = offsets[pi] + voice.staff
                    heading = []
                    if staff not in headed:
                        headed.add(staff)
                        if measure.key:
                            heading.append(key_text(measure.key))
                        if measure.time_sig:
                            heading.append(f"\\time {measure.time_sig}")
                        if measure.partial:
                            heading.append(partial_text(voice))
                    staves[staff][mi].append(_VoiceWriter(voice, offsets[pi]).write(heading))

        sections = [
            f'\\version "{LILYPOND_VERSION}"',
            '\\language "english"',
            LilyPondGenerator._header(doc.metadata),
            f"#(set-global-staff-size {options.font_size})",
            LilyPondGenerator._paper(options),
            LilyPondGenerator._layout(doc, options),
            LilyPondGenerator._score(staves, times, options),
        ]
        return "\n\n".join(sections) + "\n"

    @staticmethod
    def _header(metadata: Optional[Metadata]) -> str:
        lines = ["\\header {"]
        for name, attr in HEADER_FIELDS:
            value = getattr(metadata, attr) if metadata else None
            if value:
                lines.append(f'  {name} = "{escape(value)}"')
        lines.append("  tagline = ##f")
        lines.append("}")
        return "\n".join(lines)

    @staticmethod
    def _paper(options: EncoderOptions) -> str:
        def size(value) -> str:
            return f"{value}\\mm" if isinstance(value, (int, float)) else str(value)

        return "\n".join([
            "\\paper {",
            f"  paper-width = {size(options.paper_width)}",
            f"  paper-height = {size(options.paper_height)}",
            "  ragged-last = ##t",
            "  ragged-last-bottom = ##f",
            "}",
        ])

    @staticmethod
    def _layout(doc: Document, options: EncoderOptions) -> str:
        auto_beaming = options.auto_beaming
        if auto_beaming is None:
            header = doc.metadata.auto_beam if doc.metadata else None
            auto_beaming = bool(header) and header.strip().lower() in TRUE_WORDS
        return "\n".join([
            "\\layout {",
            "  \\context {",
            "    \\Score",
            f"    autoBeaming = ##{'t' if auto_beaming else 'f'}",
            "  }",
            "}",
        ])

    @staticmethod
    def _score(staves: Dict[int, List[List[str]]], times: List[Optional[Ratio]], options: EncoderOptions) -> str:
        staff_texts = []
        for staff, measures in staves.items():
            voice_count = max([len(m) for m in measures] + [1])
            voices = []
            for vi in range(voice_count):
                lines = []
                for mi, texts in enumerate(measures):
                    content = texts[vi] if vi < len(texts) and texts[vi] else spacer(times[mi])
                    lines.append(f"        \\relative c' {{ {content} }} |  % {mi + 1}")
                voices.append("      \\new Voice {\n" + "\n".join(lines) + "\n      }")
            staff_texts.append(f'    \\new Staff = "{staff}" <<\n' + "\n".join(voices) + "\n    >>")

        midi = "\n  \\midi { }" if options.with_midi else ""
        return ("\\score {\n  \\new GrandStaff <<\n" + "\n".join(staff_texts) + "\n  >>\n\n"
                f"  \\layout {{ }}{midi}\n}}")
