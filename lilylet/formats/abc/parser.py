from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, List, Optional, Tuple
import re
import logging

from ...core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Accidental, Duration, Ratio,
    KeySignature, Tempo, Clef, NoteEvent, RestEvent, ContextChange, TupletEvent, BarlineEvent,
    Tie, Slur, Mark, Event,
)
from ...core.config import DecoderDefaults
from ...core.duration import fraction_to_division_dots, apply_broken_rhythm, default_tuplet_ratio
from ...core.layout import parse_layout, resolve_layout, assignment_for
from ...core.marks import CLEF_NAMES, ABC_SHORTCUTS, abc_decoration
from ...core.theory import parse_key_name, key_to_fifths
from ...core.errors import EmptyInputError

logger = logging.getLogger(__name__)

FIELD_PATTERN = re.compile(r"^([A-Za-z]):\s*(.*?)\s*$")
LAYOUT_PATTERN = re.compile(r"^%%(?:score|staves)\s+(.*)$")

LENGTH = r"\d*(?:/+\d*)?"
NOTE = rf"(\^\^|\^|__|_|=)?([A-Ga-g])([',]*)({LENGTH})"

TOKEN_PATTERN = re.compile(rf"""
    (?P<field>\[[A-Za-z]:[^\]]*\])
  | (?P<ending>\[\d+(?:[-,]\d+)*)
  | (?P<bar>(?:\[\||:*\|+\]?:*|::)(?:\d+(?:[-,]\d+)*)?)
  | (?P<chord>\[(?:[^\]"!]*)\]({LENGTH})(-?))
  | (?P<decoration>![^!\n]+!|\+[^+\s]+\+)
  | (?P<annotation>"[^"]*")
  | (?P<grace>\{{/?[^}}]*\}})
  | (?P<tuplet>\((\d+)(?::(\d*))?(?::(\d*))?)
  | (?P<slur>[()])
  | (?P<broken>>+|<+)
  | (?P<note>{NOTE}(-?))
  | (?P<rest>([zxZX])({LENGTH}))
  | (?P<tie>-)
  | (?P<shortcut>[.~TMPHLRuv])
  | (?P<skip>[\s`\\$y&]+)
""", re.VERBOSE)

SHARP_ORDER = [Phonet.F, Phonet.C, Phonet.G, Phonet.D, Phonet.A, Phonet.E, Phonet.B]

ABC_ACCIDENTALS = {
    "^^": Accidental.DOUBLE_SHARP, "^": Accidental.SHARP, "=": Accidental.NATURAL,
    "_": Accidental.FLAT, "__": Accidental.DOUBLE_FLAT,
}


def parse_length(text: str) -> Fraction:
    """ABC length suffix as a multiplier of the unit note length: "", "2", "/", "//", "3/2"."""
    if not text:
        return Fraction(1)
    match = re.match(r"^(\d*)(/*)(\d*)$", text)
    num, slashes, den = match.groups()
    numerator = int(num) if num else 1
    if not slashes:
        return Fraction(numerator)
    denominator = int(den) if den else 2 ** len(slashes)
    return Fraction(numerator, denominator)


def parse_meter(value: str) -> Optional[Ratio]:
    value = value.strip()
    if value == "C":
        return Ratio(4, 4)
    if value == "C|":
        return Ratio(2, 2)
    match = re.match(r"^(\d+)(?:\+\d+)*\s*/\s*(\d+)", value)
    if not match:
        return None
    numerator = sum(int(n) for n in re.findall(r"\d+", value.split("/")[0]))
    return Ratio(numerator, int(match.group(2)))


def parse_tempo(value: str) -> Optional[Tempo]:
    text_match = re.search(r'"([^"]*)"', value)
    text = text_match.group(1) if text_match else None
    rest = re.sub(r'"[^"]*"', "", value).strip()
    beat_match = re.search(r"(\d+)/(\d+)\s*=\s*(\d+)", rest)
    if beat_match:
        num, den, bpm = map(int, beat_match.groups())
        return Tempo(text=text, beat=fraction_to_division_dots(num, den), bpm=bpm)
    bpm_match = re.search(r"(\d+)", rest)
    if bpm_match or text:
        return Tempo(text=text, bpm=int(bpm_match.group(1)) if bpm_match else None)
    return None


def parse_clef(value: str) -> Optional[Clef]:
    match = re.search(r"clef=(\w+)", value)
    name = match.group(1) if match else None
    if name is None:
        bare = re.search(r"\b(treble|bass|alto)\b", value)
        name = bare.group(1) if bare else None
    if name is None:
        return None
    name = re.sub(r"\d+$", "", name)
    clef = CLEF_NAMES.get(name)
    if clef is None:
        logger.debug(f"Unknown ABC clef '{name}'")
    return clef


def parse_key(value: str) -> Tuple[Optional[KeySignature], Optional[Clef]]:
    clef = parse_clef(value)
    head = re.sub(r"\b\w+=\S+", "", value).strip()
    if not head or head.lower().startswith("none") or head.startswith("H"):
        return None, clef
    match = re.match(r"([A-G][#b]?)\s*([A-Za-z]*)", head)
    if not match:
        return None, clef
    return parse_key_name(match.group(1) + match.group(2)), clef


def key_accidentals(key: Optional[KeySignature]) -> Dict[Phonet, Accidental]:
    """Letters altered by a key signature."""
    fifths = key_to_fifths(key)
    if fifths >= 0:
        return {phonet: Accidental.SHARP for phonet in SHARP_ORDER[:fifths]}
    return {phonet: Accidental.FLAT for phonet in list(reversed(SHARP_ORDER))[:-fifths]}


@dataclass
class _Bar:
    events: List[Event] = field(default_factory=list)
    barline: str = "|"


@dataclass
class _VoiceState:
    """Running decode state for one ABC voice; it survives across bars."""
    voice_id: str
    clef: Optional[Clef] = None
    bars: List[_Bar] = field(default_factory=list)
    current: _Bar = field(default_factory=_Bar)
    slur_depth: int = 0
    pending_marks: List[Mark] = field(default_factory=list)
    pending_context: List[ContextChange] = field(default_factory=list)
    broken: int = 0
    last_timed: object = None
    tuplet: Optional[TupletEvent] = None
    tuplet_remaining: int = 0
    bar_accidentals: Dict[Tuple[Phonet, int], Accidental] = field(default_factory=dict)


class _AbcTune:
    """Decodes the lines of one tune (from X: to the next X:)."""

    def __init__(self, lines: List[str], defaults: DecoderDefaults):
        self.lines = lines
        self.metadata = Metadata()
        self.unit = Fraction(defaults.unit_length.numerator, defaults.unit_length.denominator)
        self.unit_set = False
        self.time: Optional[Ratio] = None
        self.key: Optional[KeySignature] = None
        self.key_clef: Optional[Clef] = None
        self.tempo: Optional[Tempo] = None
        self.layout = None
        self.voices: Dict[str, _VoiceState] = {}
        self.voice: Optional[_VoiceState] = None
        self.key_map: Dict[Phonet, Accidental] = {}

    # --- header ---

    def decode(self) -> Document:
        body_start = self._read_header()
        for line in self.lines[body_start:]:
            self._read_body_line(line)
        return self._assemble()

    def _read_header(self) -> int:
        for index, raw in enumerate(self.lines):
            line = raw.rstrip()
            layout = LAYOUT_PATTERN.match(line)
            if layout:
                self.layout = parse_layout(layout.group(1))
                continue
            if line.startswith("%") or not line:
                continue
            match = FIELD_PATTERN.match(line)
            if not match:
                return index
            name, value = match.group(1), re.sub(r"\s*%.*$", "", match.group(2))
            if name == "K":
                self.key, self.key_clef = parse_key(value)
                self.key_map = key_accidentals(self.key)
                return index + 1
            self._header_field(name, value)
        return len(self.lines)

    def _header_field(self, name: str, value: str):
        if name == "T":
            if not self.metadata.title:
                self.metadata.title = value
            elif not self.metadata.subtitle:
                self.metadata.subtitle = value
        elif name == "C":
            self.metadata.composer = value
        elif name == "R":
            self.metadata.genre = value
        elif name == "L":
            ratio = parse_meter(value)
            if ratio:
                self.unit = Fraction(ratio.numerator, ratio.denominator)
                self.unit_set = True
        elif name == "M":
            self.time = parse_meter(value)
            if self.time and not self.unit_set and Fraction(self.time.numerator, self.time.denominator) < Fraction(3, 4):
                self.unit = Fraction(1, 16)
        elif name == "Q":
            self.tempo = parse_tempo(value)
        elif name == "V":
            self._voice_field(value)
        elif name not in ("X",):
            logger.debug(f"Ignoring ABC header field {name}:")

    def _voice_field(self, value: str) -> _VoiceState:
        parts = value.split()
        voice_id = parts[0] if parts else "1"
        state = self.voices.get(voice_id)
        if state is None:
            state = _VoiceState(voice_id)
            self.voices[voice_id] = state
        clef = parse_clef(value)
        if clef:
            state.clef = clef
        return state

    # --- body ---

    def _current_voice(self) -> _VoiceState:
        if self.voice is None:
            self.voice = self.voices.get(next(iter(self.voices), "1")) or self._voice_field("1")
        return self.voice

    def _read_body_line(self, raw: str):
        line = raw.rstrip()
        if not line or line.startswith("%"):
            return
        match = FIELD_PATTERN.match(line)
        if match:
            name, value = match.group(1), re.sub(r"\s*%.*$", "", match.group(2))
            if name == "V":
                self.voice = self._voice_field(value)
            elif name in ("w", "W", "T", "N", "P", "s"):
                pass
            else:
                self._inline_field(name, value)
            return
        line = re.sub(r"(?<!\\)%.*$", "", line)
        self._read_music(line)

    def _inline_field(self, name: str, value: str):
        voice = self._current_voice()
        if name == "K":
            key, clef = parse_key(value)
            if key:
                self.key_map = key_accidentals(key)
                voice.pending_context.append(ContextChange(key=key))
            if clef:
                voice.pending_context.append(ContextChange(clef=clef))
        elif name == "M":
            time = parse_meter(value)
            if time:
                voice.pending_context.append(ContextChange(time=time))
        elif name == "L":
            ratio = parse_meter(value)
            if ratio:
                self.unit = Fraction(ratio.numerator, ratio.denominator)
        elif name == "Q":
            tempo = parse_tempo(value)
            if tempo:
                voice.pending_context.append(ContextChange(tempo=tempo))
        elif name == "V":
            self.voice = self._voice_field(value)
        else:
            logger.debug(f"Ignoring inline field [{name}:{value}]")

    def _read_music(self, line: str):
        pos = 0
        while pos < len(line):
            match = TOKEN_PATTERN.match(line, pos)
            if not match:
                logger.debug(f"Skipping unknown ABC character {line[pos]!r}")
                pos += 1
                continue
            pos = match.end()
            self._token(match)

    def _token(self, match: re.Match):
        kind = match.lastgroup
        text = match.group(kind)
        voice = self._current_voice()

        if kind == "field":
            name, value = text[1], text[3:-1].strip()
            self._inline_field(name, value)
        elif kind == "bar":
            self._close_bar(voice, text)
        elif kind == "chord":
            self._chord(voice, text)
        elif kind == "decoration":
            self._decoration(voice, text[1:-1])
        elif kind == "grace":
            self._grace(voice, text)
        elif kind == "tuplet":
            self._open_tuplet(voice, match)
        elif kind == "slur":
            if text == "(":
                voice.pending_marks.append(Slur(True))
                voice.slur_depth += 1
            elif voice.slur_depth > 0:
                voice.slur_depth -= 1
                if isinstance(voice.last_timed, NoteEvent):
                    voice.last_timed.marks.append(Slur(False))
        elif kind == "broken":
            voice.broken = len(text) if text[0] == ">" else -len(text)
        elif kind == "note":
            self._note(voice, text)
        elif kind == "rest":
            self._rest(voice, text)
        elif kind == "tie":
            if isinstance(voice.last_timed, NoteEvent):
                voice.last_timed.marks.append(Tie(True))
        elif kind == "shortcut":
            mark = ABC_SHORTCUTS.get(text)
            if mark:
                voice.pending_marks.append(mark)
        # endings, annotations and spacing carry nothing for the model

    def _decoration(self, voice: _VoiceState, name: str):
        ottava = re.match(r"^(8va|8vb|15ma|15mb)([()])$", name)
        if ottava:
            shift = {"8va": 1, "8vb": -1, "15ma": 2, "15mb": -2}[ottava.group(1)]
            voice.pending_context.append(ContextChange(ottava=shift if ottava.group(2) == "(" else 0))
            return
        mark = abc_decoration(name)
        if mark is None:
            logger.debug(f"Unknown ABC decoration !{name}!, skipping")
            return
        voice.pending_marks.append(mark)

    # --- pitches and events ---

    def _pitch(self, voice: _VoiceState, acc: Optional[str], letter: str, ticks: str) -> Pitch:
        phonet = Phonet(letter.lower())
        octave = (1 if letter.islower() else 0) + ticks.count("'") - ticks.count(",")
        if acc:
            accidental = ABC_ACCIDENTALS[acc]
            voice.bar_accidentals[(phonet, octave)] = accidental
        else:
            accidental = voice.bar_accidentals.get((phonet, octave), self.key_map.get(phonet))
        return Pitch(phonet, octave, accidental)

    def _duration(self, multiplier: Fraction) -> Duration:
        value = self.unit * multiplier
        return fraction_to_division_dots(value.numerator, value.denominator)

    def _note(self, voice: _VoiceState, text: str):
        match = re.match(NOTE + "(-?)$", text)
        acc, letter, ticks, length, tie = match.groups()
        note = NoteEvent(pitches=[self._pitch(voice, acc, letter, ticks)],
                         duration=self._duration(parse_length(length)))
        if tie:
            note.marks.append(Tie(True))
        self._emit(voice, note)

    def _chord(self, voice: _VoiceState, text: str):
        match = re.match(rf"^\[(.*)\]({LENGTH})(-?)$", text)
        inner, length, tie = match.groups()
        members = re.findall(NOTE + "(-?)", inner)
        if not members:
            logger.debug(f"Empty chord {text}, skipping")
            return
        pitches = [self._pitch(voice, acc, letter, ticks) for acc, letter, ticks, _, _ in members]
        duration = self._duration(parse_length(members[0][3]) * parse_length(length))
        note = NoteEvent(pitches=pitches, duration=duration)
        if tie or any(m[4] for m in members):
            note.marks.append(Tie(True))
        self._emit(voice, note)

    def _rest(self, voice: _VoiceState, text: str):
        kind, length = text[0], text[1:]
        if kind in "ZX":
            if length.isdigit() and int(length) > 1:
                logger.warning(f"Multi-measure rest {text} kept as a single full-measure rest")
            measure = self.time or Ratio(4, 4)
            rest = RestEvent(duration=fraction_to_division_dots(measure.numerator, measure.denominator),
                             full_measure=True, invisible=kind == "X")
        else:
            rest = RestEvent(duration=self._duration(parse_length(length)), invisible=kind == "x")
        voice.pending_marks.clear()
        self._emit(voice, rest)

    def _grace(self, voice: _VoiceState, text: str):
        for acc, letter, ticks, length in re.findall(NOTE, text[1:-1].lstrip("/")):
            grace = NoteEvent(pitches=[self._pitch(voice, acc, letter, ticks)],
                              duration=self._duration(parse_length(length)), grace=True)
            self._flush_context(voice)
            voice.current.events.append(grace)

    def _open_tuplet(self, voice: _VoiceState, match: re.Match):
        groups = match.groups()
        start = match.re.groupindex["tuplet"]
        p, q, r = groups[start], groups[start + 1], groups[start + 2]
        actual = int(p)
        ratio = Ratio(int(q), actual) if q else default_tuplet_ratio(actual)
        self._close_tuplet(voice)
        voice.tuplet = TupletEvent(ratio=ratio)
        voice.tuplet_remaining = int(r) if r else actual

    def _close_tuplet(self, voice: _VoiceState):
        if voice.tuplet is not None:
            if voice.tuplet.events:
                voice.current.events.append(voice.tuplet)
            voice.tuplet = None
            voice.tuplet_remaining = 0

    def _flush_context(self, voice: _VoiceState):
        voice.current.events.extend(voice.pending_context)
        voice.pending_context.clear()

    def _emit(self, voice: _VoiceState, event):
        if isinstance(event, NoteEvent):
            event.marks = voice.pending_marks + event.marks
            voice.pending_marks = []
        self._flush_context(voice)

        if voice.broken and voice.last_timed is not None:
            first, second = apply_broken_rhythm(voice.last_timed.duration, event.duration, voice.broken)
            voice.last_timed.duration = first
            event.duration = second
        voice.broken = 0
        voice.last_timed = event

        if voice.tuplet is not None:
            voice.tuplet.events.append(event)
            voice.tuplet_remaining -= 1
            if voice.tuplet_remaining <= 0:
                self._close_tuplet(voice)
        else:
            voice.current.events.append(event)

    def _close_bar(self, voice: _VoiceState, text: str):
        self._close_tuplet(voice)
        style = barline_style(re.sub(r"\d.*$", "", text))
        bar = voice.current
        voice.bar_accidentals.clear()
        if not any(not isinstance(e, ContextChange) for e in bar.events) and not voice.pending_context:
            if style != "|":
                logger.debug(f"Dropping barline {text} before any music")
            return
        bar.barline = style
        if style != "|":
            bar.events.append(BarlineEvent(style))
        voice.bars.append(bar)
        voice.current = _Bar()
        voice.last_timed = None

    # --- assembly ---

    def _assemble(self) -> Document:
        for voice in self.voices.values():
            self._close_tuplet(voice)
            self._flush_context(voice)
            if voice.current.events:
                voice.bars.append(voice.current)
                voice.current = _Bar()

        mapping = resolve_layout(self.layout) if self.layout else {}
        declared = list(self.voices)
        order = sorted(declared, key=lambda vid: (assignment_for(mapping, vid), declared.index(vid)))
        order = [vid for vid in order if self.voices[vid].bars]
        if self.key_clef and order and self.voices[order[0]].clef is None:
            self.voices[order[0]].clef = self.key_clef

        bar_count = max((len(v.bars) for v in self.voices.values()), default=0)
        part_count = max((assignment_for(mapping, vid)[0] for vid in order), default=0) + 1
        measures = []
        for index in range(bar_count):
            parts = [Part() for _ in range(part_count)]
            for voice_id in order:
                state = self.voices[voice_id]
                part_index, staff = assignment_for(mapping, voice_id)
                if index >= len(state.bars):
                    # a voice that ran out of bars keeps its slot so later parts do not shift
                    parts[part_index].voices.append(Voice(staff=staff))
                    continue
                events = list(state.bars[index].events)
                if index == 0 and state.clef:
                    events.insert(0, ContextChange(clef=state.clef))
                parts[part_index].voices.append(Voice(staff=staff, events=events))
            measure = Measure(parts=parts)
            if index == 0:
                measure.key = self.key
                measure.time_sig = self.time
            measures.append(measure)

        if self.tempo and measures:
            first = next((p.voices[0] for p in measures[0].parts if p.voices), None)
            if first is not None:
                first.events.insert(0, ContextChange(tempo=self.tempo))
        if not measures:
            raise EmptyInputError("ABC tune has no music")
        metadata = None if self.metadata.is_empty() else self.metadata
        return Document(measures=measures, metadata=metadata)


def barline_style(text: str) -> str:
    if text == "::" or (text.startswith(":") and text.endswith(":")):
        return ":..:"
    if text.startswith(":"):
        return ":|."
    if text.endswith(":"):
        return ".|:"
    if text in ("|]", "||]"):
        return "|."
    if text in ("||", "[|"):
        return "||"
    return "|"


def split_tunes(text: str) -> List[List[str]]:
    """Splits ABC text into tunes; each starts at an X: line."""
    tunes: List[List[str]] = []
    current: Optional[List[str]] = None
    for line in text.splitlines():
        if re.match(r"^X:", line):
            current = [line]
            tunes.append(current)
        elif current is not None:
            current.append(line)
    if not tunes and re.search(r"^K:", text, re.MULTILINE):
        tunes.append(text.splitlines())
    return tunes


class AbcParser:
    @staticmethod
    def parse(abc_string: str, defaults: Optional[DecoderDefaults] = None) -> Document:
        """
        Parses the first tune of an ABC notation string into a Document.
        """
        tunes = split_tunes(abc_string)
        if not tunes:
            raise EmptyInputError("No tunes found in ABC notation")
        return _AbcTune(tunes[0], defaults or DecoderDefaults()).decode()

    @staticmethod
    def parse_all(abc_string: str, defaults: Optional[DecoderDefaults] = None) -> List[Document]:
        """Parses every tune in the string, in order."""
        tunes = split_tunes(abc_string)
        if not tunes:
            raise EmptyInputError("No tunes found in ABC notation")
        logger.debug(f"Found {len(tunes)} ABC tunes")
        return [_AbcTune(lines, defaults or DecoderDefaults()).decode() for lines in tunes]
