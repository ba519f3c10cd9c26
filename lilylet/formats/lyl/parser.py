from dataclasses import dataclass
from typing import List, Optional
import re
import logging

from ...core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Duration, Ratio, KeySignature,
    Tempo, NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent,
    Tie, Slur, Beam, Articulation, Fingering, Hairpin, Placement, StemDirection,
)
from ...core.pitch import ORIGIN, PitchEnv, decode_relative, decode_chord, marker_count
from ...core.marks import (
    SUFFIX_ACCIDENTAL, SYMBOL_ARTICULATION, CLEF_NAMES, COMMAND_STEM, command_mark,
    hairpin_from_command,
)
from ...core.errors import ParseError, EmptyInputError

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(r'^[ \t]*\[([A-Za-z][\w-]*)\s+"((?:[^"\\]|\\.)*)"\][ \t]*$', re.MULTILINE)

HEADER_FIELDS = {
    "title": "title", "subtitle": "subtitle", "composer": "composer", "arranger": "arranger",
    "lyricist": "lyricist", "opus": "opus", "instrument": "instrument", "genre": "genre",
    "auto-beam": "auto_beam",
}

TOKEN_PATTERN = re.compile(r"""
    (?P<comment>%[^\n]*)
  | (?P<space>\s+)
  | (?P<part>\\\\\\\\)
  | (?P<voice>\\\\)
  | (?P<hairpin>\\[<>!])
  | (?P<command>\\[A-Za-z]+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<beat>\d+\.*=\d+)
  | (?P<fraction>\d+/\d+)
  | (?P<duration>\d+\.*)
  | (?P<ottava>\#-?\d+)
  | (?P<tremolo>:\d+)
  | (?P<artic>[-^_](?:_\.|[.!_^>]|[1-5]))
  | (?P<note>[a-g](?:ss|ff|s|f|!)?[',]*)
  | (?P<rest>[rRs])
  | (?P<word>[A-Za-z]+)
  | (?P<punct>[<>{}()\[\]~|])
""", re.VERBOSE)


@dataclass
class _Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> List[_Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match:
            raise ParseError(f"Unexpected character {text[pos]!r}", pos)
        kind = match.lastgroup
        if kind not in ("comment", "space"):
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


def unquote(text: str) -> str:
    return re.sub(r'\\(.)', r'\1', text[1:-1])


def parse_duration_text(text: str) -> Duration:
    digits = text.rstrip(".")
    return Duration(division=int(digits), dots=len(text) - len(digits))


def split_note(text: str, pos: Optional[int] = None):
    """Splits a note token into (phonet, accidental, net octave markers)."""
    match = re.match(r"([a-g])(ss|ff|s|f|!)?([',]*)$", text)
    if not match:
        raise ParseError(f"Expected a note, found {text!r}", pos)
    phonet, acc, markers = match.groups()
    return Phonet(phonet), SUFFIX_ACCIDENTAL.get(acc) if acc else None, marker_count(markers)


class _LylReader:
    """Walks the token stream, building measures, parts and voices."""

    def __init__(self, tokens: List[_Token]):
        self.tokens = tokens
        self.index = 0
        self.measures: List[Measure] = []
        self.duration = Duration(4)
        self.staff = 1
        self._start_measure()

    # --- structure ---

    def _start_measure(self):
        self.measure = Measure(parts=[Part()])
        self._start_voice()

    def _start_voice(self):
        self.voice = Voice(staff=self.staff)
        self.measure.parts[-1].voices.append(self.voice)
        self.env: PitchEnv = ORIGIN
        self.stem: Optional[StemDirection] = None
        self.cross_staff: Optional[int] = None
        self.open_hairpin = None
        self.timed = False
        self.pending_grace = False

    def _end_measure(self):
        if any(v.events for p in self.measure.parts for v in p.voices) or self.measure.key or self.measure.time_sig:
            for part in self.measure.parts:
                part.voices = [v for v in part.voices if v.events] or part.voices[:1]
            self.measures.append(self.measure)
        self._start_measure()

    def _at_measure_head(self) -> bool:
        return len(self.measure.parts) == 1 and len(self.measure.parts[0].voices) == 1 and not self.timed

    # --- token helpers ---

    def peek(self, offset: int = 0) -> Optional[_Token]:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def next(self) -> _Token:
        token = self.peek()
        if token is None:
            raise ParseError("Unexpected end of input")
        self.index += 1
        return token

    def expect(self, kind: str, text: Optional[str] = None) -> _Token:
        token = self.next()
        if token.kind != kind or (text is not None and token.text != text):
            raise ParseError(f"Expected {text or kind}, found {token.text!r}", token.pos)
        return token

    def take_duration(self) -> Duration:
        token = self.peek()
        if token is not None and token.kind == "duration":
            self.index += 1
            self.duration = parse_duration_text(token.text)
        return self.duration

    # --- reading ---

    def read(self) -> List[Measure]:
        while self.peek() is not None:
            self.read_token(self.voice.events)
        self._end_measure()
        return self.measures

    def read_token(self, events: list):
        token = self.next()
        kind, text = token.kind, token.text

        if kind == "punct" and text == "|":
            self._end_measure()
        elif kind == "voice":
            self._start_voice()
        elif kind == "part":
            self.measure.parts.append(Part())
            self._start_voice()
        elif kind == "note" or (kind == "punct" and text == "<"):
            self.index -= 1
            self.read_note(events)
        elif kind == "rest":
            self.read_rest(text, events)
        elif kind == "command":
            self.read_command(text[1:], events)
        elif kind in ("artic", "hairpin", "tremolo") or (kind == "punct" and text in "~()[]"):
            self.index -= 1
            self.read_post_events(events)
        elif kind == "word":
            raise ParseError(f"Unexpected word {text!r}", token.pos)
        else:
            logger.debug(f"Skipping unexpected token {text!r} at offset {token.pos}")

    def read_pitches(self) -> List[Pitch]:
        if self.peek().text == "<":
            self.next()
            notes = []
            while True:
                token = self.next()
                if token.kind == "punct" and token.text == ">":
                    break
                if token.kind != "note":
                    raise ParseError(f"Unexpected {token.text!r} inside chord", token.pos)
                notes.append(split_note(token.text))
            if not notes:
                raise ParseError("Empty chord", token.pos)
            octaves, self.env = decode_chord(self.env, [(p, m) for p, _, m in notes])
            return [Pitch(p, octave, acc) for (p, acc, _), octave in zip(notes, octaves)]

        token = self.next()
        phonet, acc, markers = split_note(token.text, token.pos)
        octave, self.env = decode_relative(self.env, phonet, markers)
        return [Pitch(phonet, octave, acc)]

    def read_note(self, events: list):
        pitches = self.read_pitches()
        duration = self.take_duration()

        nxt = self.peek()
        if nxt is not None and nxt.kind == "command" and nxt.text == "\\rest":
            self.next()
            events.append(RestEvent(duration=duration, pitch=pitches[0]))
        else:
            note = NoteEvent(pitches=pitches, duration=duration, grace=self.pending_grace,
                             stem_direction=self.stem, staff=self.cross_staff)
            events.append(note)
        self.pending_grace = False
        self.timed = True
        self.read_post_events(events)

    def read_rest(self, text: str, events: list):
        duration = self.take_duration()
        events.append(RestEvent(duration=duration, invisible=text == "s", full_measure=text == "R"))
        self.timed = True
        self.read_post_events(events)

    def read_post_events(self, events: list):
        """Attaches marks that follow a note or rest to the last timed event."""
        while True:
            token = self.peek()
            if token is None:
                return
            mark = None
            if token.kind == "punct" and token.text in "~()[]":
                mark = {"~": Tie(True), "(": Slur(True), ")": Slur(False),
                        "[": Beam(True), "]": Beam(False)}[token.text]
            elif token.kind == "artic":
                prefix, body = token.text[0], token.text[1:]
                if body.isdigit():
                    mark = Fingering(int(body))
                else:
                    placement = {"^": Placement.ABOVE, "_": Placement.BELOW}.get(prefix)
                    mark = Articulation(SYMBOL_ARTICULATION[body], placement)
            elif token.kind == "hairpin":
                hairpin = hairpin_from_command(token.text[1], self.open_hairpin)
                self.open_hairpin = hairpin if hairpin.is_start else None
                mark = Hairpin(hairpin)
            elif token.kind == "tremolo":
                self.next()
                target = self._last_timed(events)
                if isinstance(target, NoteEvent):
                    target.tremolo = int(token.text[1:])
                continue
            elif token.kind == "command" and command_mark(token.text[1:]) is not None:
                mark = command_mark(token.text[1:])
            else:
                return
            self.next()
            target = self._last_timed(events)
            if isinstance(target, NoteEvent):
                target.marks.append(mark)
            else:
                logger.debug(f"Mark {token.text!r} has no note to attach to, skipping")

    def _last_timed(self, events: list):
        for event in reversed(events):
            if isinstance(event, (NoteEvent, RestEvent)):
                return event
            if isinstance(event, TupletEvent) and event.events:
                return event.events[-1]
        return None

    def read_command(self, name: str, events: list):
        if name == "clef":
            clef_name = unquote(self.expect("string").text)
            if clef_name in CLEF_NAMES:
                events.append(ContextChange(clef=CLEF_NAMES[clef_name]))
            else:
                logger.warning(f"Unknown clef '{clef_name}', skipping")
        elif name == "key":
            phonet, acc, _ = split_note(self.expect("note").text)
            mode = self.expect("command").text[1:]
            key = KeySignature(phonet, acc, "minor" if mode == "minor" else "major")
            if self._at_measure_head():
                self.measure.key = key
            else:
                events.append(ContextChange(key=key))
        elif name == "time":
            num, den = map(int, self.expect("fraction").text.split("/"))
            if self._at_measure_head():
                self.measure.time_sig = Ratio(num, den)
            else:
                events.append(ContextChange(time=Ratio(num, den)))
        elif name == "numericTimeSignature":
            pass
        elif name == "ottava":
            events.append(ContextChange(ottava=int(self.expect("ottava").text[1:])))
        elif name in COMMAND_STEM:
            direction = COMMAND_STEM[name]
            self.stem = None if direction == StemDirection.AUTO else direction
        elif name == "tempo":
            events.append(ContextChange(tempo=self.read_tempo()))
        elif name == "staff":
            staff = int(unquote(self.expect("string").text))
            self.staff = staff
            if not self.timed:
                self.voice.staff = staff
                self.cross_staff = None
            else:
                events.append(ContextChange(staff=staff))
                self.cross_staff = staff if staff != self.voice.staff else None
        elif name == "grace":
            self.read_grace(events)
        elif name == "bar":
            events.append(BarlineEvent(unquote(self.expect("string").text)))
        elif name == "times":
            self.read_tuplet(events)
        elif name == "repeat":
            self.read_tremolo(events)
        else:
            logger.debug(f"Skipping unknown command \\{name}")

    def read_tempo(self) -> Tempo:
        text = beat = bpm = None
        if self.peek() is not None and self.peek().kind == "string":
            text = unquote(self.next().text)
        if self.peek() is not None and self.peek().kind == "beat":
            value, number = self.next().text.split("=")
            beat, bpm = parse_duration_text(value), int(number)
        return Tempo(text=text, beat=beat, bpm=bpm)

    def read_grace(self, events: list):
        if self.peek() is not None and self.peek().text == "{":
            self.next()
            while self.peek() is not None and self.peek().text != "}":
                self.pending_grace = True
                self.read_token(events)
            self.expect("punct", "}")
            self.pending_grace = False
        else:
            self.pending_grace = True

    def read_tuplet(self, events: list):
        num, den = map(int, self.expect("fraction").text.split("/"))
        self.expect("punct", "{")
        inner: list = []
        while True:
            token = self.peek()
            if token is None:
                raise ParseError("Unterminated tuplet")
            if token.text == "}":
                self.next()
                break
            self.read_token(inner)
        timed = [e for e in inner if isinstance(e, (NoteEvent, RestEvent))]
        if len(timed) != len(inner):
            logger.warning("Context changes inside a tuplet are not kept")
        events.append(TupletEvent(ratio=Ratio(num, den), events=timed))
        self.timed = True

    def read_tremolo(self, events: list):
        token = self.next()
        if token.kind != "word" or token.text != "tremolo":
            raise ParseError(f"Unsupported repeat type {token.text!r}", token.pos)
        count = int(self.expect("duration").text)
        self.expect("punct", "{")
        groups = []
        division = self.duration.division
        while self.peek() is not None and self.peek().text != "}":
            token = self.peek()
            if token.kind != "note" and token.text != "<":
                raise ParseError(f"Expected a note or chord in tremolo, found {token.text!r}", token.pos)
            groups.append(self.read_pitches())
            division = self.take_duration().division
        self.expect("punct", "}")
        if len(groups) != 2:
            raise ParseError(f"A tremolo needs two notes or chords, found {len(groups)}")
        events.append(TremoloEvent(pitch_a=groups[0], pitch_b=groups[1], count=count, division=division))
        self.timed = True


class LylParser:
    @staticmethod
    def parse(text: str) -> Document:
        """
        Parses native Lilylet notation into a Document.
        """
        metadata = Metadata()
        for match in HEADER_PATTERN.finditer(text):
            field_name = HEADER_FIELDS.get(match.group(1))
            if field_name is None:
                logger.debug(f"Ignoring unknown header [{match.group(1)}]")
                continue
            setattr(metadata, field_name, re.sub(r'\\(.)', r'\1', match.group(2)))
        body = HEADER_PATTERN.sub("", text)

        measures = _LylReader(tokenize(body)).read()
        if not measures:
            raise EmptyInputError("No measures found in input")
        logger.debug(f"Parsed {len(measures)} measures")
        return Document(measures=measures, metadata=None if metadata.is_empty() else metadata)
