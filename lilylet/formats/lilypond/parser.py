"""
LilyPond source reader.

Covers the subset of LilyPond that scores are usually written in: header fields,
variables, \\score, \\new contexts, sequential and simultaneous music, relative,
fixed and absolute pitch entry in Dutch or English note names, tuplets, tremolos,
grace notes, repeats, and the common context commands. Anything else is skipped
with a debug message. Measures are cut by the running time signature; a bar check
that arrives early closes the measure as well.
"""
import logging
import re
from dataclasses import dataclass, field, replace
from fractions import Fraction
from typing import Dict, List, Optional, Tuple, Union

from ...core.types import (
    Document, Metadata, Measure, Part, Voice, Pitch, Phonet, Accidental, Duration, Ratio,
    KeySignature, Tempo, NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent,
    BarlineEvent, Event, Tie, Slur, Beam, Articulation, Fingering, Hairpin, Placement,
    StemDirection, HairpinType, Mark,
)
from ...core.pitch import ORIGIN, PitchEnv, decode_relative, decode_chord
from ...core.duration import fraction_to_division_dots, multiply, event_length, is_power_of_two
from ...core.theory import parse_key_name
from ...core.marks import (
    LILYPOND_SYMBOL_ARTICULATION, CLEF_NAMES, COMMAND_STEM, command_mark, hairpin_from_command,
)
from ...core.errors import ParseError, EmptyInputError

logger = logging.getLogger(__name__)

COMMENT_PATTERN = re.compile(r'"(?:\\.|[^"\\])*"|%\{.*?%\}|%[^\n]*', re.DOTALL)
SCHEME_START = re.compile(r"#'?\(")

TOKEN_PATTERN = re.compile(r"""
    (?P<space>\s+)
  | (?P<string>"(?:\\.|[^"\\])*")
  | (?P<scheme>\#\#?(?:"[^"]*"|[^\s{}<>\[\]]+))
  | (?P<voice>\\\\)
  | (?P<hairpin>\\[<>!])
  | (?P<command>\\[A-Za-z]+)
  | (?P<simopen><<)
  | (?P<simclose>>>)
  | (?P<fraction>\d+/\d+)
  | (?P<duration>\d+\.*(?:\*\d+(?:/\d+)?)?)
  | (?P<tremolo>:\d+)
  | (?P<artic>[-^_](?:[.!^>_+-]|[1-5]))
  | (?P<placement>[-^_])
  | (?P<word>[A-Za-z]+(?:-(?:sharp|flat)+)?(?:\.[A-Za-z]+)*[',]*[!?]?)
  | (?P<punct>[{}<>~()\[\]|=])
  | (?P<other>\S)
""", re.VERBOSE)

NOTE_WORD = re.compile(r"([a-g])([a-z-]*?)([',]*)([!?]?)")
DURATION_TEXT = re.compile(r"(\d+)(\.*)(?:\*(\d+)(?:/(\d+))?)?")

DUTCH_SUFFIXES = {
    "": None, "is": Accidental.SHARP, "isis": Accidental.DOUBLE_SHARP,
    "es": Accidental.FLAT, "s": Accidental.FLAT, "eses": Accidental.DOUBLE_FLAT, "ses": Accidental.DOUBLE_FLAT,
}
ENGLISH_SUFFIXES = {
    "": None, "s": Accidental.SHARP, "-sharp": Accidental.SHARP,
    "ss": Accidental.DOUBLE_SHARP, "x": Accidental.DOUBLE_SHARP, "-sharpsharp": Accidental.DOUBLE_SHARP,
    "f": Accidental.FLAT, "-flat": Accidental.FLAT,
    "ff": Accidental.DOUBLE_FLAT, "-flatflat": Accidental.DOUBLE_FLAT,
}

HEADER_FIELDS = {
    "title": "title", "subtitle": "subtitle", "composer": "composer", "arranger": "arranger",
    "poet": "lyricist", "lyricist": "lyricist", "opus": "opus", "instrument": "instrument",
}

PLACEMENTS = {"^": Placement.ABOVE, "_": Placement.BELOW}

STAFF_CONTEXTS = ("Staff", "RhythmicStaff", "TabStaff", "DrumStaff")
TEXT_CONTEXTS = ("Lyrics", "ChordNames", "FiguredBass", "FretBoards")
GRACE_COMMANDS = ("grace", "acciaccatura", "appoggiatura", "slashedGrace")
LONG_DURATIONS = ("breve", "longa", "maxima")
SKIPPED_BLOCKS = ("layout", "midi", "paper", "with", "lyricmode", "chordmode", "figuremode", "addlyrics")

PitchName = Tuple[Phonet, Optional[Accidental], int]


def strip_comments(text: str) -> str:
    return COMMENT_PATTERN.sub(lambda m: m.group() if m.group().startswith('"') else " ", text)


def strip_scheme(text: str) -> str:
    """Replaces parenthesised Scheme expressions with a placeholder token."""
    out = []
    pos = 0
    while True:
        match = SCHEME_START.search(text, pos)
        if not match:
            out.append(text[pos:])
            return "".join(out)
        out.append(text[pos:match.start()])
        depth = 0
        end = match.end() - 1
        while end < len(text):
            if text[end] == "(":
                depth += 1
            elif text[end] == ")":
                depth -= 1
                if depth == 0:
                    break
            end += 1
        out.append(" #scheme ")
        pos = end + 1


@dataclass
class _Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> List[_Token]:
    tokens = []
    for match in TOKEN_PATTERN.finditer(text):
        if match.lastgroup != "space":
            tokens.append(_Token(match.lastgroup, match.group(), match.start()))
    return tokens


def unquote(text: str) -> str:
    if text.startswith('"') and text.endswith('"') and len(text) >= 2:
        return re.sub(r'\\(.)', r'\1', text[1:-1])
    return text


def parse_duration(text: str) -> Tuple[Duration, Fraction]:
    """Duration and multiplier of a token such as `4.` or `1*3/4`."""
    match = DURATION_TEXT.fullmatch(text)
    if not match:
        raise ParseError(f"Invalid duration '{text}'")
    base, dots, num, den = match.groups()
    division = int(base)
    if not is_power_of_two(division):
        raise ParseError(f"Invalid duration '{text}'")
    return Duration(division, len(dots)), Fraction(int(num or 1), int(den or 1))


# --- syntax tree ---

@dataclass
class _NoteItem:
    kind: str  # note, chord, rest, full, spacer, repeat
    pitches: List[PitchName] = field(default_factory=list)
    duration: Optional[Duration] = None
    multiplier: Fraction = Fraction(1)
    post: list = field(default_factory=list)
    pitched_rest: bool = False


@dataclass
class _Post:
    post: list


@dataclass
class _BarCheck:
    pass


@dataclass
class _Command:
    name: str
    args: list = field(default_factory=list)


@dataclass
class _Seq:
    items: list


@dataclass
class _Sim:
    branches: List[list]


@dataclass
class _New:
    context: str
    name: Optional[str]
    body: object


@dataclass
class _PitchMode:
    mode: str  # relative, fixed, absolute
    start: Optional[PitchName]
    body: object


@dataclass
class _Tuplet:
    ratio: Ratio
    body: object


@dataclass
class _Repeat:
    kind: str
    count: int
    body: object
    alternatives: list = field(default_factory=list)


@dataclass
class _Grace:
    body: object


BLOCKS = (_Seq, _Sim, _New, _PitchMode, _Tuplet, _Repeat, _Grace)


class _LilyReader:
    """Builds a syntax tree from the token stream, collecting header and variables on the way."""

    def __init__(self, tokens: List[_Token]):
        self.tokens = tokens
        self.index = 0
        self.english = False
        self.variables: Dict[str, object] = {}
        self.metadata = Metadata()

    def peek(self, offset: int = 0) -> Optional[_Token]:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def next(self) -> _Token:
        token = self.peek()
        if token is None:
            raise ParseError("Unexpected end of input")
        self.index += 1
        return token

    def at(self, kind: str, text: Optional[str] = None) -> bool:
        token = self.peek()
        return token is not None and token.kind == kind and (text is None or token.text == text)

    def expect(self, kind: str, text: Optional[str] = None) -> _Token:
        token = self.next()
        if token.kind != kind or (text is not None and token.text != text):
            raise ParseError(f"Expected {text or kind}, found {token.text!r}", token.pos)
        return token

    # --- top level ---

    def document(self):
        score = None
        loose = []
        while self.peek() is not None:
            token = self.peek()
            if token.kind == "command":
                name = token.text[1:]
                if name in ("version", "include", "language"):
                    self.next()
                    if self.at("string"):
                        self._language(name, unquote(self.next().text))
                    continue
                if name == "header":
                    self.next()
                    self.header()
                    continue
                if name in ("paper", "layout", "midi"):
                    self.next()
                    self.skip_block()
                    continue
                if name == "score":
                    self.next()
                    music = self.score()
                    score = score if score is not None else music
                    continue
                if name in ("book", "bookpart"):
                    self.next()
                    self.expect("punct", "{")
                    continue
            if token.kind == "word" and self.peek(1) is not None and self.peek(1).text == "=":
                self.assignment()
                continue
            if token.kind == "scheme" or (token.kind == "punct" and token.text == "}"):
                self.next()
                continue
            music = self.music()
            if music is not None:
                loose.append(music)
        return score if score is not None else _Seq(loose)

    def _language(self, command: str, value: str):
        if command == "language":
            self.english = value == "english"
            if value not in ("english", "nederlands"):
                logger.warning(f"Note language '{value}' is not supported, reading Dutch names")
        elif command == "include" and value == "english.ly":
            self.english = True

    def header(self):
        self.expect("punct", "{")
        while not self.at("punct", "}"):
            token = self.next()
            if token.kind != "word" or not self.at("punct", "="):
                continue
            self.next()
            value = None
            if self.at("string"):
                value = unquote(self.next().text)
            elif self.at("command", "\\markup"):
                self.next()
                self.skip_markup()
            else:
                self.next()
            attr = HEADER_FIELDS.get(token.text)
            if attr and value:
                setattr(self.metadata, attr, value)
            elif value is not None:
                logger.debug(f"Ignoring header field '{token.text}'")
        self.next()

    def score(self):
        self.expect("punct", "{")
        music = None
        while not self.at("punct", "}"):
            if self.peek() is None:
                raise ParseError("Unterminated \\score block")
            if self.at("command", "\\header"):
                self.next()
                self.header()
                continue
            if self.peek().kind == "command" and self.peek().text[1:] in ("layout", "midi"):
                self.next()
                self.skip_block()
                continue
            item = self.music()
            if music is None:
                music = item
        self.next()
        return music

    def assignment(self):
        name = self.next().text
        self.next()
        if self.peek() is not None and self.peek().kind in ("string", "scheme"):
            self.next()
            return
        self.variables[name] = self.music()

    def skip_block(self):
        if not self.at("punct", "{"):
            return
        depth = 0
        while self.peek() is not None:
            token = self.next()
            if token.kind == "punct" and token.text == "{":
                depth += 1
            elif token.kind == "punct" and token.text == "}":
                depth -= 1
                if depth == 0:
                    return
        raise ParseError("Unterminated { block")

    def skip_markup(self):
        while self.peek() is not None:
            token = self.peek()
            if token.kind == "punct" and token.text == "{":
                self.skip_block()
                return
            if token.kind == "command":
                self.next()
                continue
            if token.kind in ("string", "word", "scheme"):
                self.next()
            return

    # --- music expressions ---

    def music(self):
        token = self.peek()
        if token is None:
            return None
        if token.kind == "punct" and token.text == "{":
            return self.sequence()
        if token.kind == "simopen":
            return self.simultaneous()
        if token.kind == "command":
            name = token.text[1:]
            if name in ("new", "context"):
                return self.new_context()
            if name == "relative":
                self.next()
                start = self.optional_pitch()
                return _PitchMode("relative", start, self.music())
            if name == "fixed":
                self.next()
                start = self.pitch_arg()
                return _PitchMode("fixed", start, self.music())
            if name == "absolute":
                self.next()
                return _PitchMode("absolute", None, self.music())
            if name == "transpose":
                self.next()
                self.pitch_arg()
                self.pitch_arg()
                logger.warning("\\transpose is not applied, reading the music as written")
                return self.music()
            if name in ("tuplet", "times"):
                return self.tuplet()
            if name == "repeat":
                return self.repeat()
            if name in GRACE_COMMANDS:
                self.next()
                return _Grace(self.music())
            if name == "afterGrace":
                self.next()
                main = self.music()
                return _Seq([main, _Grace(self.music())])
            if name in self.variables:
                self.next()
                return self.variables[name]
        return self.leaf()

    def sequence(self) -> _Seq:
        start = self.expect("punct", "{")
        items = []
        while not self.at("punct", "}"):
            if self.peek() is None:
                raise ParseError("Unterminated { block", start.pos)
            if self.at("voice"):
                self.next()
                logger.debug("Skipping voice separator outside << >>")
                continue
            item = self.music()
            if item is not None:
                items.append(item)
        self.next()
        return _Seq(items)

    def simultaneous(self) -> _Sim:
        start = self.next()
        branches: List[list] = [[]]
        separated = False
        while not self.at("simclose"):
            if self.peek() is None:
                raise ParseError("Unterminated << block", start.pos)
            if self.at("voice"):
                self.next()
                separated = True
                branches.append([])
                continue
            item = self.music()
            if item is not None:
                branches[-1].append(item)
        self.next()
        if separated:
            return _Sim(branches)

        # Without \\ every block runs in parallel; loose commands join the block after them.
        groups: List[list] = []
        current: list = []
        has_block = False
        for item in branches[0]:
            block = isinstance(item, BLOCKS)
            if block and has_block:
                groups.append(current)
                current, has_block = [], False
            current.append(item)
            has_block = has_block or block
        groups.append(current)
        return _Sim(groups)

    def new_context(self):
        self.next()
        context = self.next().text
        name = None
        if self.at("punct", "="):
            self.next()
            name = unquote(self.next().text)
        if self.at("command", "\\with"):
            self.next()
            self.skip_block()
        if context in TEXT_CONTEXTS:
            self.skip_text_music()
            logger.debug(f"Skipping {context} context")
            return None
        return _New(context, name, self.music())

    def skip_text_music(self):
        if self.at("command", "\\lyricsto"):
            self.next()
            self.next()
        elif self.peek() is not None and self.peek().kind == "command":
            self.next()
        self.skip_block()

    def tuplet(self) -> _Tuplet:
        name = self.next().text[1:]
        num, den = map(int, self.expect("fraction").text.split("/"))
        if name == "tuplet" and self.at("duration"):
            self.next()
        if num <= 0 or den <= 0:
            raise ParseError(f"Invalid tuplet fraction {num}/{den}")
        ratio = Ratio(den, num) if name == "tuplet" else Ratio(num, den)
        return _Tuplet(ratio, self.music())

    def repeat(self) -> _Repeat:
        self.next()
        kind = self.expect("word").text
        count = int(self.expect("duration").text.rstrip("."))
        body = self.music()
        alternatives = []
        if self.at("command", "\\alternative"):
            self.next()
            self.expect("punct", "{")
            while not self.at("punct", "}"):
                if self.peek() is None:
                    raise ParseError("Unterminated \\alternative block")
                item = self.music()
                if item is not None:
                    alternatives.append(item)
            self.next()
        return _Repeat(kind, count, body, alternatives)

    # --- pitches and leaves ---

    def note_name(self, word: str) -> Optional[PitchName]:
        match = NOTE_WORD.fullmatch(word)
        if not match:
            return None
        letter, suffix, ticks, reminder = match.groups()
        table = ENGLISH_SUFFIXES if self.english else DUTCH_SUFFIXES
        if suffix not in table:
            return None
        accidental = table[suffix]
        if reminder == "!" and accidental is None:
            accidental = Accidental.NATURAL
        return Phonet(letter), accidental, ticks.count("'") - ticks.count(",")

    def optional_pitch(self) -> Optional[PitchName]:
        if self.at("word"):
            pitch = self.note_name(self.peek().text)
            if pitch is not None:
                self.next()
                return pitch
        return None

    def pitch_arg(self) -> PitchName:
        token = self.expect("word")
        pitch = self.note_name(token.text)
        if pitch is None:
            raise ParseError(f"Expected a pitch, found {token.text!r}", token.pos)
        return pitch

    def leaf(self):
        token = self.peek()
        if token.kind == "word":
            return self.note_item()
        if token.kind == "punct":
            if token.text == "<":
                return self.chord_item()
            if token.text == "|":
                self.next()
                return _BarCheck()
            if token.text in "~()[]":
                return _Post(self.post_events())
        if token.kind in ("artic", "hairpin", "tremolo"):
            return _Post(self.post_events())
        if token.kind == "command":
            return self.command()
        self.next()
        logger.debug(f"Skipping unexpected token {token.text!r} at offset {token.pos}")
        return None

    def take_duration(self, item: _NoteItem):
        if self.at("duration"):
            item.duration, item.multiplier = parse_duration(self.next().text)
        elif self.peek() is not None and self.peek().kind == "command" and self.peek().text[1:] in LONG_DURATIONS:
            logger.warning(f"Note value {self.next().text} is longer than a whole note, reading a whole note")
            item.duration = Duration(1)

    def note_item(self) -> Optional[_NoteItem]:
        token = self.next()
        word = token.text
        if word in ("r", "R", "s"):
            item = _NoteItem(kind={"r": "rest", "R": "full", "s": "spacer"}[word])
        elif word == "q":
            item = _NoteItem(kind="repeat")
        else:
            pitch = self.note_name(word)
            if pitch is None:
                logger.debug(f"Skipping unknown word '{word}' at offset {token.pos}")
                return None
            item = _NoteItem(kind="note", pitches=[pitch])
        self.take_duration(item)
        item.post = self.post_events(item)
        return item

    def chord_item(self) -> _NoteItem:
        start = self.next()
        pitches = []
        while not self.at("punct", ">"):
            token = self.peek()
            if token is None:
                raise ParseError("Unterminated chord", start.pos)
            self.next()
            pitch = self.note_name(token.text) if token.kind == "word" else None
            if pitch is not None:
                pitches.append(pitch)
            else:
                logger.debug(f"Skipping {token.text!r} inside chord")
        self.next()
        if not pitches:
            raise ParseError("Empty chord", start.pos)
        item = _NoteItem(kind="chord", pitches=pitches)
        self.take_duration(item)
        item.post = self.post_events(item)
        return item

    def post_events(self, item: Optional[_NoteItem] = None) -> list:
        post: list = []
        while self.peek() is not None:
            token = self.peek()
            if token.kind == "punct" and len(token.text) == 1 and token.text in "~()[]":
                self.next()
                post.append({"~": Tie(True), "(": Slur(True), ")": Slur(False),
                             "[": Beam(True), "]": Beam(False)}[token.text])
            elif token.kind == "artic":
                self.next()
                prefix, body = token.text[0], token.text[1:]
                if body.isdigit():
                    post.append(Fingering(int(body)))
                elif body in LILYPOND_SYMBOL_ARTICULATION:
                    post.append(Articulation(LILYPOND_SYMBOL_ARTICULATION[body], PLACEMENTS.get(prefix)))
                else:
                    logger.debug(f"Skipping articulation {token.text!r}")
            elif token.kind == "placement":
                self.next()
                self._placed(PLACEMENTS.get(token.text), post)
            elif token.kind == "hairpin":
                self.next()
                post.append(("hairpin", token.text[1]))
            elif token.kind == "tremolo":
                self.next()
                post.append(("tremolo", int(token.text[1:])))
            elif token.kind == "command" and token.text == "\\rest" and item is not None:
                self.next()
                item.pitched_rest = True
            elif token.kind == "command" and command_mark(token.text[1:]) is not None:
                self.next()
                post.append(command_mark(token.text[1:]))
            else:
                break
        return post

    def _placed(self, placement: Optional[Placement], post: list):
        """Reads what follows an explicit direction prefix such as `^\\fermata` or `_"text"`."""
        token = self.peek()
        if token is None:
            return
        if token.kind == "command" and token.text == "\\markup":
            self.next()
            self.skip_markup()
        elif token.kind == "command" and command_mark(token.text[1:]) is not None:
            self.next()
            mark = command_mark(token.text[1:])
            if isinstance(mark, Articulation) and placement:
                mark = Articulation(mark.type, placement)
            post.append(mark)
        elif token.kind == "hairpin":
            self.next()
            post.append(("hairpin", token.text[1]))
        elif token.kind == "string":
            self.next()
            logger.debug(f"Skipping text script {token.text}")
        elif token.kind == "duration" and token.text in "12345":
            self.next()
            post.append(Fingering(int(token.text)))

    def command(self):
        token = self.next()
        name = token.text[1:]
        if name == "clef":
            arg = self.next()
            value = unquote(arg.text)
            if self.at("placement") and self.peek(1) is not None and self.peek(1).kind == "duration":
                self.next()
                self.next()
                logger.warning(f"Octave clef suffix on '{value}' is not kept")
            return _Command("clef", [re.sub(r"[_^]\d+$", "", value)])
        if name == "key":
            pitch = self.pitch_arg()
            mode = self.expect("command").text[1:]
            return _Command("key", [pitch, mode])
        if name == "time":
            if not self.at("fraction"):
                logger.debug("Skipping \\time without a fraction")
                return None
            num, den = map(int, self.next().text.split("/"))
            return _Command("time", [Ratio(num, den)])
        if name == "tempo":
            return self.tempo()
        if name == "ottava":
            arg = self.next()
            try:
                return _Command("ottava", [int(arg.text.lstrip("#"))])
            except ValueError:
                raise ParseError(f"Invalid \\ottava value {arg.text!r}", arg.pos)
        if name in COMMAND_STEM:
            return _Command("stem", [COMMAND_STEM[name]])
        if name == "bar":
            return _Command("bar", [unquote(self.expect("string").text)])
        if name == "partial":
            duration, multiplier = parse_duration(self.expect("duration").text)
            return _Command("partial", [duration.as_fraction() * multiplier])
        if name == "change":
            self.next()
            self.expect("punct", "=")
            return _Command("change", [unquote(self.next().text)])
        if name in ("set", "override"):
            return self.property_setting()
        if name in ("revert", "unset"):
            self.next()
            return None
        if name == "tweak":
            self.next()
            self.next()
            return None
        if name == "markup":
            self.skip_markup()
            return None
        if name == "header":
            self.header()
            return None
        if name in SKIPPED_BLOCKS:
            self.skip_block()
            return None
        if name == "lyricsto":
            self.next()
            self.skip_block()
            return None
        mark = command_mark(name)
        if mark is not None:
            return _Post([mark] + self.post_events())
        logger.debug(f"Skipping unknown command \\{name}")
        return None

    def property_setting(self):
        path = []
        while self.peek() is not None and not self.at("punct", "="):
            path.append(self.next().text)
        if self.peek() is None:
            return None
        self.next()
        if self.at("punct", "{"):
            self.skip_block()
            return None
        if self.at("command", "\\markup"):
            self.next()
            self.skip_markup()
            return None
        value = self.next()
        if path and path[-1].endswith("instrumentName") and value.kind == "string":
            return _Command("name", [unquote(value.text)])
        return None

    def tempo(self) -> _Command:
        text = beat = bpm = None
        if self.at("string"):
            text = unquote(self.next().text)
        elif self.at("command", "\\markup"):
            self.next()
            self.skip_markup()
        if self.at("duration") and self.peek(1) is not None and self.peek(1).text == "=":
            beat, _ = parse_duration(self.next().text)
            self.next()
            bpm = int(self.expect("duration").text.rstrip("."))
            if self.at("placement", "-") and self.peek(1) is not None and self.peek(1).kind == "duration":
                self.next()
                self.next()
        return _Command("tempo", [Tempo(text=text, beat=beat, bpm=bpm)])


# --- interpretation ---

@dataclass
class _Track:
    part: int
    staff: int
    measures: Dict[int, List[Event]] = field(default_factory=dict)
    measure: int = 0
    position: Fraction = Fraction(0)
    stem: Optional[StemDirection] = None
    cross_staff: Optional[int] = None
    open_hairpin: Optional[HairpinType] = None
    last: Optional[Union[NoteEvent, RestEvent]] = None
    chord: Optional[List[Pitch]] = None

    def events(self) -> List[Event]:
        return self.measures.setdefault(self.measure, [])

    def point(self) -> Tuple[int, Fraction]:
        return self.measure, self.position


@dataclass
class _Scope:
    staff_key: str = ""
    voice_key: str = "0"
    track: Optional[_Track] = None
    start: Optional[Tuple[int, Fraction]] = None
    mode: str = "absolute"
    env: PitchEnv = ORIGIN
    fixed_octave: int = 0
    grace: bool = False
    sink: Optional[list] = None


class _Interpreter:
    """Runs the syntax tree, distributing events over tracks and measures."""

    def __init__(self):
        self.tracks: Dict[Tuple[str, str], _Track] = {}
        self.staff_numbers: Dict[str, Tuple[int, int]] = {}
        self.voice_counts: Dict[str, int] = {}
        self.anonymous_staves = 0
        self.headings: Dict[int, dict] = {}
        self.times: Dict[int, Ratio] = {}
        self.partials: Dict[int, Fraction] = {}
        self.part_names: Dict[int, str] = {}
        self.duration = Duration(4)

    # --- tracks and measures ---

    def staff_number(self, key: str) -> Tuple[int, int]:
        """(part, staff) of a staff context name: "2_1" names part 2 staff 1, "3" staff 3."""
        if key not in self.staff_numbers:
            match = re.fullmatch(r"(\d+)_(\d+)", key)
            if match:
                value = (int(match.group(1)) - 1, int(match.group(2)))
            elif key.isdigit():
                value = (0, int(key))
            else:
                used = [staff for part, staff in self.staff_numbers.values() if part == 0]
                value = (0, max(used, default=0) + 1)
            self.staff_numbers[key] = value
        return self.staff_numbers[key]

    def current(self, scope: _Scope) -> _Track:
        if scope.track is None:
            key = (scope.staff_key, scope.voice_key)
            track = self.tracks.get(key)
            if track is None:
                part, staff = self.staff_number(scope.staff_key)
                track = self.tracks[key] = _Track(part, staff)
            if scope.start is not None and scope.start > track.point():
                track.measure, track.position = scope.start
            scope.track = track
        return scope.track

    def start_point(self, scope: _Scope) -> Optional[Tuple[int, Fraction]]:
        return scope.track.point() if scope.track is not None else scope.start

    def length_of(self, measure: int) -> Fraction:
        if measure in self.partials:
            return self.partials[measure]
        time = Ratio(4, 4)
        for index in sorted(self.times):
            if index > measure:
                break
            time = self.times[index]
        return Fraction(time.numerator, time.denominator)

    def heading(self, measure: int) -> dict:
        return self.headings.setdefault(measure, {"key": None, "time": None, "partial": False})

    def at_head(self, track: _Track) -> bool:
        events = track.measures.get(track.measure, [])
        return track.position == 0 and not any(
            isinstance(e, (NoteEvent, RestEvent, TupletEvent, TremoloEvent)) for e in events)

    def place(self, scope: _Scope, event: Event, length: Fraction):
        if scope.sink is not None:
            scope.sink.append(event)
            return
        track = self.current(scope)
        track.events().append(event)
        if isinstance(event, (NoteEvent, RestEvent)):
            track.last = event
        track.position += length
        while track.position > 0 and track.position >= self.length_of(track.measure):
            track.position -= self.length_of(track.measure)
            track.measure += 1

    def emit(self, scope: _Scope, change: ContextChange):
        if scope.sink is not None:
            scope.sink.append(change)
        else:
            self.current(scope).events().append(change)

    def barline(self, scope: _Scope, style: str):
        track = self.current(scope)
        # A closing barline written after the last note belongs to the measure just finished.
        if track.position == 0 and track.measure > 0 and style != ".|:":
            track.measures.setdefault(track.measure - 1, []).append(BarlineEvent(style))
        else:
            track.events().append(BarlineEvent(style))

    # --- tree walk ---

    def interpret(self, node, scope: _Scope):
        if node is None:
            return
        if isinstance(node, _Seq):
            for item in node.items:
                self.interpret(item, scope)
        elif isinstance(node, _Sim):
            self.simultaneous(node, scope)
        elif isinstance(node, _New):
            self.new_context(node, scope)
        elif isinstance(node, _PitchMode):
            self.pitch_mode(node, scope)
        elif isinstance(node, _Tuplet):
            self.tuplet(node, scope)
        elif isinstance(node, _Repeat):
            self.repeat(node, scope)
        elif isinstance(node, _Grace):
            previous = scope.grace
            scope.grace = True
            self.interpret(node.body, scope)
            scope.grace = previous
        elif isinstance(node, _NoteItem):
            self.note(node, scope)
        elif isinstance(node, _Post):
            self.attach(node.post, scope)
        elif isinstance(node, _BarCheck):
            self.bar_check(scope)
        elif isinstance(node, _Command):
            self.command(node, scope)
        else:
            raise TypeError(f"Unknown music node {node!r}")

    def simultaneous(self, node: _Sim, scope: _Scope):
        start = self.start_point(scope)
        env = scope.env
        branch_scopes = []
        for index, branch in enumerate(node.branches):
            if index == 0:
                branch_scope = scope
            else:
                branch_scope = replace(scope, voice_key=f"{scope.voice_key}/{index}", track=None,
                                       start=start, env=env, sink=None)
            for item in branch:
                self.interpret(item, branch_scope)
            branch_scopes.append(branch_scope)

        if scope.track is not None:
            ends = [s.track.point() for s in branch_scopes if s.track is not None]
            scope.track.measure, scope.track.position = max(ends)

    def new_context(self, node: _New, scope: _Scope):
        if node.context in STAFF_CONTEXTS:
            key = node.name
            if key is None:
                self.anonymous_staves += 1
                key = f"#{self.anonymous_staves}"
            inner = replace(scope, staff_key=key, voice_key="0", track=None, start=self.start_point(scope))
        elif node.context == "Voice":
            count = self.voice_counts[scope.staff_key] = self.voice_counts.get(scope.staff_key, 0) + 1
            inner = replace(scope, voice_key=node.name or f"v{count}", track=None, start=self.start_point(scope))
        else:
            inner = scope
        self.interpret(node.body, inner)

    def pitch_mode(self, node: _PitchMode, scope: _Scope):
        inner = replace(scope, mode=node.mode)
        if node.mode == "relative":
            if node.start is not None:
                phonet, _, ticks = node.start
                inner.env = PitchEnv(phonet.step, ticks - 1)
            else:
                # Without a start pitch the first note reads as absolute.
                inner.env = PitchEnv(Phonet.F.step, -1)
        elif node.mode == "fixed":
            inner.fixed_octave = node.start[2] - 1
        self.interpret(node.body, inner)
        scope.track = inner.track if scope.track is None else scope.track

    def tuplet(self, node: _Tuplet, scope: _Scope):
        if scope.sink is not None:
            logger.warning("Nested tuplets are flattened into the outer tuplet")
            self.interpret(node.body, scope)
            return
        sink: list = []
        scope.sink = sink
        try:
            self.interpret(node.body, scope)
        finally:
            scope.sink = None
        timed = [e for e in sink if isinstance(e, (NoteEvent, RestEvent))]
        if len(timed) != len(sink):
            logger.warning("Only notes and rests are kept inside a tuplet")
        if not timed:
            return
        event = TupletEvent(ratio=node.ratio, events=timed)
        self.place(scope, event, event_length(event))
        self.current(scope).last = timed[-1]

    def repeat(self, node: _Repeat, scope: _Scope):
        if node.kind == "tremolo":
            self.tremolo(node, scope)
            return
        if node.kind == "volta":
            self.barline(scope, ".|:")
            self.interpret(node.body, scope)
            if node.alternatives:
                self.interpret(node.alternatives[0], scope)
                self.barline(scope, ":|.")
                for alternative in node.alternatives[1:]:
                    self.interpret(alternative, scope)
            else:
                self.barline(scope, ":|.")
            return
        logger.debug(f"Unfolding \\repeat {node.kind} {node.count}")
        for index in range(node.count):
            self.interpret(node.body, scope)
            if node.alternatives:
                which = max(0, len(node.alternatives) - node.count + index)
                self.interpret(node.alternatives[which], scope)

    def tremolo(self, node: _Repeat, scope: _Scope):
        outer = scope.sink
        sink: list = []
        scope.sink = sink
        try:
            self.interpret(node.body, scope)
        finally:
            scope.sink = outer
        notes = [e for e in sink if isinstance(e, NoteEvent)]
        if len(notes) == 2:
            event = TremoloEvent(notes[0].pitches, notes[1].pitches, node.count, notes[0].duration.division)
            self.place(scope, event, event_length(event))
        elif len(notes) == 1:
            note = notes[0]
            note.tremolo = note.duration.division
            note.duration = multiply(note.duration, node.count, 1)
            self.place(scope, note, note.duration.as_fraction())
        else:
            raise ParseError(f"A tremolo repeat needs one or two notes, found {len(notes)}")

    def resolve(self, names: List[PitchName], scope: _Scope) -> List[Pitch]:
        if scope.mode == "relative":
            if len(names) == 1:
                phonet, accidental, ticks = names[0]
                octave, scope.env = decode_relative(scope.env, phonet, ticks)
                return [Pitch(phonet, octave, accidental)]
            octaves, scope.env = decode_chord(scope.env, [(p, t) for p, _, t in names])
            return [Pitch(p, octave, a) for (p, a, _), octave in zip(names, octaves)]
        base = scope.fixed_octave if scope.mode == "fixed" else -1
        return [Pitch(p, base + ticks, a) for p, a, ticks in names]

    def note(self, item: _NoteItem, scope: _Scope):
        track = self.current(scope)
        if item.duration is not None:
            self.duration = item.duration
        duration = self.duration
        total = duration.as_fraction() * item.multiplier

        if item.kind == "full":
            count = max(1, round(total / self.length_of(track.measure)))
            if item.multiplier != 1:
                each = total / count
                duration = fraction_to_division_dots(each.numerator, each.denominator)
            for _ in range(count):
                remaining = self.length_of(track.measure) - track.position
                self.place(scope, RestEvent(duration=duration, full_measure=True), remaining)
            return
        if item.kind == "spacer":
            if item.multiplier != 1:
                duration = fraction_to_division_dots(total.numerator, total.denominator)
            self.place(scope, RestEvent(duration=duration, invisible=True), total)
            return
        if item.multiplier != 1:
            logger.debug(f"Ignoring duration multiplier {item.multiplier} on a note")

        if item.kind == "rest":
            event = RestEvent(duration=duration)
        else:
            if item.kind == "repeat":
                if not track.chord:
                    logger.warning("Chord repetition 'q' without a previous chord, skipping")
                    return
                pitches = list(track.chord)
            else:
                pitches = self.resolve(item.pitches, scope)
            if item.pitched_rest:
                event = RestEvent(duration=duration, pitch=pitches[0])
            else:
                event = NoteEvent(pitches=pitches, duration=duration, grace=scope.grace,
                                  stem_direction=track.stem, staff=track.cross_staff)
                track.chord = pitches
        length = Fraction(0) if scope.grace else duration.as_fraction()
        self.place(scope, event, length)
        self.attach(item.post, scope)

    def attach(self, post: list, scope: _Scope):
        if not post:
            return
        track = self.current(scope)
        target = scope.sink[-1] if scope.sink else track.last
        for item in post:
            if isinstance(item, tuple):
                kind, value = item
                if kind == "tremolo":
                    if isinstance(target, NoteEvent):
                        target.tremolo = value
                    continue
                hairpin = hairpin_from_command(value, track.open_hairpin)
                track.open_hairpin = hairpin if hairpin.is_start else None
                mark: Mark = Hairpin(hairpin)
            else:
                mark = item
            if isinstance(target, NoteEvent):
                target.marks.append(mark)
            else:
                logger.debug(f"Mark {mark!r} has no note to attach to, skipping")

    def bar_check(self, scope: _Scope):
        track = scope.track
        if track is None or scope.sink is not None:
            return
        if track.position > 0:
            logger.debug(f"Bar check at {track.position} of measure {track.measure + 1}, starting a new measure")
            track.measure += 1
            track.position = Fraction(0)

    def command(self, node: _Command, scope: _Scope):
        name, args = node.name, node.args
        if name == "name":
            part = self.staff_number(scope.staff_key)[0] if scope.staff_key else 0
            self.part_names.setdefault(part, args[0])
            return

        track = self.current(scope)
        if name == "clef":
            clef = CLEF_NAMES.get(args[0])
            if clef is None:
                logger.warning(f"Unsupported clef '{args[0]}', skipping")
                return
            self.emit(scope, ContextChange(clef=clef))
        elif name == "key":
            key = self.key_signature(*args)
            if key is None:
                return
            if self.at_head(track) and scope.sink is None:
                heading = self.heading(track.measure)
                if heading["key"] is None:
                    heading["key"] = key
            else:
                self.emit(scope, ContextChange(key=key))
        elif name == "time":
            time = args[0]
            if self.at_head(track) and scope.sink is None:
                heading = self.heading(track.measure)
                if heading["time"] is None:
                    heading["time"] = time
                self.times[track.measure] = time
            else:
                self.times.setdefault(track.measure + 1, time)
                self.emit(scope, ContextChange(time=time))
        elif name == "tempo":
            self.emit(scope, ContextChange(tempo=args[0]))
        elif name == "ottava":
            self.emit(scope, ContextChange(ottava=args[0]))
        elif name == "stem":
            track.stem = None if args[0] == StemDirection.AUTO else args[0]
        elif name == "bar":
            self.barline(scope, args[0])
        elif name == "partial":
            self.partials[track.measure] = args[0]
            self.heading(track.measure)["partial"] = True
        elif name == "change":
            part, staff = self.staff_number(args[0])
            if part != track.part:
                logger.warning(f"Staff change to '{args[0]}' crosses parts, skipping")
            elif staff == track.staff:
                track.cross_staff = None
            elif staff != track.cross_staff:
                self.emit(scope, ContextChange(staff=staff))
                track.cross_staff = staff
        else:
            raise TypeError(f"Unknown command node {name}")

    @staticmethod
    def key_signature(pitch: PitchName, mode: str) -> Optional[KeySignature]:
        phonet, accidental, _ = pitch
        if accidental == Accidental.NATURAL:
            accidental = None
        if mode in ("major", "minor"):
            return KeySignature(phonet, accidental, mode)
        sign = {Accidental.SHARP: "#", Accidental.FLAT: "b"}.get(accidental, "")
        key = parse_key_name(f"{phonet.value.upper()}{sign} {mode}")
        if key is None:
            logger.warning(f"Unsupported key \\key {phonet.value} \\{mode}")
        return key

    # --- assembly ---

    def document(self, metadata: Metadata) -> Document:
        used = [t for t in self.tracks.values() if any(t.measures.values())]
        indices = [m for t in used for m, events in t.measures.items() if events] + list(self.headings)
        if not indices:
            raise EmptyInputError("No music found in LilyPond input")
        part_count = max([t.part for t in used] + [0]) + 1
        ordered = sorted(used, key=lambda t: (t.part, t.staff))

        measures = []
        for index in range(max(indices) + 1):
            heading = self.headings.get(index, {})
            parts = [Part(name=self.part_names.get(p)) for p in range(part_count)]
            for track in ordered:
                events = track.measures.get(index, [])
                if any(not (isinstance(e, RestEvent) and e.invisible) for e in events):
                    parts[track.part].voices.append(Voice(staff=track.staff, events=events))
            measures.append(Measure(parts=parts, key=heading.get("key"), time_sig=heading.get("time"),
                                    partial=heading.get("partial", False)))
        return Document(measures=measures, metadata=None if metadata.is_empty() else metadata)


class LilyPondParser:
    @staticmethod
    def parse(text: str) -> Document:
        """
        Decodes LilyPond source into a Document.
        """
        source = strip_scheme(strip_comments(text))
        reader = _LilyReader(tokenize(source))
        music = reader.document()
        interpreter = _Interpreter()
        interpreter.interpret(music, _Scope())
        doc = interpreter.document(reader.metadata)
        logger.debug(f"Decoded {len(doc.measures)} measures from LilyPond source")
        return doc
