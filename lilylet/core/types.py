from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Optional, List, Union


class Phonet(Enum):
    C = "c"
    D = "d"
    E = "e"
    F = "f"
    G = "g"
    A = "a"
    B = "b"

    @property
    def step(self) -> int:
        """Index of the letter in the c..b alphabet."""
        return "cdefgab".index(self.value)

    @classmethod
    def from_step(cls, step: int) -> "Phonet":
        return cls("cdefgab"[step % 7])


class Accidental(Enum):
    NATURAL = "natural"
    SHARP = "sharp"
    FLAT = "flat"
    DOUBLE_SHARP = "doubleSharp"
    DOUBLE_FLAT = "doubleFlat"


class Clef(Enum):
    TREBLE = "treble"
    BASS = "bass"
    ALTO = "alto"


class StemDirection(Enum):
    UP = "up"
    DOWN = "down"
    AUTO = "auto"


class ArticulationType(Enum):
    STACCATO = "staccato"
    STACCATISSIMO = "staccatissimo"
    TENUTO = "tenuto"
    MARCATO = "marcato"
    ACCENT = "accent"
    PORTATO = "portato"


class OrnamentType(Enum):
    TRILL = "trill"
    TURN = "turn"
    MORDENT = "mordent"
    PRALL = "prall"
    FERMATA = "fermata"
    SHORT_FERMATA = "shortFermata"
    ARPEGGIO = "arpeggio"


class DynamicType(Enum):
    PPP = "ppp"
    PP = "pp"
    P = "p"
    MP = "mp"
    MF = "mf"
    F = "f"
    FF = "ff"
    FFF = "fff"
    SFZ = "sfz"
    RFZ = "rfz"


class HairpinType(Enum):
    CRESCENDO_START = "crescendoStart"
    CRESCENDO_END = "crescendoEnd"
    DIMINUENDO_START = "diminuendoStart"
    DIMINUENDO_END = "diminuendoEnd"

    @property
    def is_start(self) -> bool:
        return self in (HairpinType.CRESCENDO_START, HairpinType.DIMINUENDO_START)


class PedalType(Enum):
    SUSTAIN_ON = "sustainOn"
    SUSTAIN_OFF = "sustainOff"
    SOSTENUTO_ON = "sostenutoOn"
    SOSTENUTO_OFF = "sostenutoOff"
    UNA_CORDA_ON = "unaCordaOn"
    UNA_CORDA_OFF = "unaCordaOff"


class NavigationMarkType(Enum):
    CODA = "coda"
    SEGNO = "segno"


class Placement(Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass(frozen=True)
class Ratio:
    """A numerator/denominator pair: time signatures, tuplet ratios."""
    numerator: int
    denominator: int

    def __str__(self) -> str:
        return f"{self.numerator}/{self.denominator}"


@dataclass(frozen=True)
class Pitch:
    phonet: Phonet
    octave: int = 0  # 0 is the octave starting at middle C
    accidental: Optional[Accidental] = None


@dataclass(frozen=True)
class Duration:
    division: int = 4  # 1/division of a whole note, power of two
    dots: int = 0
    # Only ever set on scratch copies while an encoder works out tuplet timing.
    tuplet: Optional[Ratio] = None

    def as_fraction(self) -> Fraction:
        """Length as a fraction of a whole note, tuplet scaling included."""
        value = Fraction(2 ** (self.dots + 1) - 1, 2 ** self.dots * self.division)
        if self.tuplet is not None:
            value *= Fraction(self.tuplet.numerator, self.tuplet.denominator)
        return value

    def same_value(self, other: Optional["Duration"]) -> bool:
        return other is not None and other.division == self.division and other.dots == self.dots


# Marks. Tie/slur/beam only record the boundary they sit on.
@dataclass(frozen=True)
class Tie:
    start: bool = True


@dataclass(frozen=True)
class Slur:
    start: bool = True


@dataclass(frozen=True)
class Beam:
    start: bool = True


@dataclass(frozen=True)
class Articulation:
    type: ArticulationType
    placement: Optional[Placement] = None


@dataclass(frozen=True)
class Ornament:
    type: OrnamentType


@dataclass(frozen=True)
class Dynamic:
    type: DynamicType


@dataclass(frozen=True)
class Hairpin:
    type: HairpinType


@dataclass(frozen=True)
class Pedal:
    type: PedalType


@dataclass(frozen=True)
class Fingering:
    finger: int  # 1-5


@dataclass(frozen=True)
class Navigation:
    type: NavigationMarkType


Mark = Union[Tie, Slur, Beam, Articulation, Ornament, Dynamic, Hairpin, Pedal, Fingering, Navigation]


@dataclass(frozen=True)
class KeySignature:
    pitch: Phonet
    accidental: Optional[Accidental] = None
    mode: str = "major"  # "major" or "minor"


@dataclass(frozen=True)
class Tempo:
    text: Optional[str] = None
    beat: Optional[Duration] = None
    bpm: Optional[int] = None


@dataclass
class NoteEvent:
    pitches: List[Pitch]
    duration: Duration = field(default_factory=Duration)
    marks: List[Mark] = field(default_factory=list)
    grace: bool = False
    tremolo: Optional[int] = None
    staff: Optional[int] = None
    stem_direction: Optional[StemDirection] = None


@dataclass
class RestEvent:
    duration: Duration = field(default_factory=Duration)
    invisible: bool = False
    full_measure: bool = False
    pitch: Optional[Pitch] = None


@dataclass
class ContextChange:
    key: Optional[KeySignature] = None
    time: Optional[Ratio] = None
    clef: Optional[Clef] = None
    ottava: Optional[int] = None
    stem_direction: Optional[StemDirection] = None
    tempo: Optional[Tempo] = None
    staff: Optional[int] = None

    def is_empty(self) -> bool:
        return (self.key is None and self.time is None and self.clef is None and self.ottava is None
                and self.stem_direction is None and self.tempo is None and self.staff is None)


@dataclass
class TupletEvent:
    ratio: Ratio
    # Notes and rests only; a context change cannot sit inside a tuplet.
    events: List[Union[NoteEvent, RestEvent]] = field(default_factory=list)


@dataclass
class TremoloEvent:
    pitch_a: List[Pitch]
    pitch_b: List[Pitch]
    count: int
    division: int


@dataclass
class BarlineEvent:
    style: str = "|"


Event = Union[NoteEvent, RestEvent, ContextChange, TupletEvent, TremoloEvent, BarlineEvent]


@dataclass
class Voice:
    staff: int = 1
    events: List[Event] = field(default_factory=list)


@dataclass
class Part:
    voices: List[Voice] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class Measure:
    parts: List[Part] = field(default_factory=list)
    key: Optional[KeySignature] = None
    time_sig: Optional[Ratio] = None
    partial: bool = False


@dataclass
class Metadata:
    title: Optional[str] = None
    subtitle: Optional[str] = None
    composer: Optional[str] = None
    arranger: Optional[str] = None
    lyricist: Optional[str] = None
    opus: Optional[str] = None
    instrument: Optional[str] = None
    genre: Optional[str] = None
    auto_beam: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(vars(self).values())


@dataclass
class Document:
    """A universal, format-agnostic representation of a score."""
    measures: List[Measure] = field(default_factory=list)
    metadata: Optional[Metadata] = None
