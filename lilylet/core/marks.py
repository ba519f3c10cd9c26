"""
Symbol tables translating between each notation's tokens and the canonical marks.

Tables are keyed by canonical enum on the encoding side; decoding tables are either
the inverse of those or written out where a format accepts extra aliases.
"""
from typing import Optional
import logging

from .types import (
    Accidental, ArticulationType, OrnamentType, DynamicType, HairpinType, PedalType,
    NavigationMarkType, StemDirection, Clef, Mark, Articulation, Ornament, Dynamic,
    Hairpin, Pedal, Navigation, Fingering,
)

logger = logging.getLogger(__name__)


def _invert(table: dict) -> dict:
    return {value: key for key, value in table.items()}


# --- native notation and LilyPond share most command names ---

ACCIDENTAL_SUFFIX = {
    Accidental.NATURAL: "!",
    Accidental.SHARP: "s",
    Accidental.FLAT: "f",
    Accidental.DOUBLE_SHARP: "ss",
    Accidental.DOUBLE_FLAT: "ff",
}
SUFFIX_ACCIDENTAL = _invert(ACCIDENTAL_SUFFIX)

# Character following the direction prefix (-, ^, _) of a native articulation.
ARTICULATION_SYMBOL = {
    ArticulationType.STACCATO: ".",
    ArticulationType.STACCATISSIMO: "!",
    ArticulationType.TENUTO: "_",
    ArticulationType.MARCATO: "^",
    ArticulationType.ACCENT: ">",
    ArticulationType.PORTATO: "_.",
}
SYMBOL_ARTICULATION = _invert(ARTICULATION_SYMBOL)

# LilyPond writes tenuto as `--` and portato as `-_`.
LILYPOND_ARTICULATION_SYMBOL = dict(ARTICULATION_SYMBOL)
LILYPOND_ARTICULATION_SYMBOL[ArticulationType.TENUTO] = "-"
LILYPOND_ARTICULATION_SYMBOL[ArticulationType.PORTATO] = "_"
LILYPOND_SYMBOL_ARTICULATION = _invert(LILYPOND_ARTICULATION_SYMBOL)
LILYPOND_ARTICULATION_NAMES = {
    "staccato": ArticulationType.STACCATO,
    "staccatissimo": ArticulationType.STACCATISSIMO,
    "tenuto": ArticulationType.TENUTO,
    "marcato": ArticulationType.MARCATO,
    "accent": ArticulationType.ACCENT,
    "portato": ArticulationType.PORTATO,
}

ORNAMENT_COMMAND = {
    OrnamentType.TRILL: "trill",
    OrnamentType.TURN: "turn",
    OrnamentType.MORDENT: "mordent",
    OrnamentType.PRALL: "prall",
    OrnamentType.FERMATA: "fermata",
    OrnamentType.SHORT_FERMATA: "shortfermata",
    OrnamentType.ARPEGGIO: "arpeggio",
}
COMMAND_ORNAMENT = _invert(ORNAMENT_COMMAND)

DYNAMIC_COMMAND = {dynamic: dynamic.value for dynamic in DynamicType}
COMMAND_DYNAMIC = _invert(DYNAMIC_COMMAND)

HAIRPIN_COMMAND = {
    HairpinType.CRESCENDO_START: "<",
    HairpinType.CRESCENDO_END: "!",
    HairpinType.DIMINUENDO_START: ">",
    HairpinType.DIMINUENDO_END: "!",
}

PEDAL_COMMAND = {
    PedalType.SUSTAIN_ON: "sustainOn",
    PedalType.SUSTAIN_OFF: "sustainOff",
    PedalType.SOSTENUTO_ON: "sostenutoOn",
    PedalType.SOSTENUTO_OFF: "sostenutoOff",
    PedalType.UNA_CORDA_ON: "unaCorda",
    PedalType.UNA_CORDA_OFF: "treCorde",
}
COMMAND_PEDAL = _invert(PEDAL_COMMAND)

NAVIGATION_COMMAND = {NavigationMarkType.CODA: "coda", NavigationMarkType.SEGNO: "segno"}
COMMAND_NAVIGATION = _invert(NAVIGATION_COMMAND)

STEM_COMMAND = {
    StemDirection.UP: "stemUp",
    StemDirection.DOWN: "stemDown",
    StemDirection.AUTO: "stemNeutral",
}
COMMAND_STEM = _invert(STEM_COMMAND)

CLEF_NAMES = {
    "treble": Clef.TREBLE, "G": Clef.TREBLE, "violin": Clef.TREBLE,
    "bass": Clef.BASS, "F": Clef.BASS,
    "alto": Clef.ALTO, "C": Clef.ALTO,
}


def hairpin_from_command(symbol: str, open_hairpin: Optional[HairpinType]) -> HairpinType:
    """`\\<`, `\\>` open a hairpin; `\\!` closes whichever one is open (crescendo by default)."""
    if symbol == "<":
        return HairpinType.CRESCENDO_START
    if symbol == ">":
        return HairpinType.DIMINUENDO_START
    if open_hairpin == HairpinType.DIMINUENDO_START:
        return HairpinType.DIMINUENDO_END
    return HairpinType.CRESCENDO_END


def command_mark(name: str) -> Optional[Mark]:
    """Mark for a backslash command shared by the native notation and LilyPond."""
    if name in COMMAND_ORNAMENT:
        return Ornament(COMMAND_ORNAMENT[name])
    if name in COMMAND_DYNAMIC:
        return Dynamic(COMMAND_DYNAMIC[name])
    if name in COMMAND_PEDAL:
        return Pedal(COMMAND_PEDAL[name])
    if name in COMMAND_NAVIGATION:
        return Navigation(COMMAND_NAVIGATION[name])
    if name in LILYPOND_ARTICULATION_NAMES:
        return Articulation(LILYPOND_ARTICULATION_NAMES[name])
    return None


# --- ABC ---

ABC_DECORATIONS = {
    "accent": Articulation(ArticulationType.ACCENT),
    "emphasis": Articulation(ArticulationType.ACCENT),
    "L": Articulation(ArticulationType.ACCENT),
    ">": Articulation(ArticulationType.ACCENT),
    "staccato": Articulation(ArticulationType.STACCATO),
    "wedge": Articulation(ArticulationType.STACCATISSIMO),
    "tenuto": Articulation(ArticulationType.TENUTO),
    "marcato": Articulation(ArticulationType.MARCATO),
    "trill": Ornament(OrnamentType.TRILL),
    "T": Ornament(OrnamentType.TRILL),
    "mordent": Ornament(OrnamentType.MORDENT),
    "lowermordent": Ornament(OrnamentType.MORDENT),
    "M": Ornament(OrnamentType.MORDENT),
    "prall": Ornament(OrnamentType.PRALL),
    "pralltriller": Ornament(OrnamentType.PRALL),
    "uppermordent": Ornament(OrnamentType.PRALL),
    "P": Ornament(OrnamentType.PRALL),
    "turn": Ornament(OrnamentType.TURN),
    "fermata": Ornament(OrnamentType.FERMATA),
    "H": Ornament(OrnamentType.FERMATA),
    "shortfermata": Ornament(OrnamentType.SHORT_FERMATA),
    "roll": Ornament(OrnamentType.ARPEGGIO),
    "R": Ornament(OrnamentType.ARPEGGIO),
    "arpeggio": Ornament(OrnamentType.ARPEGGIO),
    "<(": Hairpin(HairpinType.CRESCENDO_START),
    "<)": Hairpin(HairpinType.CRESCENDO_END),
    ">(": Hairpin(HairpinType.DIMINUENDO_START),
    ">)": Hairpin(HairpinType.DIMINUENDO_END),
    "crescendo(": Hairpin(HairpinType.CRESCENDO_START),
    "crescendo)": Hairpin(HairpinType.CRESCENDO_END),
    "diminuendo(": Hairpin(HairpinType.DIMINUENDO_START),
    "diminuendo)": Hairpin(HairpinType.DIMINUENDO_END),
    "<": Hairpin(HairpinType.CRESCENDO_START),
    "ped": Pedal(PedalType.SUSTAIN_ON),
    "ped-up": Pedal(PedalType.SUSTAIN_OFF),
    "coda": Navigation(NavigationMarkType.CODA),
    "segno": Navigation(NavigationMarkType.SEGNO),
}

ABC_DYNAMICS = {
    "ppp": DynamicType.PPP, "pp": DynamicType.PP, "p": DynamicType.P,
    "mp": DynamicType.MP, "mf": DynamicType.MF, "f": DynamicType.F,
    "ff": DynamicType.FF, "fff": DynamicType.FFF,
    "sfz": DynamicType.SFZ, "sf": DynamicType.SFZ, "rfz": DynamicType.RFZ,
}

# Single-character decoration shortcuts usable before a note.
ABC_SHORTCUTS = {
    ".": Articulation(ArticulationType.STACCATO),
    "~": Ornament(OrnamentType.TURN),
    "T": Ornament(OrnamentType.TRILL),
    "M": Ornament(OrnamentType.MORDENT),
    "P": Ornament(OrnamentType.PRALL),
    "H": Ornament(OrnamentType.FERMATA),
    "L": Articulation(ArticulationType.ACCENT),
    "R": Ornament(OrnamentType.ARPEGGIO),
}


def abc_decoration(name: str) -> Optional[Mark]:
    """Mark for the body of an ABC `!...!` decoration, or None when unknown."""
    if name == ">":
        logger.debug("ABC decoration !>! read as an accent, not a diminuendo")
    if name in ABC_DECORATIONS:
        return ABC_DECORATIONS[name]
    if name in ABC_DYNAMICS:
        return Dynamic(ABC_DYNAMICS[name])
    if name.isdigit() and 1 <= int(name) <= 5:
        return Fingering(int(name))
    return None


# --- MusicXML ---

ARTICULATION_TO_XML = {
    ArticulationType.STACCATO: "staccato",
    ArticulationType.STACCATISSIMO: "staccatissimo",
    ArticulationType.TENUTO: "tenuto",
    ArticulationType.ACCENT: "accent",
    ArticulationType.MARCATO: "strong-accent",
    ArticulationType.PORTATO: "detached-legato",
}
XML_TO_ARTICULATION = _invert(ARTICULATION_TO_XML)
XML_TO_ARTICULATION["detachedLegato"] = ArticulationType.PORTATO

ORNAMENT_TO_XML = {
    OrnamentType.TRILL: "trill-mark",
    OrnamentType.TURN: "turn",
    OrnamentType.MORDENT: "mordent",
    OrnamentType.PRALL: "inverted-mordent",
}
XML_TO_ORNAMENT = _invert(ORNAMENT_TO_XML)
XML_TO_ORNAMENT.update({"trill": OrnamentType.TRILL, "inverted-turn": OrnamentType.TURN})

XML_TO_DYNAMIC = {dynamic.value: dynamic for dynamic in DynamicType}
XML_TO_DYNAMIC.update({
    "sf": DynamicType.SFZ, "fz": DynamicType.SFZ, "sfp": DynamicType.SFZ, "sfpp": DynamicType.SFZ,
    "rf": DynamicType.RFZ, "fp": DynamicType.F,
})

XML_PEDAL = {"start": PedalType.SUSTAIN_ON, "stop": PedalType.SUSTAIN_OFF, "change": PedalType.SUSTAIN_OFF}

BARLINE_TO_XML = {
    "|": ("regular", None),
    "||": ("light-light", None),
    "|.": ("light-heavy", None),
    ".|:": ("heavy-light", "forward"),
    ":|.": ("light-heavy", "backward"),
    ":..:": ("light-heavy", "backward"),
}

XML_BAR_STYLE = {
    "regular": "|",
    "light-light": "||",
    "light-heavy": "|.",
    "heavy-light": ".|",
    "heavy-heavy": "||",
}


# --- MEI ---

MEI_ACCIDENTAL = {
    Accidental.NATURAL: "n",
    Accidental.SHARP: "s",
    Accidental.FLAT: "f",
    Accidental.DOUBLE_SHARP: "x",
    Accidental.DOUBLE_FLAT: "ff",
}

MEI_ARTICULATION = {
    ArticulationType.STACCATO: "stacc",
    ArticulationType.STACCATISSIMO: "stacciss",
    ArticulationType.TENUTO: "ten",
    ArticulationType.MARCATO: "marc",
    ArticulationType.ACCENT: "acc",
    ArticulationType.PORTATO: "ten-stacc",
}
