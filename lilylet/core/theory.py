import re
import logging
from typing import Optional

from .types import Phonet, Accidental, KeySignature

logger = logging.getLogger(__name__)

# Position of each major key on the circle of fifths, naturals only.
MAJOR_FIFTHS = {
    Phonet.C: 0, Phonet.D: 2, Phonet.E: 4, Phonet.F: -1,
    Phonet.G: 1, Phonet.A: 3, Phonet.B: 5,
}

FIFTHS_TO_MAJOR = {
    -7: (Phonet.C, Accidental.FLAT), -6: (Phonet.G, Accidental.FLAT),
    -5: (Phonet.D, Accidental.FLAT), -4: (Phonet.A, Accidental.FLAT),
    -3: (Phonet.E, Accidental.FLAT), -2: (Phonet.B, Accidental.FLAT),
    -1: (Phonet.F, None), 0: (Phonet.C, None), 1: (Phonet.G, None),
    2: (Phonet.D, None), 3: (Phonet.A, None), 4: (Phonet.E, None),
    5: (Phonet.B, None), 6: (Phonet.F, Accidental.SHARP), 7: (Phonet.C, Accidental.SHARP),
}

FIFTHS_TO_MINOR = {
    -7: (Phonet.A, Accidental.FLAT), -6: (Phonet.E, Accidental.FLAT),
    -5: (Phonet.B, Accidental.FLAT), -4: (Phonet.F, None), -3: (Phonet.C, None),
    -2: (Phonet.G, None), -1: (Phonet.D, None), 0: (Phonet.A, None),
    1: (Phonet.E, None), 2: (Phonet.B, None), 3: (Phonet.F, Accidental.SHARP),
    4: (Phonet.C, Accidental.SHARP), 5: (Phonet.G, Accidental.SHARP),
    6: (Phonet.D, Accidental.SHARP), 7: (Phonet.A, Accidental.SHARP),
}

ALTERS = {
    Accidental.DOUBLE_FLAT: -2,
    Accidental.FLAT: -1,
    Accidental.NATURAL: 0,
    Accidental.SHARP: 1,
    Accidental.DOUBLE_SHARP: 2,
}
ALTER_TO_ACCIDENTAL = {alter: accidental for accidental, alter in ALTERS.items()}


def key_to_fifths(key: Optional[KeySignature]) -> int:
    """Number of sharps (positive) or flats (negative) in a key signature."""
    if key is None:
        return 0
    fifths = MAJOR_FIFTHS[key.pitch]
    if key.accidental == Accidental.SHARP:
        fifths += 7
    elif key.accidental == Accidental.FLAT:
        fifths -= 7
    if key.mode == "minor":
        fifths -= 3
    return fifths


def fifths_to_key(fifths: int, mode: Optional[str] = None) -> Optional[KeySignature]:
    minor = (mode or "").lower() == "minor"
    table = FIFTHS_TO_MINOR if minor else FIFTHS_TO_MAJOR
    if fifths not in table:
        logger.warning(f"Unknown key signature: fifths={fifths}, mode={mode}")
        return None
    phonet, accidental = table[fifths]
    return KeySignature(phonet, accidental, "minor" if minor else "major")


def alter_of(accidental: Optional[Accidental]) -> int:
    return ALTERS[accidental] if accidental is not None else 0


def accidental_for_alter(alter: int, explicit_natural: bool = False) -> Optional[Accidental]:
    if alter == 0 and not explicit_natural:
        return None
    return ALTER_TO_ACCIDENTAL.get(alter)


def parse_key_name(name: str) -> Optional[KeySignature]:
    """
    Converts a key name such as "G", "Bb", "F#m", "Ebmin" or "A minor" to a KeySignature.

    Modes other than major and minor are folded onto the major/minor key with the same
    signature. Returns None for "none" or anything unrecognisable.
    """
    match = re.match(r'^\s*([A-Ga-g])([#b]?)\s*([A-Za-z]*)', name)
    if not match:
        return None
    letter, accidental, mode = match.groups()
    phonet = Phonet(letter.lower())
    acc = {"#": Accidental.SHARP, "b": Accidental.FLAT}.get(accidental)
    mode = mode.lower()[:3]

    if mode in ("", "maj", "ion"):
        return KeySignature(phonet, acc, "major")
    if mode in ("m", "min", "aeo"):
        return KeySignature(phonet, acc, "minor")

    # Church modes: shift onto the relative major.
    offsets = {"dor": -2, "phr": -4, "lyd": 1, "mix": -1, "loc": -5}
    if mode not in offsets:
        logger.debug(f"Unknown key mode '{mode}' in '{name}', assuming major")
        return KeySignature(phonet, acc, "major")
    fifths = MAJOR_FIFTHS[phonet] + 7 * {Accidental.SHARP: 1, Accidental.FLAT: -1}.get(acc, 0) + offsets[mode]
    return fifths_to_key(fifths)
