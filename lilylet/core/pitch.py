from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .types import Phonet, Pitch


@dataclass(frozen=True)
class PitchEnv:
    """Last letter and octave a relative-pitch reader has seen in a voice."""
    step: int = 0
    octave: int = 0

    @classmethod
    def of(cls, pitch: Pitch) -> "PitchEnv":
        return cls(pitch.phonet.step, pitch.octave)


ORIGIN = PitchEnv()


def octave_increment(interval: int) -> int:
    """Octave shift a relative reader assumes for a letter interval with no markers."""
    if interval == 0:
        return 0
    sign = 1 if interval > 0 else -1
    return (abs(interval) // 4) * -sign


def decode_relative(env: PitchEnv, phonet: Phonet, markers: int) -> Tuple[int, PitchEnv]:
    """Absolute octave for a letter written with `markers` net raise ticks."""
    interval = phonet.step - env.step
    octave = env.octave + octave_increment(interval) + markers
    return octave, PitchEnv(phonet.step, octave)


def encode_relative(env: PitchEnv, pitch: Pitch) -> Tuple[int, PitchEnv]:
    """Net raise ticks needed to write `pitch` after `env`. Exact inverse of decode_relative."""
    interval = pitch.phonet.step - env.step
    base_octave = env.octave + octave_increment(interval)
    return pitch.octave - base_octave, PitchEnv(pitch.phonet.step, pitch.octave)


def decode_chord(env: PitchEnv, notes: Sequence[Tuple[Phonet, int]]) -> Tuple[List[int], PitchEnv]:
    """
    Resolves the octaves of a chord written in relative mode.

    The first member is relative to the voice; each later member is relative to the
    member before it. The voice continues from the first member afterwards.
    """
    octaves = []
    chord_env = env
    voice_env = env
    for index, (phonet, markers) in enumerate(notes):
        octave, chord_env = decode_relative(chord_env, phonet, markers)
        octaves.append(octave)
        if index == 0:
            voice_env = chord_env
    return octaves, voice_env


def encode_chord(env: PitchEnv, pitches: Sequence[Pitch]) -> Tuple[List[int], PitchEnv]:
    markers = []
    chord_env = env
    voice_env = env
    for index, pitch in enumerate(pitches):
        count, chord_env = encode_relative(chord_env, pitch)
        markers.append(count)
        if index == 0:
            voice_env = chord_env
    return markers, voice_env


def marker_text(count: int, up: str = "'", down: str = ",") -> str:
    return up * count if count > 0 else down * -count


def marker_count(text: str, up: str = "'", down: str = ",") -> int:
    return text.count(up) - text.count(down)
