import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .types import Ratio

logger = logging.getLogger(__name__)


@dataclass
class EncoderOptions:
    """Holds the rendering options understood by the encoders."""
    # Page size in millimetres, A4 by default
    paper_width: float = 210
    paper_height: float = 297

    # LilyPond global staff size
    font_size: int = 20

    # Add a \midi block to LilyPond scores
    with_midi: bool = False

    # None lets the document's auto-beam header decide
    auto_beaming: Optional[bool] = None

    @classmethod
    def from_dict(cls, options: Optional[Mapping[str, Any]]) -> "EncoderOptions":
        """Builds options from the loose key style, ignoring keys it does not know."""
        result = cls()
        for key, value in (options or {}).items():
            if key == "paper" and isinstance(value, Mapping):
                result.paper_width = value.get("width", result.paper_width)
                result.paper_height = value.get("height", result.paper_height)
            elif key in ("fontSize", "font_size"):
                result.font_size = value
            elif key in ("withMIDI", "with_midi"):
                result.with_midi = bool(value)
            elif key in ("autoBeaming", "auto_beaming"):
                result.auto_beaming = None if value is None else bool(value)
            elif key in ("paper_width", "paper_height"):
                setattr(result, key, value)
            else:
                logger.debug(f"Ignoring unknown encoder option '{key}'")
        return result


@dataclass
class DecoderDefaults:
    """Document-wide defaults a decoder starts from before reading any header."""
    # ABC L: field when absent
    unit_length: Ratio = field(default_factory=lambda: Ratio(1, 8))
