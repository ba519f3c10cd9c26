"""
Lilylet: converts written music between a compact relative-pitch notation, ABC,
MusicXML, LilyPond and MEI through one Document model.
"""
from typing import Dict, List, Optional, Union

from .core.types import Document
from .core.config import EncoderOptions, DecoderDefaults
from .core.errors import ParseError, EmptyInputError, EncodeError
from .formats.lyl.parser import LylParser
from .formats.lyl.generator import LylGenerator
from .formats.abc.parser import AbcParser
from .formats.musicxml.parser import MusicXmlParser
from .formats.musicxml.generator import MusicXmlGenerator
from .formats.lilypond.parser import LilyPondParser
from .formats.lilypond.generator import LilyPondGenerator
from .formats.mei.generator import MeiGenerator
from .converter import MusicConverter, decode_file, encode_file

__version__ = "0.1.0"

Options = Union[EncoderOptions, Dict, None]


def parse_native(text: str) -> Document:
    return LylParser.parse(text)


def serialize_native(doc: Document) -> str:
    return LylGenerator.generate(doc)


def decode_abc(text: str, defaults: Optional[DecoderDefaults] = None) -> Document:
    return AbcParser.parse(text, defaults)


def decode_abc_all(text: str, defaults: Optional[DecoderDefaults] = None) -> List[Document]:
    return AbcParser.parse_all(text, defaults)


def decode_musicxml(text: str) -> Document:
    return MusicXmlParser.parse(text)


def decode_lilypond(text: str) -> Document:
    return LilyPondParser.parse(text)


def encode_musicxml(doc: Document, options: Options = None) -> str:
    return MusicXmlGenerator.generate(doc, options)


def encode_lilypond(doc: Document, options: Options = None) -> str:
    return LilyPondGenerator.generate(doc, options)


def encode_mei(doc: Document, options: Options = None) -> str:
    return MeiGenerator.generate(doc, options)


__all__ = [
    "Document", "EncoderOptions", "DecoderDefaults", "ParseError", "EmptyInputError", "EncodeError",
    "MusicConverter", "parse_native", "serialize_native", "decode_abc", "decode_abc_all",
    "decode_musicxml", "decode_lilypond", "encode_musicxml", "encode_lilypond", "encode_mei",
    "decode_file", "encode_file",
]
