from .formats.lyl.parser import LylParser
from .formats.lyl.generator import LylGenerator
from .formats.abc.parser import AbcParser
from .formats.musicxml.parser import MusicXmlParser
from .formats.musicxml.generator import MusicXmlGenerator
from .formats.lilypond.parser import LilyPondParser
from .formats.lilypond.generator import LilyPondGenerator
from .formats.mei.generator import MeiGenerator
from .core.types import Document
from .core.config import EncoderOptions
from .utils.io import read_text_file, save_text_file
from .arguments import setup_parser
from .utils.logger import setup_logger
from typing import Dict, List, Optional, Union
from pathlib import Path
import os
import logging
from sys import exit

logger = logging.getLogger(__name__)

SUFFIX_FORMATS = {
    '.lyl': 'lyl',
    '.abc': 'abc',
    '.xml': 'musicxml',
    '.musicxml': 'musicxml',
    '.ly': 'lilypond',
    '.mei': 'mei',
}


def format_for_path(path: str) -> str:
    suffix = Path(path).suffix.lower()
    if suffix not in SUFFIX_FORMATS:
        raise ValueError(f"Cannot infer a format from '{path}'; use --from/--to")
    return SUFFIX_FORMATS[suffix]


def numbered_path(path: str, number: int) -> str:
    """`song.ly` -> `song-2.ly`"""
    target = Path(path)
    return str(target.with_name(f"{target.stem}-{number}{target.suffix}"))


class MusicConverter:
    def convert(self, data: str, from_format: str, to_format: str,
                options: Union[EncoderOptions, Dict, None] = None) -> str:
        """
        Converts notation text from one format to another through the Document model.
        """
        doc = self._parse(data, from_format)
        return self._generate(doc, to_format, options)

    def _parse(self, data: str, format: str) -> Document:
        if format == 'lyl':
            return LylParser.parse(data)
        elif format == 'abc':
            return AbcParser.parse(data)
        elif format == 'musicxml':
            return MusicXmlParser.parse(data)
        elif format == 'lilypond':
            return LilyPondParser.parse(data)
        else:
            raise ValueError(f"Unsupported input format: {format}")

    def _parse_all(self, data: str, format: str) -> List[Document]:
        if format == 'abc':
            return AbcParser.parse_all(data)
        return [self._parse(data, format)]

    def _generate(self, doc: Document, format: str,
                  options: Union[EncoderOptions, Dict, None] = None) -> str:
        if format == 'lyl':
            return LylGenerator.generate(doc)
        elif format == 'musicxml':
            return MusicXmlGenerator.generate(doc, options)
        elif format == 'lilypond':
            return LilyPondGenerator.generate(doc, options)
        elif format == 'mei':
            return MeiGenerator.generate(doc, options)
        else:
            raise ValueError(f"Unsupported output format: {format}")


def decode_file(path: str, format: Optional[str] = None) -> Document:
    """Reads and decodes a file, picking the decoder from its suffix unless `format` is given."""
    return MusicConverter()._parse(read_text_file(path), format or format_for_path(path))


def encode_file(doc: Document, path: str, format: Optional[str] = None,
                options: Union[EncoderOptions, Dict, None] = None):
    save_text_file(MusicConverter()._generate(doc, format or format_for_path(path), options), path)


def main(argv: Optional[List[str]] = None):
    parser = setup_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logger(log_level)

    options = EncoderOptions(
        paper_width=args.paper_width,
        paper_height=args.paper_height,
        font_size=args.font_size,
        with_midi=args.with_midi,
        auto_beaming=args.auto_beaming,
    )

    try:
        from_format = args.from_format or format_for_path(args.input)
        if args.all_tunes and from_format != 'abc':
            parser.error("--all-tunes can only be used with ABC input")
        converter = MusicConverter()

        logger.info(f"--- Reading '{args.input}' as {from_format} ---")
        content = read_text_file(args.input)
        if args.all_tunes:
            docs = converter._parse_all(content, from_format)
        else:
            docs = [converter._parse(content, from_format)]

        measure_count = sum(len(doc.measures) for doc in docs)
        logger.info(f"Decoded {len(docs)} document(s) with {measure_count} measures.")

        for output in args.output:
            to_format = args.to_format or format_for_path(output)
            for number, doc in enumerate(docs, start=1):
                path = numbered_path(output, number) if args.all_tunes else output
                if os.path.exists(path) and not args.yes:
                    logger.error(f"Output file '{path}' already exists. Use -y to overwrite.")
                    exit(1)
                logger.info(f"--- Writing {to_format} to '{path}' ---")
                save_text_file(converter._generate(doc, to_format, options), path)

    except (ValueError, OSError) as e:
        logger.error(f"Conversion failed: {e}")
        if args.debug:
            logger.exception("Details:")
        exit(1)


if __name__ == "__main__":
    main()
