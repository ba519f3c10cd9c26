from argparse import ArgumentParser, BooleanOptionalAction

INPUT_FORMATS = ['lyl', 'abc', 'musicxml', 'lilypond']
OUTPUT_FORMATS = ['lyl', 'musicxml', 'lilypond', 'mei']


def setup_parser() -> ArgumentParser:
    """Configures and returns the argument parser for the command-line interface."""
    parser = ArgumentParser(
        description="Convert written music between Lilylet, ABC, MusicXML, LilyPond and MEI."
    )

    parser.add_argument('-i', '--input', required=True,
                        help='Path to the input file (.lyl, .abc, .xml, .musicxml, .ly).')
    parser.add_argument(
        '-o', '--output',
        action='append',
        required=True,
        help='Path to an output file (.lyl, .xml, .musicxml, .ly, .mei). Repeat to write several formats.'
    )

    format_group = parser.add_argument_group("Format Options")
    format_group.add_argument(
        '--from',
        dest='from_format',
        choices=INPUT_FORMATS,
        default=None,
        help="Input format. Inferred from the input file suffix when omitted."
    )
    format_group.add_argument(
        '--to',
        dest='to_format',
        choices=OUTPUT_FORMATS,
        default=None,
        help="Output format for every -o target. Inferred from each output suffix when omitted."
    )
    format_group.add_argument(
        '--all-tunes',
        action='store_true',
        help="Convert every tune of an ABC file, writing name-1.ext, name-2.ext, ..."
    )

    lilypond_group = parser.add_argument_group("LilyPond Options")
    lilypond_group.add_argument(
        '--paper-width',
        type=float,
        default=210,
        help="Paper width in millimetres (default: 210)."
    )
    lilypond_group.add_argument(
        '--paper-height',
        type=float,
        default=297,
        help="Paper height in millimetres (default: 297)."
    )
    lilypond_group.add_argument(
        '--font-size',
        type=int,
        default=20,
        help="Global staff size (default: 20)."
    )
    lilypond_group.add_argument(
        '--with-midi',
        action='store_true',
        help="Add a \\midi block to the score."
    )
    lilypond_group.add_argument(
        '--auto-beaming',
        action=BooleanOptionalAction,
        default=None,
        help="Force LilyPond auto-beaming on or off. By default the document's auto-beam header decides."
    )

    parser.add_argument(
        '-y', '--yes',
        action='store_true',
        help="Automatically overwrite output files that already exist."
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help="Enable detailed debug logging messages."
    )

    return parser
