import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .errors import ParseError
from .types import Document, NoteEvent, ContextChange

logger = logging.getLogger(__name__)

BRACKETS = {"{": ("}", "curly"), "(": (")", "arc"), "[": ("]", "square")}

# Separator between staff segments inside a group, as in `{(1 2) | (3 4)}`.
SEGMENT_BREAK = "|"


@dataclass
class StaffGroup:
    """One bracketed group of a score layout declaration."""
    items: List[Union["StaffGroup", str]] = field(default_factory=list)
    bound: Optional[str] = None  # "curly", "arc", "square" or None for an unbracketed run

    def leaves(self) -> List[str]:
        found = []
        for item in self.items:
            if isinstance(item, StaffGroup):
                found.extend(item.leaves())
            elif item != SEGMENT_BREAK:
                found.append(item)
        return found


Assignment = Tuple[int, int]  # (part index, staff number within the part)


def parse_layout(text: str) -> List[StaffGroup]:
    """
    Parses the body of a `%%score` / `%%staves` directive into top-level groups.

    Consecutive bare voice ids at the top level are collected into one unbracketed group.
    """
    tokens = re.findall(r"[{}()\[\]|]|[^\s{}()\[\]|]+", text)
    pos = 0

    def read_group(closer: Optional[str], bound: Optional[str]) -> StaffGroup:
        nonlocal pos
        group = StaffGroup(bound=bound)
        while pos < len(tokens):
            token = tokens[pos]
            pos += 1
            if token == closer:
                return group
            if token in BRACKETS:
                inner_closer, inner_bound = BRACKETS[token]
                group.items.append(read_group(inner_closer, inner_bound))
            elif token in ("}", ")", "]"):
                raise ParseError(f"Unbalanced '{token}' in score layout '{text}'")
            else:
                group.items.append(token)
        if closer is not None:
            raise ParseError(f"Missing '{closer}' in score layout '{text}'")
        return group

    top = read_group(None, None)
    groups: List[StaffGroup] = []
    loose = StaffGroup()
    for item in top.items:
        if isinstance(item, StaffGroup):
            if loose.items:
                groups.append(loose)
                loose = StaffGroup()
            groups.append(item)
        elif item != SEGMENT_BREAK:
            loose.items.append(item)
    if loose.items:
        groups.append(loose)
    return groups


def _segments(group: StaffGroup) -> List[List[Union[StaffGroup, str]]]:
    segments: List[List[Union[StaffGroup, str]]] = [[]]
    for item in group.items:
        if item == SEGMENT_BREAK:
            segments.append([])
        else:
            segments[-1].append(item)
    return [s for s in segments if s]


def _assign_staves(items: List[Union[StaffGroup, str]], part: int, mapping: Dict[str, Assignment]):
    """Each item of a multi-staff group is its own staff, numbered from 1."""
    for staff, item in enumerate(items, start=1):
        leaves = item.leaves() if isinstance(item, StaffGroup) else [item]
        for leaf in leaves:
            mapping[leaf] = (part, staff)


def resolve_layout(groups: Optional[List[StaffGroup]]) -> Dict[str, Assignment]:
    """
    Maps every voice id of a score layout to a (part index, staff number) pair.

    A curly group is one instrument: each item in it is a staff, and `|` starts a new
    instrument. Round and unbracketed groups put all their voices on one staff of one
    part. Square groups make each item its own part, honouring a nested curly group.
    An empty mapping means no layout was declared and every voice belongs to (0, 1).
    """
    mapping: Dict[str, Assignment] = {}
    part = 0
    for group in groups or []:
        if group.bound == "curly":
            for segment in _segments(group):
                _assign_staves(segment, part, mapping)
                part += 1
        elif group.bound in ("arc", None):
            for leaf in group.leaves():
                mapping[leaf] = (part, 1)
            part += 1
        else:
            for item in group.items:
                if item == SEGMENT_BREAK:
                    continue
                if isinstance(item, StaffGroup) and item.bound == "curly":
                    for segment in _segments(item):
                        _assign_staves(segment, part, mapping)
                        part += 1
                    continue
                leaves = item.leaves() if isinstance(item, StaffGroup) else [item]
                for leaf in leaves:
                    mapping[leaf] = (part, 1)
                part += 1
    logger.debug(f"Resolved score layout: {mapping}")
    return mapping


def assignment_for(mapping: Dict[str, Assignment], voice_id: str) -> Assignment:
    return mapping.get(voice_id, (0, 1))


def staff_counts(doc: Document) -> List[int]:
    """Number of staves each part uses anywhere in the document, cross-staff notes included."""
    counts: List[int] = []
    for measure in doc.measures:
        for index, part in enumerate(measure.parts):
            while len(counts) <= index:
                counts.append(1)
            for voice in part.voices:
                counts[index] = max(counts[index], voice.staff)
                for event in voice.events:
                    if isinstance(event, (NoteEvent, ContextChange)) and event.staff:
                        counts[index] = max(counts[index], event.staff)
    return counts


def staff_offsets(counts: List[int]) -> List[int]:
    """Global staff number of each part's staff 1, minus one."""
    offsets, total = [], 0
    for count in counts:
        offsets.append(total)
        total += count
    return offsets
