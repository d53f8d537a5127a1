# cloudrun/services/section_deduplicator.py

"""
Removes the part of the narrative that the extractor already turned into
recommendation cards, so the same content is not shown twice.

This is a heuristic cut, not a guaranteed prose/list partition.
"""

import logging
import re
from typing import List, Optional

from services.models import COMPREHENSIVE_IMPROVEMENT

logger = logging.getLogger(__name__)

# Headings the comprehensive improvement prompt asks the model to use for
# the selection section (plus the variants it drifts to most often).
SELECTION_MARKERS = ("推奨施策", "おすすめの施策", "選定した施策")

FIRST_ITEM_PATTERN = re.compile(r'^1\.\s+')
SECOND_ITEM_PATTERN = re.compile(r'^2\.\s+')
LIST_CONFIRM_WINDOW = 10


def strip(raw_text: str, page_type: str) -> str:
    """Return the display text for a page type with the list section removed."""
    if not raw_text:
        return raw_text

    lines = raw_text.splitlines()
    if page_type == COMPREHENSIVE_IMPROVEMENT:
        cut = _find_marker_line(lines)
    else:
        cut = _find_list_section(lines)

    if cut is None:
        return raw_text

    logger.info(f"Deduplicator truncated {page_type} output at line {cut} of {len(lines)}")
    return "\n".join(lines[:cut]).rstrip()


def _find_marker_line(lines: List[str]) -> Optional[int]:
    for index, line in enumerate(lines):
        if any(marker in line for marker in SELECTION_MARKERS):
            return index
    return None


def _find_list_section(lines: List[str]) -> Optional[int]:
    for index, line in enumerate(lines):
        if not FIRST_ITEM_PATTERN.match(line.strip()):
            continue

        window = lines[index + 1:index + 1 + LIST_CONFIRM_WINDOW]
        if not any(SECOND_ITEM_PATTERN.match(candidate.strip()) for candidate in window):
            continue

        for previous in range(index - 1, -1, -1):
            if lines[previous].strip().startswith('#'):
                return previous
        return index

    return None
