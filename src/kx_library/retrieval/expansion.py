"""
Context expansion around search hits.

A hit's chunk is widened with neighbouring chunks of the same document until
the character budget is reached. Windows are cached per document for the
duration of one search call so hits landing in an already expanded window
reuse it instead of re-reading neighbours.
"""

import logging
import threading
from typing import Dict, Optional

from ..exceptions import InvalidInput
from ..schema import ExpandedWindow
from ..storage.base import VectorStore

logger = logging.getLogger(__name__)

HARD_CEILING_FACTOR = 1.2
DIRECTIONS = ("both", "before", "after")


def expand_window(
    store: VectorStore,
    document_id: str,
    chunk_index: int,
    expand_chars: int,
    direction: str = "both",
    fallback_content: str = ""
) -> ExpandedWindow:
    """
    Grow a window of chunks around chunk_index.

    Earlier chunks are prepended first until the window reaches expand_chars,
    then later chunks are appended. A neighbour is skipped, and that
    direction stops, when the current window plus the neighbour would exceed
    expand_chars * 1.2 or when the neighbour does not exist.
    """
    if direction not in DIRECTIONS:
        raise InvalidInput(f"Unsupported expansion direction: {direction}. Choose one of {list(DIRECTIONS)}")

    target = store.adjacent_chunk(document_id, chunk_index)
    content = target if target is not None else fallback_content
    ceiling = expand_chars * HARD_CEILING_FACTOR
    start = end = chunk_index

    if direction in ("both", "before"):
        while len(content) < expand_chars and start > 0:
            neighbour = store.adjacent_chunk(document_id, start - 1)
            if neighbour is None or len(content) + len(neighbour) > ceiling:
                break
            content = neighbour + "\n" + content
            start -= 1

    if direction in ("both", "after"):
        while len(content) < expand_chars:
            neighbour = store.adjacent_chunk(document_id, end + 1)
            if neighbour is None or len(content) + len(neighbour) > ceiling:
                break
            content = content + "\n" + neighbour
            end += 1

    logger.debug(f"Expanded {document_id}[{chunk_index}] to chunks {start}-{end} ({len(content)} chars)")
    return ExpandedWindow(document_id=document_id, start=start, end=end, content=content)


class ExpansionCache:
    """Last expanded window per document, owned by a single search call."""

    def __init__(self):
        self._windows: Dict[str, ExpandedWindow] = {}
        self._lock = threading.Lock()

    def lookup(self, document_id: str, chunk_index: int) -> Optional[ExpandedWindow]:
        window = self._windows.get(document_id)
        if window is not None and window.covers(chunk_index):
            return window
        return None

    def store(self, window: ExpandedWindow) -> None:
        with self._lock:
            self._windows[window.document_id] = window

    def __len__(self) -> int:
        return len(self._windows)
