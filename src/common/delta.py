from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import FeedError
from .graph import DeltaPage, DriveItem, GraphClient, GraphError


logger = logging.getLogger(__name__)

# Hard stop against a feed that never terminates a pass
MAX_PAGES_PER_PASS = 1000


@dataclass
class DeltaResult:
    file_ids: List[str] = field(default_factory=list)
    cursor: str = ""
    pages: int = 0


def is_tracked(item: DriveItem, extension: str) -> bool:
    """A live file whose name ends with the tracked extension (case-insensitive)."""
    return item.is_file and not item.is_deleted and item.name.lower().endswith(extension.lower())


def collect_changes(
    graph: GraphClient,
    resume_cursor: Optional[str],
    *,
    extension: str = ".xlsx",
    max_pages: int = MAX_PAGES_PER_PASS,
) -> DeltaResult:
    """
    Walk the drive delta feed from `resume_cursor` until a page carries a delta link.

    Returns the ids of changed tracked files, in page order then in-page order,
    and the terminal delta link as the new cursor. Any fetch or decode failure
    raises FeedError before a cursor is produced, so the caller's stored cursor
    stays where it was and the whole window is replayed next time.
    """
    result = DeltaResult()
    link: Optional[str] = resume_cursor or None

    while result.pages < max_pages:
        try:
            page: DeltaPage = graph.delta_page(link)
        except GraphError as exc:
            raise FeedError(f"Delta page {result.pages + 1} failed: {exc}") from exc
        result.pages += 1

        for item in page.value:
            if is_tracked(item, extension):
                result.file_ids.append(item.id)

        if page.delta_link:
            result.cursor = page.delta_link
            logger.info(
                "Delta pass complete: %d page(s), %d tracked file(s) changed",
                result.pages,
                len(result.file_ids),
            )
            return result
        link = page.next_link

    raise FeedError(f"Delta pass did not terminate within {max_pages} pages")


__all__ = ["DeltaResult", "collect_changes", "is_tracked", "MAX_PAGES_PER_PASS"]
