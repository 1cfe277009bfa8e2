from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from common.delta import collect_changes, is_tracked
from common.errors import FeedError
from common.graph import DeltaPage, DriveItem, GraphApiError


def _page(items: List[Dict], *, next_link: Optional[str] = None, delta_link: Optional[str] = None) -> DeltaPage:
    body: Dict = {"value": items}
    if next_link:
        body["@odata.nextLink"] = next_link
    if delta_link:
        body["@odata.deltaLink"] = delta_link
    return DeltaPage.model_validate(body)


def _file(id_: str, name: str, *, deleted: bool = False) -> Dict:
    item: Dict = {"id": id_, "name": name, "file": {}}
    if deleted:
        item["deleted"] = {"state": "deleted"}
    return item


class _FakeGraph:
    """Serves pages keyed by the link requested; None is the start of the feed."""

    def __init__(self, pages: Dict[Optional[str], object]) -> None:
        self._pages = pages
        self.requested: List[Optional[str]] = []

    def delta_page(self, link: Optional[str] = None) -> DeltaPage:
        self.requested.append(link)
        page = self._pages[link]
        if isinstance(page, Exception):
            raise page
        return page  # type: ignore[return-value]


def test_single_page_filters_tracked_files():
    graph = _FakeGraph(
        {None: _page([_file("id-a", "a.xlsx"), _file("id-b", "b.txt")], delta_link="DELTA-1")}
    )

    result = collect_changes(graph, "")

    assert result.file_ids == ["id-a"]
    assert result.cursor == "DELTA-1"
    assert graph.requested == [None]


def test_multi_page_concatenates_in_page_order_and_resumes_from_cursor():
    graph = _FakeGraph(
        {
            "DELTA-0": _page([_file("1", "one.xlsx"), {"id": "f", "name": "dir", "folder": {}}], next_link="P2"),
            "P2": _page([_file("2", "gone.xlsx", deleted=True), _file("3", "THREE.XLSX")], next_link="P3"),
            "P3": _page([_file("4", "four.xlsx"), _file("1", "one.xlsx")], delta_link="DELTA-1"),
        }
    )

    result = collect_changes(graph, "DELTA-0")

    assert result.file_ids == ["1", "3", "4", "1"]
    assert result.cursor == "DELTA-1"
    assert result.pages == 3
    assert graph.requested == ["DELTA-0", "P2", "P3"]


def test_failure_mid_pass_raises_feed_error():
    graph = _FakeGraph(
        {
            "DELTA-0": _page([_file("1", "one.xlsx")], next_link="P2"),
            "P2": GraphApiError("HTTP 503 from Graph", status_code=503),
        }
    )

    with pytest.raises(FeedError):
        collect_changes(graph, "DELTA-0")


def test_non_terminating_feed_is_bounded():
    class _Loop:
        def delta_page(self, link=None):
            return _page([], next_link="again")

    with pytest.raises(FeedError):
        collect_changes(_Loop(), "", max_pages=5)


def test_is_tracked_respects_custom_extension():
    item = DriveItem.model_validate({"id": "x", "name": "report.xlsm", "file": {}})
    assert is_tracked(item, ".xlsm")
    assert not is_tracked(item, ".xlsx")
