from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from common.errors import AuthError, FeedError, ResolverError
from common.graph import DeltaPage, GraphApiError, UsedRange, Worksheet
from state.models import SubscriptionState
from state.s3_store import OptimisticLockError
from sync.runner import SyncContext, scan_and_patch, sync_subscription


NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


class _FakeStore:
    def __init__(self, initial: Optional[SubscriptionState]) -> None:
        self._state = initial
        self.writes: List[SubscriptionState] = []
        self.conflict = False

    def read(self, subscription_id: str):
        if self._state is None or self._state.subscription_id != subscription_id:
            return None, None
        return self._state.model_copy(deep=True), "etag-1"

    def write(self, state, if_match=None):
        if self.conflict:
            raise OptimisticLockError("stale")
        self.writes.append(state.model_copy(deep=True))
        self._state = state
        return "etag-2"

    @property
    def stored(self) -> Optional[SubscriptionState]:
        return self._state


class _FakeRenewer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def renew(self, state):
        self.calls += 1
        if self.fail:
            raise AuthError("invalid_grant")
        state.access_token = "NEW-AT"
        state.refresh_token = "NEW-RT"

    def close(self):
        pass


class _FakeGraph:
    """Delta pages keyed by link, workbooks keyed by item id; applies patches like Graph."""

    def __init__(self, pages: Dict[Optional[str], Any], workbooks: Dict[str, Any]) -> None:
        self.pages = pages
        self.workbooks = workbooks
        self.tokens: List[str] = []
        self.patches: List[Dict[str, Any]] = []
        self.patch_errors: Dict[str, Exception] = {}

    def __call__(self, access_token: str) -> "_FakeGraph":
        self.tokens.append(access_token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def delta_page(self, link=None):
        page = self.pages[link]
        if isinstance(page, Exception):
            raise page
        return DeltaPage.model_validate(page)

    def first_worksheet(self, item_id):
        wb = self.workbooks[item_id]
        if isinstance(wb, Exception):
            raise wb
        return Worksheet(id="ws-1", name="Sheet1", position=0)

    def used_range(self, item_id, worksheet_id):
        return UsedRange(address="Sheet1!A1:B1", values=copy.deepcopy(self.workbooks[item_id]))

    def patch_range(self, item_id, worksheet_id, address, values):
        if item_id in self.patch_errors:
            raise self.patch_errors[item_id]
        self.patches.append({"item": item_id, "address": address, "values": values})
        grid = self.workbooks[item_id]
        for r, row in enumerate(values):
            for c, v in enumerate(row):
                if v is not None:
                    grid[r][c] = v
        return {}


def _file(id_: str, name: str) -> Dict[str, Any]:
    return {"id": id_, "name": name, "file": {}}


def _ctx(store, graph, *, renewer=None, resolve=None) -> SyncContext:
    return SyncContext(
        store=store,
        renewer=renewer or _FakeRenewer(),
        resolve=resolve or (lambda _t: "123.45"),
        graph_factory=graph,
        clock=lambda: NOW,
    )


def _state(cursor: str = "") -> SubscriptionState:
    return SubscriptionState(subscription_id="sub-1", access_token="OLD-AT", refresh_token="OLD-RT", resume_cursor=cursor)


def test_end_to_end_empty_cursor_single_page():
    store = _FakeStore(_state())
    graph = _FakeGraph(
        pages={None: {"value": [_file("id-a", "a.xlsx"), _file("id-b", "b.txt")], "@odata.deltaLink": "DELTA-1"}},
        workbooks={"id-a": [["!roland AAA stock quote", "hello"]]},
    )

    out = sync_subscription("sub-1", _ctx(store, graph))

    assert out == {"ok": True, "files": 1, "patched": 1, "failed": 0, "persisted": True}
    assert graph.patches == [{"item": "id-a", "address": "A1:B1", "values": [["123.45", None]]}]
    assert store.stored.resume_cursor == "DELTA-1"
    assert store.stored.last_notification_at == NOW
    # Renewed token is used for Graph and persisted
    assert graph.tokens == ["NEW-AT"]
    assert store.stored.refresh_token == "NEW-RT"


def test_unknown_subscription_is_noop():
    store = _FakeStore(None)
    graph = _FakeGraph(pages={}, workbooks={})

    out = sync_subscription("ghost", _ctx(store, graph))

    assert out["persisted"] is False
    assert store.writes == []
    assert graph.tokens == []


def test_auth_failure_is_non_fatal_and_uses_stale_token():
    store = _FakeStore(_state())
    graph = _FakeGraph(pages={None: {"value": [], "@odata.deltaLink": "DELTA-1"}}, workbooks={})

    out = sync_subscription("sub-1", _ctx(store, graph, renewer=_FakeRenewer(fail=True)))

    assert out["ok"] is True
    assert graph.tokens == ["OLD-AT"]
    assert store.stored.resume_cursor == "DELTA-1"
    assert store.stored.refresh_token == "OLD-RT"


def test_feed_failure_mid_pass_keeps_stored_cursor():
    store = _FakeStore(_state("DELTA-0"))
    graph = _FakeGraph(
        pages={
            "DELTA-0": {"value": [_file("id-a", "a.xlsx")], "@odata.nextLink": "P2"},
            "P2": GraphApiError("HTTP 503 from Graph", status_code=503),
        },
        workbooks={"id-a": [["!roland x", "y"]]},
    )

    with pytest.raises(FeedError):
        sync_subscription("sub-1", _ctx(store, graph))

    assert store.writes == []
    assert store.stored.resume_cursor == "DELTA-0"
    assert graph.patches == []


def test_per_file_failures_are_isolated_and_state_persisted():
    store = _FakeStore(_state("DELTA-0"))
    graph = _FakeGraph(
        pages={
            "DELTA-0": {
                "value": [_file("bad-read", "1.xlsx"), _file("bad-patch", "2.xlsx"), _file("bad-resolve", "3.xlsx")],
                "@odata.nextLink": "P2",
            },
            "P2": {"value": [_file("good", "4.xlsx")], "@odata.deltaLink": "DELTA-1"},
        },
        workbooks={
            "bad-read": GraphApiError("HTTP 423 locked", status_code=423),
            "bad-patch": [["!roland a", "b"]],
            "bad-resolve": [["!roland FAIL", "b"]],
            "good": [["!roland a", "b"]],
        },
    )
    graph.patch_errors["bad-patch"] = GraphApiError("HTTP 409 conflict", status_code=409)

    def resolve(text: str) -> str:
        if "FAIL" in text:
            raise ResolverError("lookup failed")
        return "ok"

    out = sync_subscription("sub-1", _ctx(store, graph, resolve=resolve))

    assert out == {"ok": True, "files": 4, "patched": 1, "failed": 3, "persisted": True}
    assert [p["item"] for p in graph.patches] == ["good"]
    assert store.stored.resume_cursor == "DELTA-1"


def test_lost_write_race_does_not_raise():
    store = _FakeStore(_state())
    store.conflict = True
    graph = _FakeGraph(pages={None: {"value": [], "@odata.deltaLink": "DELTA-1"}}, workbooks={})

    out = sync_subscription("sub-1", _ctx(store, graph))

    assert out["persisted"] is False
    assert store.stored.resume_cursor == ""


def test_scan_and_patch_is_idempotent():
    graph = _FakeGraph(pages={}, workbooks={"wb": [["!roland AAA stock quote", "hello"]]})

    first = scan_and_patch(graph, "wb", prefix="!roland", resolve=lambda _t: "123.45")
    second = scan_and_patch(graph, "wb", prefix="!roland", resolve=lambda _t: "999")

    assert first == 1
    assert second == 0
    assert len(graph.patches) == 1
    assert graph.workbooks["wb"] == [["123.45", "hello"]]
