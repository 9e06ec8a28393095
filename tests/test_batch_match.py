import pytest

from catalog_match.batch_match import (
    ACTIVITY_ENTITY,
    ACTIVITY_EVENT,
    BatchMatcher,
    match_items,
)
from catalog_match.config import CallPolicy, MatchingConfig
from catalog_match.pipeline_types import (
    CatalogVariant,
    InputError,
    MatchType,
    RawImportItem,
    ReviewStatus,
    RowState,
    TitleMatch,
)
from catalog_match.resilience import CancelToken

FAST = CallPolicy(timeout_s=1.0, max_retries=0, retry_delay_s=0.0)

RED = CatalogVariant("v-red", "p1", "Red Shoe", sku="SKU-RED", barcode="111")
BLUE = CatalogVariant("v-blue", "p2", "Blue Shoe", sku="SKU-BLUE", barcode="222")
GREEN = CatalogVariant("v-green", "p3", "Green Shoe", sku="SKU-GREEN")


class DummyCatalog:
    def __init__(self, titles=None, broken_skus=(), broken_titles=False, rejected_skus=()):
        self.titles = titles or {}
        self.broken_skus = set(broken_skus)
        self.rejected_skus = set(rejected_skus)
        self.broken_titles = broken_titles

    async def find_by_sku(self, scope, sku):
        if sku in self.broken_skus:
            raise RuntimeError("lookup exploded")
        if sku in self.rejected_skus:
            raise InputError(f"malformed sku {sku}")
        return {v.sku: v for v in (RED, BLUE, GREEN)}.get(sku)

    async def find_by_barcode(self, scope, barcode):
        return {"111": RED, "222": BLUE}.get(barcode)

    async def find_similar_titles(self, scope, title, limit):
        if self.broken_titles:
            raise RuntimeError("similarity offline")
        return self.titles.get(title, [])


class RecordingSink:
    def __init__(self):
        self.events = []

    async def record(self, scope, entity_type, event_type, details):
        self.events.append((scope, entity_type, event_type, dict(details)))


class RecordingProgress:
    def __init__(self, fail=False):
        self.points = []
        self.fail = fail

    async def report(self, percent, message):
        self.points.append(percent)
        if self.fail:
            raise RuntimeError("progress channel closed")


def _item(item_id, sku=None, barcode=None, title=None):
    return RawImportItem(item_id=item_id, scope="shop", raw={}, sku=sku, barcode=barcode, title=title)


def _config():
    return MatchingConfig(calls=FAST)


@pytest.mark.asyncio
async def test_sku_row_auto_matched():
    matcher = BatchMatcher(DummyCatalog(), _config())
    row = await matcher.match_row(_item("r1", sku="SKU-RED", barcode="222"))
    assert row.state == RowState.SKU_HIT
    (cand,) = row.candidates
    assert cand.variant_id == "v-red"
    assert cand.match_type == MatchType.SKU
    assert cand.confidence == 1.0
    assert cand.status == ReviewStatus.AUTO_MATCHED
    assert cand.match_data["canonicalTitle"] == "Red Shoe"
    assert cand.match_data["rawSku"] == "SKU-RED"


@pytest.mark.asyncio
async def test_barcode_row():
    row = await BatchMatcher(DummyCatalog(), _config()).match_row(_item("r1", barcode="222"))
    assert row.state == RowState.BARCODE_HIT
    assert row.candidates[0].confidence == 0.95
    assert row.candidates[0].status == ReviewStatus.AUTO_MATCHED


@pytest.mark.asyncio
async def test_title_ambiguous_row_lists_every_plausible_match():
    titles = {
        "red shoe": [
            TitleMatch(RED, 0.72),
            TitleMatch(BLUE, 0.61),
            TitleMatch(GREEN, 0.3),
        ]
    }
    row = await BatchMatcher(DummyCatalog(titles), _config()).match_row(_item("r1", title="Red shoe!"))
    assert row.state == RowState.AMBIGUOUS
    assert [c.variant_id for c in row.candidates] == ["v-red", "v-blue"]
    assert all(c.status == ReviewStatus.NEEDS_REVIEW for c in row.candidates)
    assert all(c.match_type == MatchType.TITLE for c in row.candidates)


@pytest.mark.asyncio
async def test_title_hit_row():
    titles = {"red shoe": [TitleMatch(RED, 0.93), TitleMatch(BLUE, 0.85)]}
    row = await BatchMatcher(DummyCatalog(titles), _config()).match_row(_item("r1", title="red shoe"))
    assert row.state == RowState.TITLE_HIT
    assert [c.variant_id for c in row.candidates] == ["v-red"]
    assert row.candidates[0].status == ReviewStatus.AUTO_MATCHED


@pytest.mark.asyncio
async def test_no_match_row_gets_none_placeholder():
    row = await BatchMatcher(DummyCatalog(), _config()).match_row(_item("r1", sku="NOPE", title="mystery"))
    assert row.state == RowState.NO_MATCH
    (cand,) = row.candidates
    assert cand.match_type == MatchType.NONE
    assert cand.variant_id is None
    assert cand.confidence == 0.0
    assert cand.status == ReviewStatus.NO_MATCH


@pytest.mark.asyncio
async def test_unavailable_title_lookup_explained():
    matcher = BatchMatcher(DummyCatalog(broken_titles=True), _config())
    row = await matcher.match_row(_item("r1", title="red shoe"))
    assert row.state == RowState.NO_MATCH
    assert row.candidates[0].explanation.startswith("Title lookup unavailable")


@pytest.mark.asyncio
async def test_failed_sku_lookup_still_tries_barcode_then_title():
    titles = {"blue shoe": [TitleMatch(BLUE, 0.95)]}
    matcher = BatchMatcher(DummyCatalog(titles, broken_skus={"SKU-X"}), _config())

    row = await matcher.match_row(_item("r1", sku="SKU-X", barcode="111", title="Blue Shoe"))
    assert row.state == RowState.BARCODE_HIT
    assert row.error is None
    assert row.candidates[0].variant_id == "v-red"

    row = await matcher.match_row(_item("r2", sku="SKU-X", title="Blue Shoe"))
    assert row.state == RowState.TITLE_HIT
    assert row.candidates[0].variant_id == "v-blue"


@pytest.mark.asyncio
async def test_run_counts_add_up_with_errors_and_reports_progress():
    titles = {"blue shoe": [TitleMatch(BLUE, 0.7), TitleMatch(GREEN, 0.6)]}
    catalog = DummyCatalog(titles, broken_skus={"BOOM"}, rejected_skus={"BAD"})
    sink = RecordingSink()
    progress = RecordingProgress()
    items = [
        _item("r1", sku="SKU-RED"),
        _item("r2", title="Blue Shoe"),
        _item("r3", sku="BOOM"),
        _item("r4", title="unknown thing"),
        _item("r5", sku="BAD"),
        _item("r1", sku="SKU-RED"),
    ]
    cfg = MatchingConfig(calls=FAST, batch={"sub_batch_size": 2})

    result = await BatchMatcher(catalog, cfg, activity=sink, progress=progress).run(items, "shop", job_id="job-1")

    # duplicate r1 skipped
    assert result.total == 5
    assert result.processed == 5
    assert result.matched == 1
    assert result.ambiguous == 1
    assert result.no_match == 3
    assert result.errored == 1
    assert result.processed == result.matched + result.ambiguous + result.no_match

    rows = {r.item_id: r for r in result.rows}
    # a failed identifier lookup degrades to NO_MATCH, it does not error the row
    assert rows["r3"].error is None
    assert rows["r3"].candidates[0].match_type == MatchType.NONE
    assert rows["r3"].candidates[0].explanation.startswith("Identifier lookup unavailable")
    assert rows["r5"].error is not None
    assert rows["r5"].candidates[0].explanation.startswith("Matching failed")

    assert progress.points[0] == 5
    assert progress.points[-1] == 100
    assert progress.points == sorted(progress.points)

    ((scope, entity, event, details),) = sink.events
    assert (scope, entity, event) == ("shop", ACTIVITY_ENTITY, ACTIVITY_EVENT)
    assert details["jobId"] == "job-1"
    assert details["noMatch"] == 3
    assert details["totalItems"] == 5


@pytest.mark.asyncio
async def test_failing_progress_reporter_does_not_stop_batch():
    result = await BatchMatcher(DummyCatalog(), _config(), progress=RecordingProgress(fail=True)).run(
        [_item("r1", sku="SKU-RED")], "shop"
    )
    assert result.matched == 1


@pytest.mark.asyncio
async def test_cancel_stops_before_next_row():
    cancel = CancelToken()

    class CancellingProgress(RecordingProgress):
        async def report(self, percent, message):
            await super().report(percent, message)
            if message.startswith("Processed 1/"):
                cancel.cancel("user abort")

    items = [_item(f"r{i}", sku="SKU-RED") for i in range(5)]
    result = await BatchMatcher(DummyCatalog(), _config(), progress=CancellingProgress()).run(
        items, "shop", cancel=cancel
    )
    assert result.cancelled
    assert result.processed == 1
    assert result.summary()["cancelled"] is True


@pytest.mark.asyncio
async def test_match_items_empty_batch():
    result = await match_items([], DummyCatalog(), "shop", config=_config())
    assert result.total == 0
    assert result.processed == 0
    assert result.candidates == []
