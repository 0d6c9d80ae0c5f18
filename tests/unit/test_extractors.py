"""
Unit tests for source adapters
"""

import json
import httpx
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from ingestion.extractors.api_extractor import PaginatedAPISource, build_collections_source, catalog_search_body
from ingestion.extractors.browser import (
    clear_challenge, goto, dismiss_modals, CHALLENGE_TRACK, CHALLENGE_HANDLE
)
from ingestion.extractors.page_extractor import RenderedPageSource, SELECTORS
from ingestion.extractors.tracking_extractor import TrackingPageSource
from ingestion.extractors.table_extractor import ProductTableSource
from ingestion.state import RunState
from models.base import TrackingStatus
from models.catalog import Category, Product
from models.tracking import OrderTracking
from schemas.records import ApiProductRecord, CollectionPicture, ListingItemRecord, RawRecord
from core.exceptions import (
    AuthenticationError,
    BotChallengeError,
    NavigationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    SchemaValidationError
)


# ============================================================================
# Fake DOM
# ============================================================================

class FakeElement:
    """Minimal element answering Playwright's query/text/attribute calls"""

    def __init__(self, text=None, attrs=None, children=None, frame=None, box=None):
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}
        self.frame = frame
        self.box = box
        self.clicks = 0

    async def query_selector(self, selector):
        found = self.children.get(selector) or []
        return found[0] if found else None

    async def query_selector_all(self, selector):
        return list(self.children.get(selector) or [])

    async def text_content(self):
        return self.text

    async def get_attribute(self, name):
        return self.attrs.get(name)

    async def click(self):
        self.clicks += 1

    async def content_frame(self):
        return self.frame

    async def bounding_box(self):
        return self.box


class FakePage(FakeElement):
    def __init__(self, children=None, title="", url="https://shop.test/page"):
        super().__init__(children=children)
        self.url = url
        self._title = title
        self.visited = []
        self.mouse = AsyncMock()
        self.wait_for_selector = AsyncMock()
        self.wait_for_timeout = AsyncMock()

    async def goto(self, url, wait_until=None):
        self.visited.append(url)

    async def title(self):
        return self._title

    def is_closed(self):
        return False


class ChallengePage(FakePage):
    """Shows the slider challenge until it has been dragged `drags_needed` times"""

    def __init__(self, drags_needed):
        handle = FakeElement(box={"x": 10, "y": 100, "width": 40, "height": 30})
        super().__init__(children={CHALLENGE_HANDLE: [handle]})
        self.track = FakeElement(box={"x": 10, "y": 100, "width": 300, "height": 30})
        self.drags_needed = drags_needed
        self.mouse.up.side_effect = self._released

    def _released(self):
        self.drags_needed -= 1

    async def query_selector(self, selector):
        if selector == CHALLENGE_TRACK:
            return self.track if self.drags_needed > 0 else None
        return await super().query_selector(selector)


def fake_browser(page):
    browser = Mock()
    browser.start = AsyncMock(return_value=page)
    browser.close = AsyncMock()
    browser.started = True
    return browser


def texts(*values):
    return [FakeElement(text=v) for v in values]


# ============================================================================
# Paginated API source
# ============================================================================

def make_source(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("pacing_seconds", 0)
    return PaginatedAPISource(
        source_name="goat",
        api_url="https://search.test/query",
        client=client,
        **kwargs
    )


class TestPaginatedAPISource:
    """Test paginated API source"""

    @pytest.mark.asyncio
    async def test_fetch_page_validates_records(self, hit_factory):
        """Valid hits become records, invalid ones are rejected with a reason"""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            hits = [hit_factory(1), hit_factory(2), {"product_template_id": 3, "name": "No sku"}]
            return httpx.Response(200, json={"hits": hits, "nbPages": 5})

        source = make_source(handler)
        result = await source.fetch(0)

        assert len(result.records) == 2
        assert all(isinstance(r, ApiProductRecord) for r in result.records)
        assert result.records[0].external_id == "1001"
        assert result.records[0].source_name == "goat"
        assert len(result.rejected) == 1
        assert "sku" in result.rejected[0]
        assert result.has_more is True
        assert result.next_cursor == 1
        assert "page=0" in bodies[0]["params"]
        assert "hitsPerPage=50" in bodies[0]["params"]

    @pytest.mark.asyncio
    async def test_last_page_reported_by_payload(self, hit_factory):
        def handler(request):
            return httpx.Response(200, json={"hits": [hit_factory(1)], "nbPages": 3})

        source = make_source(handler)
        result = await source.fetch(2)

        assert result.has_more is False
        assert result.next_cursor == 3

    @pytest.mark.asyncio
    async def test_empty_page_ends_source(self):
        def handler(request):
            return httpx.Response(200, json={"hits": []})

        source = make_source(handler)
        result = await source.fetch(4)

        assert result.records == []
        assert result.has_more is False
        assert result.next_cursor == 4

    @pytest.mark.asyncio
    async def test_max_page_stops_without_request(self):
        handler = Mock(side_effect=AssertionError("no request expected"))
        source = make_source(handler, max_page=3)

        result = await source.fetch(3)

        assert result.has_more is False
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_page_before_max_page_is_last(self, hit_factory):
        def handler(request):
            return httpx.Response(200, json={"hits": [hit_factory(1)]})

        source = make_source(handler, max_page=3)
        result = await source.fetch(2)

        assert len(result.records) == 1
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_offset_paging_with_get(self, hit_factory):
        queries = []

        def handler(request):
            queries.append(parse_qs(request.url.query.decode()))
            return httpx.Response(200, json=[hit_factory(i) for i in range(10)])

        source = make_source(handler, method="GET", records_key=None, paging="offset", page_size=10)
        result = await source.fetch(20)

        assert queries[0]["offset"] == ["20"]
        assert queries[0]["limit"] == ["10"]
        assert result.next_cursor == 30
        assert source.checkpoint_type == "offset"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, ResourceNotFoundError),
        (500, NetworkError),
        (503, NetworkError),
        (400, SchemaValidationError),
    ])
    async def test_status_classification(self, status, error):
        def handler(request):
            return httpx.Response(status, text="nope")

        source = make_source(handler)
        with pytest.raises(error):
            await source.fetch(0)

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "30"})

        source = make_source(handler)
        with pytest.raises(RateLimitError) as exc_info:
            await source.fetch(0)

        assert exc_info.value.retry_after == 30.0

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        source = make_source(handler)
        with pytest.raises(NetworkError):
            await source.fetch(0)

    @pytest.mark.asyncio
    async def test_non_json_body_is_schema_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        source = make_source(handler)
        with pytest.raises(SchemaValidationError):
            await source.fetch(0)

    @pytest.mark.asyncio
    async def test_missing_record_list_is_schema_error(self):
        def handler(request):
            return httpx.Response(200, json={"results": []})

        source = make_source(handler)
        with pytest.raises(SchemaValidationError):
            await source.fetch(0)

    def test_catalog_search_body(self):
        body = catalog_search_body(3, hits_per_page=20, query="air max")

        assert "page=3" in body["params"]
        assert "hitsPerPage=20" in body["params"]
        assert "query=air+max" in body["params"]

    @pytest.mark.asyncio
    async def test_collections_lookup(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[{"web_picture": "https://img.test/p1.jpg"}, {"id": 2}])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            items = await build_collections_source(client=client).lookup(productTemplateId="1001")

        assert items == [{"web_picture": "https://img.test/p1.jpg"}, {"id": 2}]
        assert requests[0].method == "GET"
        assert requests[0].url.params["productTemplateId"] == "1001"
        assert "Referer" in requests[0].headers

    @pytest.mark.asyncio
    async def test_lookup_unknown_template(self):
        def handler(request):
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ResourceNotFoundError):
                await build_collections_source(client=client).lookup(productTemplateId="404")


class TestRecordSchemas:
    """Test raw record models"""

    def test_base_record_needs_natural_key(self):
        with pytest.raises(TypeError):
            RawRecord(source_name="goat")

    def test_collection_picture_drops_query(self):
        picture = CollectionPicture(web_picture="https://img.test/p1.jpg?w=100&h=100", position=2)

        assert picture.picture_url == "https://img.test/p1.jpg"

    def test_collection_picture_requires_url(self):
        with pytest.raises(ValueError):
            CollectionPicture(web_picture="")


# ============================================================================
# Browser helpers
# ============================================================================

class TestBrowserHelpers:
    """Test bounded browser helpers"""

    @pytest.mark.asyncio
    async def test_no_challenge(self):
        page = ChallengePage(drags_needed=0)

        assert await clear_challenge(page, max_attempts=3) == 0
        page.mouse.down.assert_not_called()

    @pytest.mark.asyncio
    async def test_challenge_cleared_after_drags(self):
        page = ChallengePage(drags_needed=2)

        attempts = await clear_challenge(page, max_attempts=5)

        assert attempts == 2
        assert page.mouse.down.await_count == 2

    @pytest.mark.asyncio
    async def test_challenge_bounded(self):
        """A challenge that never clears fails after max_attempts drags"""
        page = ChallengePage(drags_needed=100)

        with pytest.raises(BotChallengeError):
            await clear_challenge(page, max_attempts=3)

        assert page.mouse.up.await_count == 3

    @pytest.mark.asyncio
    async def test_goto_timeout_is_retryable(self):
        page = FakePage()
        page.goto = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 20000ms exceeded"))

        with pytest.raises(NavigationError):
            await goto(page, "https://shop.test/slow")

    @pytest.mark.asyncio
    async def test_dismiss_modals(self):
        close = FakeElement()
        page = FakePage(children={".close-layer": [close]})

        closed = await dismiss_modals(page, [".next-dialog-close", ".close-layer"])

        assert closed == 1
        assert close.clicks == 1


# ============================================================================
# Rendered store pages
# ============================================================================

def listing_page(page_label="1/3", hrefs=()):
    return FakePage(children={
        SELECTORS["page_count"]: texts(page_label),
        SELECTORS["product_link"]: [FakeElement(attrs={"href": h}) for h in hrefs],
    })


class TestRenderedPageSource:
    """Test store listing and detail extraction"""

    @pytest.mark.asyncio
    async def test_fetch_listing_page(self):
        page = listing_page(hrefs=[
            "//www.aliexpress.com/item/1005001.html",
            "//www.aliexpress.com/item/1005002.html?spm=x",
            "//www.aliexpress.com/item/1005001.html",
            "javascript:void(0)",
        ])
        source = RenderedPageSource(store_id="42", browser=fake_browser(page), pacing_seconds=0)
        source.top_item_ids = {"1005002"}

        result = await source.fetch(0)

        assert [r.external_id for r in result.records] == ["1005001", "1005002"]
        assert result.records[0].url.endswith("/item/1005001.html")
        assert result.records[0].is_top is False
        assert result.records[1].is_top is True
        assert len(result.rejected) == 1
        assert result.has_more is True
        assert result.next_cursor == 1
        assert page.visited[0].endswith("/store/42/search/1.html?origin=n&SortType=bestmatch_sort")
        assert source.page_count == 3

    @pytest.mark.asyncio
    async def test_last_listing_page(self):
        page = listing_page(page_label="3/3", hrefs=["/item/77.html"])
        source = RenderedPageSource(store_id="42", browser=fake_browser(page), pacing_seconds=0)

        result = await source.fetch(2)

        assert result.has_more is False
        assert result.next_cursor == 3

    @pytest.mark.asyncio
    async def test_fetch_stops_when_challenge_persists(self):
        page = ChallengePage(drags_needed=100)
        source = RenderedPageSource(
            store_id="42", browser=fake_browser(page), max_challenge_attempts=2, pacing_seconds=0
        )

        with pytest.raises(BotChallengeError):
            await source.fetch(0)

    @pytest.mark.asyncio
    async def test_single_target_item(self):
        source = RenderedPageSource(store_id="42", item_id="555", browser=fake_browser(FakePage()))

        result = await source.fetch(0)

        assert [r.external_id for r in result.records] == ["555"]
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_prepare_skips_login_when_signed_in(self):
        page = FakePage(
            children={SELECTORS["signed_in"]: texts("jane")},
            title="Acme Store - Online Shop",
        )
        source = RenderedPageSource(
            store_id="42", email="a@b.c", password="secret", browser=fake_browser(page)
        )

        await source.prepare(RunState())

        assert not any("login" in url for url in page.visited)
        assert source.supplier.external_id == "42"
        assert source.supplier.name == "Acme"

    @pytest.mark.asyncio
    async def test_fetch_detail_single_sku(self):
        size_group = FakeElement(children={
            SELECTORS["sku_title"]: texts("Shoe Size:"),
            SELECTORS["sku_sizes"]: texts("41", "40"),
        })
        page = FakePage(children={
            SELECTORS["title"]: texts("Canvas Sneaker"),
            SELECTORS["price_current"]: texts("US $12.50"),
            SELECTORS["price_original"]: texts("US $20.00"),
            SELECTORS["stock"]: texts("350 pieces available"),
            SELECTORS["rating"]: texts("4.8"),
            SELECTORS["likes"]: texts("1,204"),
            SELECTORS["orders"]: texts("2,311 orders"),
            SELECTORS["main_image"]: [FakeElement(attrs={"src": "//img.test/main.jpg"})],
            SELECTORS["feature_images"]: [
                FakeElement(attrs={"src": "//img.test/f1.jpg_50x50.jpg"}),
                FakeElement(attrs={"src": "//img.test/f2.jpg_50x50.jpg"}),
            ],
            SELECTORS["sku_groups"]: [size_group],
            SELECTORS["spec_tab"]: [FakeElement()],
            SELECTORS["spec_items"]: texts("Brand Name: Nike", "Gender: Men", "no separator"),
        })
        source = RenderedPageSource(store_id="42", browser=fake_browser(page))
        item = ListingItemRecord(
            source_name="aliexpress", external_id="900", url="https://shop.test/item/900.html",
            supplier_external_id="42", page_index=0,
        )

        detail = await source.fetch_detail(item)

        assert detail["name"] == "Canvas Sneaker"
        assert len(detail["variants"]) == 1
        variant = detail["variants"][0]
        assert variant["sku"] == "900"
        assert variant["price"] == Decimal("20.00")
        assert variant["sale_price"] == Decimal("12.50")
        assert variant["quantity"] == 350
        assert variant["like_number"] == 1204
        assert variant["number_of_purchased"] == 2311
        assert variant["star_point"] == 4.8
        assert variant["sizes"] == ["41", "40"]
        assert detail["feature_image_urls"] == ["//img.test/f1.jpg", "//img.test/f2.jpg"]
        assert detail["specifications"] == {"brand name": "nike", "gender": "men"}
        assert detail["reviews"] == []
        assert detail["description"] is None


# ============================================================================
# Tracking pages
# ============================================================================

def event(time, text):
    return FakeElement(children={"time": texts(time), "p": texts(text)})


class TestTrackingPageSource:
    """Test the undelivered order work list"""

    @pytest.mark.asyncio
    async def test_pending_orders_skip_delivered(self, session_factory, db_session):
        db_session.add_all([
            OrderTracking(tracking_code="LP001", status=int(TrackingStatus.NOT_FOUND)),
            OrderTracking(tracking_code="LP002", status=int(TrackingStatus.DELIVERED)),
            OrderTracking(tracking_code="LP003", status=int(TrackingStatus.IN_TRANSIT)),
        ])
        await db_session.commit()

        source = TrackingPageSource(session_factory, browser=fake_browser(FakePage()))
        orders = await source.pending_orders(0)

        assert [o.tracking_code for o in orders] == ["LP001", "LP003"]

    @pytest.mark.asyncio
    async def test_fetch_reads_tracking_pages(self, session_factory, db_session):
        db_session.add_all([
            OrderTracking(tracking_code="LP001", order_id="A-1", status=0),
            OrderTracking(tracking_code="LP003", order_id="A-3", status=1),
        ])
        await db_session.commit()

        block = "#tn-LP001"
        page = FakePage(children={
            f"{block} a": [FakeElement(attrs={"title": "Delivered (12 Days)"})],
            f"{block} .tracklist-header .from span[data-country]": texts("China"),
            f"{block} .tracklist-header .to span[data-country]": texts("Germany"),
            f"{block} .tracklist-header span[data-newevents]": texts("Delivered to recipient"),
            f"{block} .tracklist-details .ori-block dd": [
                event("2024-01-10 09:00", "Departed facility"),
                event("2024-01-02 08:00", "Accepted by carrier"),
            ],
            f"{block} .tracklist-details .des-block dd": [
                event("2024-01-14 12:00", "Delivered"),
            ],
        })
        source = TrackingPageSource(session_factory, batch_size=2, browser=fake_browser(page))

        result = await source.fetch(0)

        assert len(result.records) == 1
        record = result.records[0]
        assert record.tracking_code == "LP001"
        assert record.order_id == "A-1"
        assert record.status_text == "Delivered (12 Days)"
        assert record.original_region == "China"
        assert [e.text for e in record.origin_events] == ["Departed facility", "Accepted by carrier"]
        assert record.destination_events[0].time == "2024-01-14 12:00"
        # LP003 has no tracking block on the page
        assert len(result.rejected) == 1
        assert "LP003" in result.rejected[0]
        assert result.has_more is True
        assert result.next_cursor == 2

    @pytest.mark.asyncio
    async def test_no_pending_orders_ends_source(self, session_factory):
        source = TrackingPageSource(session_factory, browser=fake_browser(FakePage()))

        result = await source.fetch(0)

        assert result.records == []
        assert result.has_more is False


# ============================================================================
# Stored products
# ============================================================================

class TestProductTableSource:
    """Test keyset walk over stored products"""

    @pytest.mark.asyncio
    async def test_keyset_batches(self, session_factory, db_session):
        category = Category(name="nike")
        db_session.add(category)
        await db_session.flush()
        for i in range(3):
            db_session.add(Product(
                source_name="goat", external_id=str(i), sku=f"S{i}", parent_sku=f"S{i}",
                name=f"Shoe {i}", size=["10", "9"], category_id=category.id,
            ))
        await db_session.commit()

        source = ProductTableSource(session_factory, source_name="fix-sizes", batch_size=2)

        first = await source.fetch(0)
        assert [r.sku for r in first.records] == ["S0", "S1"]
        assert first.records[0].category_name == "nike"
        assert first.records[0].size == ["10", "9"]
        assert first.has_more is True

        second = await source.fetch(first.next_cursor)
        assert [r.sku for r in second.records] == ["S2"]
        assert second.has_more is False
