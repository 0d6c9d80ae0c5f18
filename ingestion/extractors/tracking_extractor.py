"""
Shipment tracking source.

The work list is the set of orders not yet delivered, walked in id order.
Each fetch reads the next batch of orders and renders the carrier tracking
page of every one of them.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from pydantic import ValidationError as PydanticValidationError
from ingestion.base import SourceAdapter
from ingestion.state import FetchResult, RunState
from ingestion.extractors.browser import BrowserSession, goto, dismiss_modals, text_of, texts_of
from models.base import SourceType, TrackingStatus
from models.tracking import OrderTracking
from schemas.records import TrackingRecord, TrackingEvent
from core.config import settings
from core.exceptions import DatabaseConnectionError
import logging

logger = logging.getLogger(__name__)

CONSENT_BUTTON = "#modal-gdpr .modal-footer button"
TUTORIAL_SKIP = "a.introjs-skipbutton"


class TrackingPageSource(SourceAdapter):
    """
    Keyset walk over undelivered order trackings.

    Cursor is the last processed order_trackings.id; the next batch is the
    following batch_size undelivered orders with a greater id, so orders
    that become delivered mid-run do not shift the walk.
    """

    checkpoint_type = "id"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        source_name: str = "17track",
        base_url: Optional[str] = None,
        batch_size: Optional[int] = None,
        tracking_code: Optional[str] = None,
        delivery_type: int = 1,
        pacing_seconds: Optional[float] = None,
        browser: Optional[BrowserSession] = None
    ):
        super().__init__(
            source_type=SourceType.BROWSER,
            source_name=source_name,
            pacing_seconds=settings.BROWSER_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        )
        self.session_factory = session_factory
        self.base_url = base_url or settings.TRACKING_BASE_URL
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE
        self.tracking_code = tracking_code
        self.delivery_type = delivery_type
        self.browser = browser or BrowserSession()

    async def prepare(self, state: RunState) -> None:
        """Open the tracking site once and accept its consent dialog."""
        if self.browser.started:
            return
        page = await self.browser.start()
        await goto(page, self.base_url)
        if await dismiss_modals(page, [CONSENT_BUTTON]):
            logger.info("Accepted tracking site terms")

    async def aclose(self) -> None:
        await self.browser.close()

    async def pending_orders(self, after_id: int) -> List[OrderTracking]:
        criteria = [
            OrderTracking.id > after_id,
            OrderTracking.status != int(TrackingStatus.DELIVERED),
            OrderTracking.delivery_type == self.delivery_type,
        ]
        if self.tracking_code:
            criteria.append(OrderTracking.tracking_code == self.tracking_code)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(OrderTracking)
                    .where(and_(*criteria))
                    .order_by(OrderTracking.id)
                    .limit(self.batch_size)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                "Failed to read pending order trackings",
                context={"operation": "SELECT", "table_name": "order_trackings", "cursor": after_id},
                original_exception=e
            )

    async def read_tracking(self, order: OrderTracking) -> Optional[Dict[str, Any]]:
        """Render the tracking page of one order; None when the page has no tracking block."""
        code = order.tracking_code
        page = await self.browser.start()
        await goto(page, f"{self.base_url}#nums={code}")
        await page.wait_for_timeout(1000)
        await dismiss_modals(page, [TUTORIAL_SKIP])

        block = f"#tn-{code}"
        status_link = await page.query_selector(f"{block} a")
        if status_link is None:
            return None
        status_text = await status_link.get_attribute("title")

        raw: Dict[str, Any] = {
            "source_name": self.source_name,
            "order_tracking_id": order.id,
            "tracking_code": code,
            "order_id": order.order_id,
            "site": order.site,
            "status_text": status_text,
        }
        if status_text == "Not found":
            return raw

        translate = await page.query_selector(f'input[data-yq-events="startTranslating({code})"]')
        if translate is not None:
            await translate.click()
            await page.wait_for_timeout(2000)

        raw["original_region"] = await text_of(page, f"{block} .tracklist-header .from span[data-country]")
        raw["destination_region"] = await text_of(page, f"{block} .tracklist-header .to span[data-country]")
        raw["current_process"] = await text_of(page, f"{block} .tracklist-header span[data-newevents]")
        raw["origin_events"] = await self._events(page, f"{block} .tracklist-details .ori-block dd")
        raw["destination_events"] = await self._events(page, f"{block} .tracklist-details .des-block dd")
        return raw

    async def _events(self, page, selector: str) -> List[TrackingEvent]:
        events = []
        for element in await page.query_selector_all(selector):
            texts = await texts_of(element, "p")
            if not texts:
                continue
            events.append(TrackingEvent(time=await text_of(element, "time"), text=texts[0]))
        return events

    async def fetch(self, cursor: int) -> FetchResult:
        orders = await self.pending_orders(cursor)
        if not orders:
            logger.info("No undelivered order trackings left")
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        logger.info(f"Checking {len(orders)} tracking code(s) after id {cursor}")
        records, rejected = [], []
        for order in orders:
            raw = await self.read_tracking(order)
            if raw is None:
                rejected.append(f"{order.tracking_code}: tracking block missing")
                continue
            try:
                records.append(TrackingRecord(**raw))
            except PydanticValidationError as e:
                rejected.append(f"{order.tracking_code}: {e.error_count()} invalid field(s)")

        return FetchResult(
            records=records,
            has_more=len(orders) == self.batch_size,
            next_cursor=orders[-1].id,
            rejected=rejected,
        )

    def describe(self) -> Optional[dict]:
        snapshot = super().describe()
        snapshot.update({"batch_size": self.batch_size, "tracking_code": self.tracking_code})
        return snapshot
