"""
Rendered store listing source.

fetch() walks the store's product listing one page at a time and returns
the item links it finds. The expensive detail page is only opened later,
through fetch_detail(), for items the dedup filter let through.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set
from pydantic import ValidationError as PydanticValidationError
from ingestion.base import SourceAdapter
from ingestion.state import FetchResult, RunState
from ingestion.extractors.browser import (
    BrowserSession, goto, wait_for, dismiss_modals, clear_challenge,
    text_of, texts_of, attrs_of
)
from models.base import SourceType
from schemas.records import ListingItemRecord, SupplierDetail
from core.config import settings
from core.exceptions import AuthenticationError, PageExtractionError
import logging

logger = logging.getLogger(__name__)

SELECTORS = {
    # Session
    "signed_in": ".ng-member .account-name",
    "login_frame": "#alibaba-login-box",
    "login_email": "#fm-login-id",
    "login_password": "#fm-login-password",
    "login_submit": "button.fm-submit",
    "login_error": ".fm-error-tip",
    "modals": [".next-dialog-close", ".close-layer", ".coupon-poplayer-modal .close"],

    # Store
    "store_frame": "#detail-displayer",
    "store_rating": ".positive-rating",
    "page_count": ".ui-pagination-navi .ui-label",
    "product_list": "ul.items-list",
    "product_link": "ul.items-list li .detail h3 a",

    # Product detail
    "title": "h1.product-title-text",
    "rating": ".overview-rating-average",
    "orders": ".product-reviewer-sold",
    "price_current": ".product-price-current",
    "price_original": ".product-price-original",
    "stock": ".product-quantity-tip",
    "likes": ".add-wishlist-num",
    "main_image": ".image-viewer img.magnifier-image",
    "feature_images": ".images-view-list img",
    "sku_groups": ".product-sku .sku-property",
    "sku_title": ".sku-title",
    "sku_images": ".sku-property-list li img[title]",
    "sku_sizes": "li.sku-property-item:not(.disabled) .sku-property-text",
    "spec_tab": ".product-detail-tab li:nth-child(3)",
    "spec_items": ".product-specs-list li",
    "description": ".product-overview .detail-desc-decorate-richtext",

    # Reviews
    "feedback_tab": ".product-detail-tab li:nth-child(1)",
    "feedback_frame": "#product-evaluation",
    "feedback_item": ".feedback-item",
    "feedback_star": ".star-view > span",
    "feedback_sku": ".user-order-info span",
    "feedback_comment": ".buyer-feedback span",
    "feedback_date": ".r-time-new",
    "feedback_images": ".r-photo-list img",
    "feedback_next": ".ui-pagination-next",
}

ITEM_ID = re.compile(r"(\d+)\.html")
NUMBER = re.compile(r"\d+(?:\.\d+)?")


def _number(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = NUMBER.search(text.replace(",", ""))
    return match.group(0) if match else None


def _decimal(text: Optional[str]) -> Optional[Decimal]:
    value = _number(text)
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def _int(text: Optional[str]) -> Optional[int]:
    value = _number(text)
    return int(float(value)) if value is not None else None


def _float(text: Optional[str]) -> Optional[float]:
    value = _number(text)
    return float(value) if value is not None else None


class RenderedPageSource(SourceAdapter):
    """
    Listing pages of one store rendered through a headless browser.

    Cursor is the zero-based listing page index. The overall page count is
    read from the pagination widget on the first fetch of each attempt.

    Attributes:
        store_id: External id of the store (supplier)
        include_reviews: Read reviews on the detail page
        include_description: Read the long description on the detail page
        max_review_pages: Bound on review pagination per product
        item_id: Read only this item instead of walking the listing
    """

    checkpoint_type = "page_index"

    def __init__(
        self,
        store_id: str,
        source_name: str = "aliexpress",
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        include_reviews: bool = False,
        include_description: bool = False,
        max_review_pages: int = 20,
        item_id: Optional[str] = None,
        max_challenge_attempts: Optional[int] = None,
        pacing_seconds: Optional[float] = None,
        browser: Optional[BrowserSession] = None
    ):
        super().__init__(
            source_type=SourceType.BROWSER,
            source_name=source_name,
            pacing_seconds=settings.BROWSER_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        )
        self.store_id = str(store_id)
        self.base_url = (base_url or settings.STORE_BASE_URL).rstrip("/")
        self.email = email if email is not None else settings.STORE_LOGIN_EMAIL
        self.password = password if password is not None else settings.STORE_LOGIN_PASSWORD
        self.include_reviews = include_reviews
        self.include_description = include_description
        self.max_review_pages = max_review_pages
        self.max_challenge_attempts = max_challenge_attempts or settings.CHALLENGE_MAX_ATTEMPTS
        self.item_id = str(item_id) if item_id else None
        self.browser = browser or BrowserSession()

        self.supplier: Optional[SupplierDetail] = None
        self.page_count: Optional[int] = None
        self.top_item_ids: Set[str] = set()

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    def listing_url(self, page_index: int) -> str:
        return f"{self.base_url}/store/{self.store_id}/search/{page_index + 1}.html?origin=n&SortType=bestmatch_sort"

    def top_rated_url(self) -> str:
        return f"{self.base_url}/store/top-rated-products/{self.store_id}.html"

    def detail_url(self, external_id: str) -> str:
        return f"{self.base_url}/item/{external_id}.html"

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def is_signed_in(self, page) -> bool:
        return await page.query_selector(SELECTORS["signed_in"]) is not None

    async def sign_in(self, page) -> None:
        """Fill the login frame; raises AuthenticationError when the site rejects it."""
        logger.info(f"Signing in to {self.source_name}")
        await goto(page, f"{self.base_url}/login.html")
        await wait_for(page, SELECTORS["login_frame"])
        frame_element = await page.query_selector(SELECTORS["login_frame"])
        frame = await frame_element.content_frame()

        await frame.fill(SELECTORS["login_email"], self.email)
        await frame.fill(SELECTORS["login_password"], self.password)
        await frame.click(SELECTORS["login_submit"])
        await page.wait_for_timeout(2000)

        error = await text_of(frame, SELECTORS["login_error"])
        if error:
            raise AuthenticationError(
                f"Sign-in rejected: {error}",
                context={"url": page.url, "source_name": self.source_name}
            )

    async def read_supplier(self, page) -> SupplierDetail:
        url = f"{self.base_url}/store/feedback-score/{self.store_id}.html"
        logger.info(f"Reading store profile {url}")
        await goto(page, url)
        await clear_challenge(page, self.max_challenge_attempts)

        title = await page.title()
        rating = None
        frame_element = await page.query_selector(SELECTORS["store_frame"])
        if frame_element is not None:
            frame = await frame_element.content_frame()
            if frame is not None:
                rating = await text_of(frame, SELECTORS["store_rating"])

        return SupplierDetail(
            external_id=self.store_id,
            name=title.split(" ")[0] if title else None,
            home_page_url=f"{self.base_url}/store/{self.store_id}",
            all_product_url=f"{self.base_url}/store/all-wholesale-products/{self.store_id}.html",
            top_rated_product_url=self.top_rated_url(),
            positive_number=rating,
        )

    async def read_top_items(self, page) -> Set[str]:
        await goto(page, self.top_rated_url())
        await clear_challenge(page, self.max_challenge_attempts)
        hrefs = await attrs_of(page, SELECTORS["product_link"], "href")
        return {m.group(1) for m in (ITEM_ID.search(h) for h in hrefs) if m}

    async def prepare(self, state: RunState) -> None:
        """
        Launch the browser, sign in when credentials are configured and
        read the store profile.

        Signed-in state is read from the page, so a resumed attempt with a
        live browser skips the login form.
        """
        page = await self.browser.start()
        self.page_count = None

        if self.email and self.password and not await self.is_signed_in(page):
            await self.sign_in(page)
        elif state.resumed:
            logger.info(f"Resuming {self.source_name} at page index {state.cursor}")

        if self.supplier is None:
            self.supplier = await self.read_supplier(page)
            self.top_item_ids = await self.read_top_items(page)

    async def aclose(self) -> None:
        await self.browser.close()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def open(self, url: str):
        """Navigate and clear whatever stands between us and the content."""
        page = await self.browser.start()
        await goto(page, url)
        await dismiss_modals(page, SELECTORS["modals"])
        await clear_challenge(page, self.max_challenge_attempts)
        return page

    async def read_page_count(self, page) -> int:
        label = await text_of(page, SELECTORS["page_count"])
        if not label:
            return 1
        match = re.search(r"(\d+)\s*$", label)
        return int(match.group(1)) if match else 1

    def _single_item(self, cursor: int) -> FetchResult:
        item = ListingItemRecord(
            source_name=self.source_name,
            external_id=self.item_id,
            url=self.detail_url(self.item_id),
            supplier_external_id=self.store_id,
            page_index=cursor,
            is_top=self.item_id in self.top_item_ids,
        )
        return FetchResult(records=[item], has_more=False, next_cursor=cursor)

    async def fetch(self, cursor: int) -> FetchResult:
        if self.item_id is not None:
            return self._single_item(cursor)

        if self.page_count is not None and cursor >= self.page_count:
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        logger.info(f"Fetching listing page {cursor + 1} of store {self.store_id}")
        page = await self.open(self.listing_url(cursor))

        if self.page_count is None:
            self.page_count = await self.read_page_count(page)
            logger.info(f"Store {self.store_id} has {self.page_count} listing page(s)")

        if cursor >= self.page_count:
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        await wait_for(page, SELECTORS["product_list"])
        hrefs = await attrs_of(page, SELECTORS["product_link"], "href")

        records, rejected, seen = [], [], set()
        for href in hrefs:
            match = ITEM_ID.search(href)
            if match is None:
                rejected.append(f"link without item id: {href}")
                continue
            external_id = match.group(1)
            if external_id in seen:
                continue
            seen.add(external_id)
            try:
                records.append(ListingItemRecord(
                    source_name=self.source_name,
                    external_id=external_id,
                    url=self.detail_url(external_id),
                    supplier_external_id=self.store_id,
                    page_index=cursor,
                    is_top=external_id in self.top_item_ids,
                ))
            except PydanticValidationError as e:
                rejected.append(f"item {external_id}: {e.error_count()} invalid field(s)")

        return FetchResult(
            records=records,
            has_more=cursor + 1 < self.page_count,
            next_cursor=cursor + 1,
            rejected=rejected,
        )

    # ------------------------------------------------------------------
    # Detail page (secondary fetch)
    # ------------------------------------------------------------------

    async def fetch_detail(self, item: ListingItemRecord) -> Dict[str, Any]:
        """
        Read the detail page of one listing item.

        Returns the raw attribute set for PageProductDetail; validation is
        left to the caller so a malformed page skips only this item.
        """
        logger.info(f"Reading product detail {item.url}")
        page = await self.open(item.url)

        skus = await attrs_of(page, SELECTORS["sku_images"], "title")
        name = await text_of(page, SELECTORS["title"])
        detail: Dict[str, Any] = {
            "source_name": self.source_name,
            "external_id": item.external_id,
            "url": item.url,
            "name": name,
            "variants": [],
            "feature_image_urls": [],
            "specifications": {},
            "description": None,
            "reviews": [],
        }

        # Items without a variant selector are sold as a single SKU
        for index, sku in enumerate(skus or [item.external_id]):
            if skus:
                image = await page.query_selector(f'img[title="{sku}"]')
                if image is None:
                    continue
                if index > 0:
                    await image.click()
                    await page.wait_for_timeout(500)
            detail["variants"].append(await self._read_variant(page, sku))

            if index == 0:
                detail["feature_image_urls"] = [
                    src.split("_50x50")[0] for src in await attrs_of(page, SELECTORS["feature_images"], "src")
                ]
                detail["specifications"] = await self._read_specifications(page)
                if self.include_description:
                    detail["description"] = await text_of(page, SELECTORS["description"])
                if self.include_reviews:
                    detail["reviews"] = await self._read_reviews(page, set(skus))

        return detail

    async def _read_sizes(self, page) -> List[str]:
        for group in await page.query_selector_all(SELECTORS["sku_groups"]):
            title = (await text_of(group, SELECTORS["sku_title"])) or ""
            if re.search(r"size|length", title, re.IGNORECASE):
                return await texts_of(group, SELECTORS["sku_sizes"])
        return []

    async def _read_variant(self, page, sku: str) -> Dict[str, Any]:
        sale_price = _decimal(await text_of(page, SELECTORS["price_current"]))
        price = _decimal(await text_of(page, SELECTORS["price_original"])) or sale_price
        main_images = await attrs_of(page, SELECTORS["main_image"], "src")
        return {
            "sku": sku,
            "price": price,
            "sale_price": sale_price,
            "quantity": _int(await text_of(page, SELECTORS["stock"])),
            "star_point": _float(await text_of(page, SELECTORS["rating"])),
            "like_number": _int(await text_of(page, SELECTORS["likes"])),
            "number_of_purchased": _int(await text_of(page, SELECTORS["orders"])),
            "main_image_url": main_images[0] if main_images else None,
            "sizes": await self._read_sizes(page),
        }

    async def _read_specifications(self, page) -> Dict[str, str]:
        tab = await page.query_selector(SELECTORS["spec_tab"])
        if tab is not None:
            await tab.click()
        specifications = {}
        for text in await texts_of(page, SELECTORS["spec_items"]):
            key, sep, value = text.partition(":")
            if sep:
                specifications[key.strip().lower()] = value.strip().lower()
        return specifications

    async def _read_reviews(self, page, skus: Set[str]) -> List[Dict[str, Any]]:
        tab = await page.query_selector(SELECTORS["feedback_tab"])
        frame_element = await page.query_selector(SELECTORS["feedback_frame"])
        if tab is None or frame_element is None:
            logger.info("No reviews available")
            return []
        await tab.click()
        frame = await frame_element.content_frame()
        if frame is None:
            raise PageExtractionError("Review frame did not load", context={"url": page.url})

        reviews = []
        for review_page in range(self.max_review_pages):
            for element in await frame.query_selector_all(SELECTORS["feedback_item"]):
                comment = await text_of(element, SELECTORS["feedback_comment"])
                sku = await text_of(element, SELECTORS["feedback_sku"])
                if not comment or (skus and sku not in skus):
                    continue
                star = await element.query_selector(SELECTORS["feedback_star"])
                width = await star.get_attribute("style") if star is not None else None
                reviews.append({
                    "sku": sku or "",
                    "rating_width": width,
                    "comment": comment,
                    "date": await text_of(element, SELECTORS["feedback_date"]),
                    "image_urls": await attrs_of(element, SELECTORS["feedback_images"], "src"),
                })

            next_link = await frame.query_selector(SELECTORS["feedback_next"])
            if next_link is None:
                break
            await next_link.click()
            await page.wait_for_timeout(1000)

        logger.info(f"Read {len(reviews)} review(s)")
        return reviews

    def describe(self) -> Optional[dict]:
        snapshot = super().describe()
        snapshot.update({
            "store_id": self.store_id,
            "include_reviews": self.include_reviews,
            "include_description": self.include_description,
        })
        return snapshot
