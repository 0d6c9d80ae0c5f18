"""
Paginated JSON API source.

This module fetches one page per call and classifies every failure so the
pipeline driver can decide between retry and abort:
- 401/403 -> AuthenticationError (fatal)
- 404 -> ResourceNotFoundError (fatal)
- 429 -> RateLimitError carrying Retry-After (retryable)
- 5xx, timeouts, transport errors -> NetworkError (retryable)
- non-JSON body or missing record list -> SchemaValidationError (fatal)

Retries themselves belong to the driver; a failed page is refetched from
the last persisted cursor.
"""

import httpx
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import urlencode
from pydantic import BaseModel, ValidationError as PydanticValidationError
from ingestion.base import SourceAdapter
from ingestion.state import FetchResult
from models.base import SourceType
from schemas.records import ApiProductRecord
from core.config import settings
from core.exceptions import (
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
    SchemaValidationError
)
import logging

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_14_3) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/73.0.3683.103 Safari/537.36"
)


def catalog_search_body(page: int, hits_per_page: int = 50, query: str = "") -> Dict[str, str]:
    """Search body for the catalog index: one page of distinct variants."""
    params = (
        "distinct=true&facetFilters=()&facets=%5B%22size%22%5D"
        f"&hitsPerPage={hits_per_page}&numericFilters=%5B%5D"
        f"&page={page}&{urlencode({'query': query})}&clickAnalytics=true"
    )
    return {"params": params}


class PaginatedAPISource(SourceAdapter):
    """
    Fetch a paginated JSON API one page at a time.

    Cursor semantics depend on paging:
    - "page": cursor is the page number, next cursor is page + 1
    - "offset": cursor is the record offset, next cursor is offset + len(page)

    Exhaustion (has_more=False) is signalled by an empty page, by reaching
    max_page pages, or by the payload's own nbPages count.

    Attributes:
        records_key: Key of the record list in the payload (None when the
            payload itself is the list)
        method: "GET" (page in query params) or "POST" (JSON body built by
            body_builder)
        record_model: Raw record variant every item must satisfy
    """

    def __init__(
        self,
        source_name: str,
        api_url: str,
        record_model: Type[BaseModel] = ApiProductRecord,
        records_key: Optional[str] = "hits",
        method: str = "POST",
        body_builder: Optional[Callable[[int], Dict[str, Any]]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        paging: str = "page",
        page_size: int = 50,
        max_page: Optional[int] = None,
        pacing_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(
            source_type=SourceType.API,
            source_name=source_name,
            pacing_seconds=settings.API_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        )
        if paging not in ("page", "offset"):
            raise ValueError(f"Unknown paging mode: {paging}")

        self.api_url = api_url
        self.record_model = record_model
        self.records_key = records_key
        self.method = method.upper()
        self.body_builder = body_builder or (lambda page: catalog_search_body(page, page_size))
        self.params = dict(params or {})
        self.headers = {"Accept": "application/json", "User-Agent": USER_AGENT, **(headers or {})}
        self.paging = paging
        self.checkpoint_type = paging
        self.page_size = page_size
        self.max_page = settings.API_MAX_PAGE if max_page is None else max_page
        self.timeout = timeout or settings.HTTP_TIMEOUT

        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _page_of(self, cursor: int) -> int:
        return cursor if self.paging == "page" else cursor // self.page_size

    def _context(self, cursor: int, **extra: Any) -> Dict[str, Any]:
        return {"api_url": self.api_url, "source_name": self.source_name, "cursor": cursor, **extra}

    async def _send(self, cursor: int, method: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(
                method, self.api_url, headers=self.headers, timeout=self.timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout for {self.api_url}",
                context=self._context(cursor, timeout=self.timeout),
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error for {self.api_url}",
                context=self._context(cursor),
                original_exception=e
            )

    async def _request(self, cursor: int) -> httpx.Response:
        page = self._page_of(cursor)
        if self.method == "GET":
            params = dict(self.params)
            if self.paging == "page":
                params["page"] = page
            else:
                params.update({"offset": cursor, "limit": self.page_size})
            return await self._send(cursor, "GET", params=params)

        return await self._send(cursor, "POST", params=self.params, json=self.body_builder(page))

    def _check_status(self, response: httpx.Response, cursor: int) -> None:
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.api_url}",
                context=self._context(cursor, status_code=status)
            )
        if status == 404:
            raise ResourceNotFoundError(
                f"Resource not found: {self.api_url}",
                context=self._context(cursor, status_code=404)
            )
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Rate limited by {self.source_name}, retry after {retry_after}s")
            raise RateLimitError(
                f"Rate limit exceeded for {self.api_url}",
                context=self._context(cursor, status_code=429),
                retry_after=retry_after
            )
        if status >= 500:
            raise NetworkError(
                f"Server error {status} from {self.api_url}",
                context=self._context(cursor, status_code=status, response_body=response.text[:500])
            )
        if status >= 400:
            raise SchemaValidationError(
                f"Unexpected status {status} from {self.api_url}",
                context=self._context(cursor, status_code=status, response_body=response.text[:500])
            )

    def _extract_items(self, response: httpx.Response, cursor: int) -> Tuple[List[Any], Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise SchemaValidationError(
                "Failed to parse JSON response",
                context=self._context(cursor, response_body=response.text[:500]),
                original_exception=e
            )

        items = payload
        if self.records_key is not None:
            if not isinstance(payload, dict) or self.records_key not in payload:
                raise SchemaValidationError(
                    f"Response has no '{self.records_key}' list",
                    context=self._context(cursor, field_name=self.records_key)
                )
            items = payload[self.records_key]

        if not isinstance(items, list):
            raise SchemaValidationError(
                "Record list is not an array",
                context=self._context(cursor, field_name=self.records_key)
            )
        return items, payload

    def _validate(self, items: List[Any]) -> Tuple[List[BaseModel], List[str]]:
        records, rejected = [], []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                rejected.append(f"item {index}: not an object")
                continue
            try:
                records.append(self.record_model(**{**item, "source_name": self.source_name}))
            except PydanticValidationError as e:
                fields = ",".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                rejected.append(f"item {index}: invalid fields {fields}")
        return records, rejected

    async def fetch(self, cursor: int) -> FetchResult:
        """
        Fetch the page at cursor.

        Returns:
            FetchResult; has_more is False on an empty page or when the
            last allowed page was reached
        """
        page = self._page_of(cursor)
        if self.max_page and page >= self.max_page:
            logger.info(f"{self.source_name}: page {page} is past the configured maximum {self.max_page}")
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        logger.info(f"Fetching page {page} from {self.source_name}")
        response = await self._request(cursor)
        self._check_status(response, cursor)
        items, payload = self._extract_items(response, cursor)

        if not items:
            logger.info(f"{self.source_name}: page {page} is empty, source exhausted")
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        records, rejected = self._validate(items)
        next_cursor = cursor + 1 if self.paging == "page" else cursor + len(items)

        has_more = not (self.max_page and page + 1 >= self.max_page)
        if has_more and isinstance(payload, dict) and isinstance(payload.get("nbPages"), int):
            has_more = page + 1 < payload["nbPages"]

        logger.debug(
            f"Fetched {len(records)} records from {self.source_name} page {page} "
            f"({len(rejected)} rejected, has_more={has_more})"
        )
        return FetchResult(records=records, has_more=has_more, next_cursor=next_cursor, rejected=rejected)

    async def lookup(self, **params: Any) -> List[Any]:
        """
        Single unpaged GET with extra query params, classified like a page
        fetch. Returns the raw item list without validating it.
        """
        response = await self._send(0, "GET", params={**self.params, **params})
        self._check_status(response, 0)
        items, _ = self._extract_items(response, 0)
        return items

    def describe(self) -> Optional[dict]:
        snapshot = super().describe()
        snapshot.update({"api_url": self.api_url, "paging": self.paging, "max_page": self.max_page})
        return snapshot


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def build_catalog_source(client: Optional[httpx.AsyncClient] = None, query: str = "") -> PaginatedAPISource:
    """Catalog search API wired from settings."""
    headers = {
        "Content-Type": "application/json",
        "Referer": settings.CATALOG_SOURCE_URL,
    }
    if settings.CATALOG_API_APP_ID:
        headers["X-Algolia-Application-Id"] = settings.CATALOG_API_APP_ID
    if settings.CATALOG_API_KEY:
        headers["X-Algolia-API-Key"] = settings.CATALOG_API_KEY

    return PaginatedAPISource(
        source_name="goat",
        api_url=settings.CATALOG_API_URL,
        record_model=ApiProductRecord,
        records_key="hits",
        method="POST",
        body_builder=lambda page: catalog_search_body(page, 50, query),
        headers=headers,
        client=client,
    )


def build_collections_source(client: Optional[httpx.AsyncClient] = None) -> PaginatedAPISource:
    """Recommendation collections endpoint listing the feature pictures of a product template."""
    headers = {"Referer": settings.CATALOG_SOURCE_URL}
    if settings.CATALOG_CSRF_TOKEN:
        headers["X-CSRF-Token"] = settings.CATALOG_CSRF_TOKEN

    return PaginatedAPISource(
        source_name="goat-images",
        api_url=settings.CATALOG_COLLECTIONS_URL,
        records_key=None,
        method="GET",
        headers=headers,
        client=client,
    )
