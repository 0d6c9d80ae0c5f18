# ============================================================================
# File: tests/integration/test_etl_pipeline.py
# ============================================================================

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from sqlalchemy import select, func

from ingestion import pipelines
from ingestion.extractors.api_extractor import build_collections_source
from ingestion.media import MediaStore
from ingestion.pipelines import PipelineOptions, build_pipeline, delivered_notifier
from ingestion.loaders.postgres_loader import WriteResult
from models.base import ETLStatus, ImageType, TrackingStatus
from models.catalog import Category, MasterProductType, Product, ProductImage
from models.checkpoint import ETLCheckpoint
from models.etl_run import ETLRun
from schemas.entities import TrackingEntity
from core.notifications import Notifier


async def product_count(db_session):
    return (await db_session.execute(select(func.count()).select_from(Product))).scalar_one()


@pytest.mark.asyncio
async def test_catalog_crawl_skips_stored_products(db_session, catalog_driver, api_hits):
    """
    Dedup Test:
    1. Three of the 50 records are already stored
    2. One offset page is crawled
    3. Only the 47 new records are written
    4. The committed cursor points past the page
    """

    # -------------------------------------------------------
    # STEP 1: Store three products up front
    # -------------------------------------------------------
    for hit in api_hits[:3]:
        db_session.add(Product(
            source_name="goat", external_id=str(hit["product_template_id"]),
            sku=hit["sku"], parent_sku=hit["sku"].split("-")[0], name=hit["name"],
        ))
    await db_session.commit()

    def handler(request):
        assert request.url.params["offset"] == "0"
        return httpx.Response(200, json=api_hits)

    driver = catalog_driver(
        handler,
        source_kwargs={"method": "GET", "records_key": None, "paging": "offset", "max_page": 1},
    )
    saves = AsyncMock(wraps=driver.checkpoints.save)
    driver.checkpoints.save = saves

    # -------------------------------------------------------
    # STEP 2: Run
    # -------------------------------------------------------
    stats = await driver.run()

    # -------------------------------------------------------
    # STEP 3: Validate counts
    # -------------------------------------------------------
    assert stats["status"] == "success"
    assert stats["records_fetched"] == 50
    assert stats["records_skipped"] == 3
    assert stats["records_loaded"] == 47
    assert stats["batches"] == 1
    assert stats["attempts"] == 1
    assert stats["cursor"] == 50
    assert await product_count(db_session) == 50

    # Brand became the category, once
    categories = (await db_session.execute(select(Category))).scalars().all()
    assert [c.name for c in categories] == ["nike"]

    # -------------------------------------------------------
    # STEP 4: Validate checkpoint and audit trail
    # -------------------------------------------------------
    saves.assert_awaited_once()
    assert saves.await_args.args[0].cursor == 50
    assert saves.await_args.kwargs["records_processed"] == 47

    run = (await db_session.execute(select(ETLRun))).scalar_one()
    assert run.status == ETLStatus.SUCCESS
    assert run.checkpoint_before == "0"
    assert run.checkpoint_after == "50"
    assert run.records_loaded == 47

    checkpoint = (await db_session.execute(select(ETLCheckpoint))).scalar_one()
    assert checkpoint.status == ETLStatus.SUCCESS
    # A finished crawl starts over next time
    assert checkpoint.checkpoint_value == "0"


@pytest.mark.asyncio
async def test_terminates_after_last_page(catalog_driver, hit_factory, no_sleep, requested_page):
    """Exactly nbPages fetches, paced between batches but not after the last"""
    requested = []

    def handler(request):
        page = requested_page(request)
        requested.append(page)
        return httpx.Response(200, json={"hits": [hit_factory(page * 10 + i) for i in range(10)], "nbPages": 3})

    driver = catalog_driver(handler, source_kwargs={"pacing_seconds": 1.5, "page_size": 10})
    stats = await driver.run()

    assert requested == [0, 1, 2]
    assert stats["records_loaded"] == 30
    assert stats["batches"] == 3
    assert no_sleep.delays == [1.5, 1.5]


@pytest.mark.asyncio
async def test_empty_final_page_writes_nothing(db_session, catalog_driver):
    def handler(request):
        return httpx.Response(200, json={"hits": []})

    driver = catalog_driver(handler)
    driver.writer.write = AsyncMock(wraps=driver.writer.write)
    driver.checkpoints.save = AsyncMock(wraps=driver.checkpoints.save)

    stats = await driver.run()

    assert stats["status"] == "success"
    assert stats["records_fetched"] == 0
    assert stats["cursor"] == 0
    driver.writer.write.assert_not_awaited()
    driver.checkpoints.save.assert_not_awaited()
    assert await product_count(db_session) == 0


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db_session, catalog_driver, hit_factory):
    """A forced second crawl updates rows in place"""

    def handler(request):
        return httpx.Response(200, json={"hits": [hit_factory(i) for i in range(5)], "nbPages": 1})

    first = await catalog_driver(handler).run()
    second = await catalog_driver(handler, dedup=None).run()

    assert first["records_loaded"] == 5
    assert second["records_loaded"] == 5
    assert await product_count(db_session) == 5


@pytest.mark.asyncio
async def test_success_notification(catalog_driver, hit_factory):
    notifier = AsyncMock(spec=Notifier)

    def handler(request):
        return httpx.Response(200, json={"hits": [hit_factory(1)], "nbPages": 1})

    await catalog_driver(handler, notifier=notifier).run()

    notifier.notify.assert_awaited_once()
    assert notifier.notify.await_args.kwargs["severity"] == "success"
    assert "loaded 1" in notifier.notify.await_args.kwargs["text"]


# ============================================================================
# Named pipelines
# ============================================================================

@pytest.mark.asyncio
async def test_fix_sizes_pipeline(session_factory, db_session, no_sleep):
    db_session.add_all([
        Product(source_name="goat", external_id="1", sku="A-1", parent_sku="A", name="Runner", size=["10", "9", "9"]),
        Product(source_name="goat", external_id="2", sku="B-1", parent_sku="B", name="Tee", size=["M", "S"]),
        Product(source_name="goat", external_id="3", sku="C-1", parent_sku="C", name="Cap"),
    ])
    await db_session.commit()

    pipeline = build_pipeline(
        "fix-sizes", PipelineOptions(), session_factory=session_factory,
        notifier=Notifier(webhook_url=""), sleep=no_sleep,
    )
    stats = await pipeline.run()

    assert stats["status"] == "success"
    assert stats["records_fetched"] == 2
    assert stats["records_loaded"] == 2

    db_session.expire_all()
    products = (await db_session.execute(select(Product).order_by(Product.id))).scalars().all()
    assert [p.size for p in products] == [["9", "10"], ["S", "M"], None]
    assert [p.size_kind for p in products] == ["shoe", "apparel", None]


@pytest.mark.asyncio
async def test_targeted_run_keeps_own_checkpoint(session_factory, db_session, no_sleep):
    db_session.add_all([
        MasterProductType(name="sneaker", keywords=["runner"]),
        Product(source_name="goat", external_id="1", sku="A-1", parent_sku="A", name="Air Runner"),
        Product(source_name="goat", external_id="2", sku="B-1", parent_sku="B", name="Road Runner"),
    ])
    await db_session.commit()
    target = (await db_session.execute(select(Product.id).where(Product.sku == "B-1"))).scalar_one()

    pipeline = build_pipeline(
        "product-types", PipelineOptions(target=str(target)), session_factory=session_factory,
        notifier=Notifier(webhook_url=""), sleep=no_sleep,
    )
    stats = await pipeline.run()

    assert stats["records_loaded"] == 1
    db_session.expire_all()
    types = (await db_session.execute(select(Product.sku, Product.product_type_id).order_by(Product.id))).all()
    assert types[0][1] is None
    assert types[1][1] is not None

    names = (await db_session.execute(select(ETLCheckpoint.source_name))).scalars().all()
    assert names == [f"product-types:{target}"]


def test_unknown_pipeline():
    with pytest.raises(ValueError):
        build_pipeline("nope", session_factory=object(), notifier=Notifier(webhook_url=""))


@pytest.mark.asyncio
async def test_delivered_orders_are_announced():
    notifier = AsyncMock(spec=Notifier)
    hook = delivered_notifier(notifier)

    await hook([
        TrackingEntity(tracking_code="LP001", order_id="A-1", status=TrackingStatus.DELIVERED, total_days=12),
        TrackingEntity(tracking_code="LP002", status=TrackingStatus.IN_TRANSIT),
    ], WriteResult())

    notifier.notify.assert_awaited_once()
    assert "A-1" in notifier.notify.await_args.kwargs["text"]
    assert "12 days" in notifier.notify.await_args.kwargs["text"]


class TestCatalogImages:
    """Test the feature image pass over stored catalog products"""

    @pytest.fixture
    def stored_catalog(self, db_session):
        async def seed():
            products = [
                Product(source_name="goat", external_id="1", sku="A-1", parent_sku="A", name="Runner"),
                Product(source_name="goat", external_id="2", sku="B-1", parent_sku="B", name="Tee"),
                Product(source_name="goat", external_id="3", sku="C-1", parent_sku="C", name="Cap"),
                Product(source_name="aliexpress", external_id="4", sku="D-1", parent_sku="D", name="Canvas"),
            ]
            db_session.add_all(products)
            await db_session.flush()
            db_session.add(ProductImage(
                product_id=products[2].id, image_type=ImageType.FEATURE,
                url="cap.jpg", source_url="https://img.test/cap.jpg",
            ))
            await db_session.commit()
            return {p.external_id: p.id for p in products}

        return seed

    @pytest_asyncio.fixture
    async def remote(self, monkeypatch, tmp_path):
        """Serves collections for template 1 and 3, 404 for the rest, and every image"""
        lookups = []

        def handler(request):
            if request.url.host == "img.test":
                return httpx.Response(200, content=b"jpeg")
            template = request.url.params["productTemplateId"]
            lookups.append(template)
            if template not in ("1", "3"):
                return httpx.Response(404)
            return httpx.Response(200, json=[
                {"web_picture": f"https://img.test/{template}/front.jpg?w=300"},
                {"web_picture": f"https://img.test/{template}/side.jpg"},
            ])

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        monkeypatch.setattr(pipelines, "build_collections_source", lambda: build_collections_source(client=client))
        monkeypatch.setattr(pipelines, "MediaStore", lambda: MediaStore(image_path=str(tmp_path), client=client))
        yield lookups
        await client.aclose()

    def _pipeline(self, session_factory, no_sleep, **options):
        return build_pipeline(
            "catalog-images", PipelineOptions(**options), session_factory=session_factory,
            notifier=Notifier(webhook_url=""), sleep=no_sleep,
        )

    async def _feature_images(self, db_session):
        db_session.expire_all()
        rows = await db_session.execute(
            select(ProductImage.product_id, ProductImage.source_url)
            .where(ProductImage.image_type == ImageType.FEATURE)
            .order_by(ProductImage.id)
        )
        return rows.all()

    @pytest.mark.asyncio
    async def test_attaches_feature_images(self, session_factory, db_session, no_sleep, stored_catalog, remote, tmp_path):
        ids = await stored_catalog()

        stats = await self._pipeline(session_factory, no_sleep).run()

        assert stats["status"] == "success"
        assert stats["records_fetched"] == 3
        assert stats["records_loaded"] == 1
        assert stats["records_skipped"] == 2  # one already has feature images, one template is unknown
        assert remote == ["1", "2"]
        assert await self._feature_images(db_session) == [
            (ids["3"], "https://img.test/cap.jpg"),
            (ids["1"], "https://img.test/1/front.jpg"),
            (ids["1"], "https://img.test/1/side.jpg"),
        ]
        assert (tmp_path / MediaStore.filename_for("https://img.test/1/front.jpg", "1")).read_bytes() == b"jpeg"

        names = (await db_session.execute(select(ETLCheckpoint.source_name))).scalars().all()
        assert names == ["goat-images"]

    @pytest.mark.asyncio
    async def test_force_and_target(self, session_factory, db_session, no_sleep, stored_catalog, remote):
        ids = await stored_catalog()

        stats = await self._pipeline(session_factory, no_sleep, force=True, target="3").run()

        assert stats["records_fetched"] == 1
        assert stats["records_loaded"] == 1
        assert remote == ["3"]
        images = await self._feature_images(db_session)
        assert [url for product_id, url in images if product_id == ids["3"]] == [
            "https://img.test/cap.jpg", "https://img.test/3/front.jpg", "https://img.test/3/side.jpg",
        ]

        names = (await db_session.execute(select(ETLCheckpoint.source_name))).scalars().all()
        assert names == ["goat-images:3"]
