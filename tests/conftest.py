"""Shared pytest fixtures for the Archtivy Matches tests."""
import asyncio
import math

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from archtivy_matches.config import ProviderConfig, Settings
from archtivy_matches.database import build_engine, init_models
from archtivy_matches.schemas.listing import ImageRef, TaxonomyFields
from archtivy_matches.services.listing_store import ListingNotFoundError, ListingStoreError

TEST_DIM = 4


def unit(*values):
    """Pad ``values`` to TEST_DIM and scale to unit length."""
    padded = list(values) + [0.0] * (TEST_DIM - len(values))
    norm = math.sqrt(sum(v * v for v in padded))
    return [v / norm for v in padded] if norm else padded


def vector_with_cosine(cos):
    """Unit vector whose cosine with unit(1) equals ``cos``."""
    return [cos, math.sqrt(1.0 - cos * cos), 0.0, 0.0]


class FakeListingStore:
    """In-memory ListingStore used across service tests."""

    def __init__(self):
        self.project_images = {}
        self.product_images = {}
        self.taxonomy = {}
        self.links = set()
        self.deleted = set()
        self.delays = {}
        self.fail_exists = False
        self.exists_calls = []

    def add_project(self, project_id, *image_ids):
        self.project_images[project_id] = [
            ImageRef(image_id=i, url=f"https://cdn.example.com/{i}.jpg") for i in image_ids
        ]

    def add_product(self, product_id, *image_ids, taxonomy=None):
        self.product_images[product_id] = [
            ImageRef(image_id=i, url=f"https://cdn.example.com/{i}.jpg") for i in image_ids
        ]
        if taxonomy is not None:
            self.taxonomy[product_id] = TaxonomyFields(**taxonomy)

    def link(self, project_id, product_id):
        self.links.add((project_id, product_id))

    async def list_project_images(self, project_id):
        if project_id not in self.project_images or project_id in self.deleted:
            raise ListingNotFoundError("project", project_id)
        return list(self.project_images[project_id])

    async def list_product_images(self, product_id):
        if product_id in self.delays:
            await asyncio.sleep(self.delays[product_id])
        if product_id not in self.product_images or product_id in self.deleted:
            raise ListingNotFoundError("product", product_id)
        return list(self.product_images[product_id])

    async def get_taxonomy_fields(self, product_id):
        return self.taxonomy.get(product_id)

    async def listing_exists(self, listing_type, ids):
        self.exists_calls.append((listing_type, list(ids)))
        if self.fail_exists:
            raise ListingStoreError("listing store unavailable")
        known = self.project_images if listing_type == "project" else self.product_images
        return {i for i in ids if i in known and i not in self.deleted}

    async def get_manual_link(self, project_id, product_id):
        return (project_id, product_id) in self.links

    async def list_linked_products(self, project_id):
        return sorted(p for (proj, p) in self.links if proj == project_id)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/matches.db",
        EMBEDDING_DIM=TEST_DIM,
        MATCH_MAX_CONCURRENCY=2,
        MATCH_TIMEOUT_SECONDS=10.0,
        PIPELINE_MAX_CONCURRENCY=2,
    )


@pytest.fixture
def provider_config():
    return ProviderConfig(embedding_dim=TEST_DIM, retry_base_seconds=0.0)


@pytest.fixture
def live_provider_config():
    return ProviderConfig(api_key="test-key", embedding_dim=TEST_DIM, retry_base_seconds=0.0)


@pytest.fixture
def listing_store():
    return FakeListingStore()


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
