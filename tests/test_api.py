"""Route tests for the matches API via httpx.ASGITransport."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from archtivy_matches.database import get_db
from archtivy_matches.main import app
from archtivy_matches.schemas.match import (
    ComputeMatchesResult,
    MatchPage,
    MatchRow,
    ProcessImageResult,
    RebuildMatchesResult,
)

_ROW = MatchRow(
    project_id="proj-1",
    product_id="prod-a",
    score=82,
    tier="strong",
    reasons=[{"type": "embedding", "score": 82, "matches": ["p1:qa"]}],
    evidence_image_ids=["p1", "qa"],
    updated_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
)


async def _fake_db():
    yield MagicMock()


@pytest_asyncio.fixture
async def client():
    app.dependency_overrides[get_db] = _fake_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def query_service():
    service = MagicMock()
    service.get_project_matches = AsyncMock(return_value=MatchPage(data=[_ROW], total=1))
    service.get_product_matched_projects = AsyncMock(return_value=MatchPage(data=[], total=0))
    service.get_image_matches = AsyncMock(return_value=[_ROW])
    with patch("archtivy_matches.api.matches._get_query_service", return_value=service):
        yield service


class TestHealth:

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestReadRoutes:

    @pytest.mark.asyncio
    async def test_project_matches(self, client, query_service):
        response = await client.get("/api/v1/matches/projects/proj-1", params={"tier": "verified", "limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["data"][0]["product_id"] == "prod-a"
        _, kwargs = query_service.get_project_matches.call_args
        assert kwargs == {"tier": "verified", "limit": 10, "offset": 0, "min_score": 40}

    @pytest.mark.asyncio
    async def test_product_matches_empty(self, client, query_service):
        response = await client.get("/api/v1/matches/products/prod-z")
        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0}

    @pytest.mark.asyncio
    async def test_image_matches(self, client, query_service):
        response = await client.get("/api/v1/matches/images/qa", params={"min_score": 0})
        assert response.status_code == 200
        assert [r["project_id"] for r in response.json()] == ["proj-1"]

    @pytest.mark.asyncio
    async def test_invalid_tier_rejected(self, client, query_service):
        response = await client.get("/api/v1/matches/projects/proj-1", params={"tier": "strong"})
        assert response.status_code == 422
        query_service.get_project_matches.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_negative_offset_rejected(self, client, query_service):
        response = await client.get("/api/v1/matches/projects/proj-1", params={"offset": -1})
        assert response.status_code == 422


class TestWriteRoutes:

    @pytest.mark.asyncio
    async def test_compute(self, client):
        service = MagicMock()
        service.compute_and_upsert_matches = AsyncMock(
            return_value=ComputeMatchesResult(upserted=1, errors=["prod-b: product prod-b not found"])
        )
        with patch("archtivy_matches.api.matches._get_matching_service", return_value=service):
            response = await client.post(
                "/api/v1/matches/projects/proj-1/compute",
                json={"product_ids": ["prod-a", "prod-b"]},
            )

        assert response.status_code == 200
        assert response.json()["upserted"] == 1
        service.compute_and_upsert_matches.assert_awaited_once_with(
            "proj-1", ["prod-a", "prod-b"], timeout=None
        )

    @pytest.mark.asyncio
    async def test_compute_bad_arguments(self, client):
        service = MagicMock()
        service.compute_and_upsert_matches = AsyncMock(side_effect=ValueError("timeout must be positive"))
        with patch("archtivy_matches.api.matches._get_matching_service", return_value=service):
            response = await client.post(
                "/api/v1/matches/projects/proj-1/compute",
                json={"product_ids": ["prod-a"], "timeout_seconds": 0},
            )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_process_image(self, client):
        pipeline = MagicMock()
        pipeline.process_image = AsyncMock(return_value=ProcessImageResult(ok=True, warnings=["attributes: x"]))
        with patch("archtivy_matches.api.matches._get_image_pipeline", return_value=pipeline):
            response = await client.post(
                "/api/v1/matches/images",
                json={"image_id": "p1", "source": "project", "image_url": "https://cdn.example.com/p1.jpg"},
            )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "error": None, "warnings": ["attributes: x"]}

    @pytest.mark.asyncio
    async def test_process_image_bad_source(self, client):
        response = await client.post(
            "/api/v1/matches/images",
            json={"image_id": "p1", "source": "profile", "image_url": "https://cdn.example.com/p1.jpg"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_compute_without_candidates_discovers(self, client):
        service = MagicMock()
        service.compute_and_upsert_matches = AsyncMock(return_value=ComputeMatchesResult(upserted=3, errors=[]))
        with patch("archtivy_matches.api.matches._get_matching_service", return_value=service):
            response = await client.post("/api/v1/matches/projects/proj-1/compute", json={})

        assert response.status_code == 200
        service.compute_and_upsert_matches.assert_awaited_once_with("proj-1", None, timeout=None)

    @pytest.mark.asyncio
    async def test_rebuild(self, client):
        service = MagicMock()
        service.compute_all_matches = AsyncMock(
            return_value=RebuildMatchesResult(projects_processed=2, upserted=5, errors=[])
        )
        with patch("archtivy_matches.api.matches._get_matching_service", return_value=service):
            response = await client.post(
                "/api/v1/matches/rebuild",
                json={"project_ids": ["proj-1", "proj-2"], "timeout_seconds": 30},
            )

        assert response.status_code == 200
        assert response.json() == {"projects_processed": 2, "upserted": 5, "errors": []}
        service.compute_all_matches.assert_awaited_once_with(["proj-1", "proj-2"], timeout=30.0)

    @pytest.mark.asyncio
    async def test_rebuild_bad_arguments(self, client):
        service = MagicMock()
        service.compute_all_matches = AsyncMock(side_effect=ValueError("timeout must be positive"))
        with patch("archtivy_matches.api.matches._get_matching_service", return_value=service):
            response = await client.post("/api/v1/matches/rebuild", json={"timeout_seconds": -1})
        assert response.status_code == 400
