"""
Archtivy Matches — Listing Store

The engine never owns listings.  Everything it needs to know about
projects and products (image URLs, taxonomy fields, existence, manual
project ↔ product links) comes through the ``ListingStore`` protocol.

``HttpListingStore`` implements the protocol against the host
application's internal JSON API:

    GET  /projects/{id}/images           -> {"images": [ImageRef, ...]}
    GET  /products/{id}/images           -> {"images": [ImageRef, ...]}
    GET  /products/{id}/taxonomy         -> TaxonomyFields   (404 -> None)
    POST /listings/exists                -> {"existing": [id, ...]}
    GET  /projects/{p}/links/{q}         -> {"linked": bool} (404 -> False)
    GET  /projects/{id}/links            -> {"product_ids": [id, ...]}
"""

from __future__ import annotations

from typing import Iterable, Protocol

import httpx
import structlog

from archtivy_matches.config import Settings
from archtivy_matches.schemas.listing import ImageRef, TaxonomyFields

logger = structlog.get_logger("archtivy.listing_store")

LISTING_TYPES: tuple[str, ...] = ("project", "product")


class ListingStoreError(Exception):
    """The listing store could not answer."""


class ListingNotFoundError(ListingStoreError):
    def __init__(self, listing_type: str, listing_id: str) -> None:
        super().__init__(f"{listing_type} {listing_id} not found")
        self.listing_type = listing_type
        self.listing_id = listing_id


def validate_listing_type(listing_type: str) -> str:
    if listing_type not in LISTING_TYPES:
        raise ValueError(f"listing_type must be one of {LISTING_TYPES}, got {listing_type!r}")
    return listing_type


class ListingStore(Protocol):
    async def list_project_images(self, project_id: str) -> list[ImageRef]: ...

    async def list_product_images(self, product_id: str) -> list[ImageRef]: ...

    async def get_taxonomy_fields(self, product_id: str) -> TaxonomyFields | None: ...

    async def listing_exists(self, listing_type: str, ids: Iterable[str]) -> set[str]: ...

    async def get_manual_link(self, project_id: str, product_id: str) -> bool: ...

    async def list_linked_products(self, project_id: str) -> list[str]: ...


class HttpListingStore:
    """``ListingStore`` over the host application's internal API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpListingStore":
        return cls(
            base_url=settings.LISTING_API_URL,
            token=settings.LISTING_API_TOKEN,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── transport helpers ─────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("listing_store_unreachable", path=path, error=str(exc))
            raise ListingStoreError(f"listing store request failed: {exc}") from exc
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ListingStoreError(
                f"listing store returned {response.status_code} for {response.request.url.path}"
            ) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise ListingStoreError("listing store returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ListingStoreError("listing store returned an unexpected payload")
        return payload

    async def _list_images(self, listing_type: str, listing_id: str) -> list[ImageRef]:
        response = await self._request("GET", f"/{listing_type}s/{listing_id}/images")
        if response.status_code == 404:
            raise ListingNotFoundError(listing_type, listing_id)
        payload = self._json(response)
        return [ImageRef.model_validate(item) for item in payload.get("images", [])]

    # ── ListingStore ──────────────────────────────────────────────────

    async def list_project_images(self, project_id: str) -> list[ImageRef]:
        return await self._list_images("project", project_id)

    async def list_product_images(self, product_id: str) -> list[ImageRef]:
        return await self._list_images("product", product_id)

    async def get_taxonomy_fields(self, product_id: str) -> TaxonomyFields | None:
        response = await self._request("GET", f"/products/{product_id}/taxonomy")
        if response.status_code == 404:
            return None
        return TaxonomyFields.model_validate(self._json(response))

    async def listing_exists(self, listing_type: str, ids: Iterable[str]) -> set[str]:
        validate_listing_type(listing_type)
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return set()
        response = await self._request(
            "POST", "/listings/exists", json={"type": listing_type, "ids": wanted}
        )
        existing = self._json(response).get("existing", [])
        return {str(i) for i in existing} & set(wanted)

    async def get_manual_link(self, project_id: str, product_id: str) -> bool:
        response = await self._request("GET", f"/projects/{project_id}/links/{product_id}")
        if response.status_code == 404:
            return False
        return bool(self._json(response).get("linked", False))

    async def list_linked_products(self, project_id: str) -> list[str]:
        response = await self._request("GET", f"/projects/{project_id}/links")
        if response.status_code == 404:
            return []
        return [str(i) for i in self._json(response).get("product_ids", [])]
