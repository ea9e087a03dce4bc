"""
Archtivy Matches — Main API Router

Aggregates the sub-routers so that ``archtivy_matches.main`` can mount the
whole API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from archtivy_matches.api import matches

router = APIRouter()

router.include_router(matches.router, prefix="/matches", tags=["Matches"])
