"""
Access-controlled result lists.

- POST /api/access/results: truncate an already-fetched product list to what
  the caller may see for a query. This is the enforcement point; client-side
  checks are advisory.
"""
from typing import Any, List, Optional
from fastapi import APIRouter, Depends

from paygate.api.schemas import CamelModel
from paygate.core.auth import Identity, get_optional_identity
from paygate.features.entitlements.service import filter_results, get_snapshot


router = APIRouter(prefix="/api/access", tags=["access"])


class ResultsRequest(CamelModel):
    query: Optional[str] = None
    items: List[Any] = []


class ResultsResponse(CamelModel):
    visible_items: List[Any]
    total_count: int
    show_upgrade_banner: bool
    max_visible_results: Optional[int] = None  # null = unbounded
    has_active_subscription: bool
    has_search_unlock: bool
    in_grace_period: bool
    stale: bool = False


@router.post("/results", response_model=ResultsResponse)
def access_results(body: ResultsRequest, identity: Optional[Identity] = Depends(get_optional_identity)):
    snapshot = get_snapshot(identity)
    result = filter_results(snapshot, body.query, body.items)
    return ResultsResponse(
        visible_items=result.visible_items,
        total_count=result.total_count,
        show_upgrade_banner=result.show_upgrade_banner,
        max_visible_results=result.max_visible_results,
        has_active_subscription=result.has_active_subscription,
        has_search_unlock=result.has_search_unlock,
        in_grace_period=result.in_grace_period,
        stale=result.stale,
    )
