"""
Aggregate API Endpoints

Registration, status, refresh triggers and row queries for materialized
aggregates. Rows are always served from the materialized store; nothing
here reads the warehouse directly.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel
import structlog

from src.aggregation.coordinator import RefreshMode
from src.aggregation.service import AggregationService, get_service
from src.aggregation.specs import AggregateSpec
from src.config import get_settings
from src.warehouse.schema import Attribute, AttributeType

settings = get_settings()
router = APIRouter()
logger = structlog.get_logger(__name__)


class AggregateStatus(BaseModel):
    """Refresh state of one aggregate"""
    spec_id: str
    record: Dict[str, Any]
    refreshing: bool
    artifact: Optional[Dict[str, Any]]
    staleness_seconds: Optional[float]


class AggregateDetail(BaseModel):
    """Definition plus refresh state"""
    spec: AggregateSpec
    status: AggregateStatus


class AggregateRows(BaseModel):
    """Rows of the current artifact"""
    spec_id: str
    version: int
    computed_at: datetime
    stale: bool
    count: int
    rows: List[Dict[str, Any]]


class RefreshResponse(BaseModel):
    """Outcome of a refresh request"""
    spec_id: str
    status: str
    mode: str
    version: Optional[int] = None
    coalesced: bool = False
    groups: Optional[int] = None
    duration_seconds: Optional[float] = None


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        # exact decimal text, not a float
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _parse_value(attribute: Attribute, raw: str) -> Any:
    if attribute.type is AttributeType.INTEGER:
        return int(raw)
    if attribute.type is AttributeType.FLOAT:
        return float(raw)
    if attribute.type is AttributeType.BOOLEAN:
        return raw.lower() in ("true", "1", "yes")
    return attribute.from_json(raw)


def parse_filters(
    service: AggregationService,
    spec: AggregateSpec,
    filters: List[str],
    nulls: Sequence[str] = (),
) -> Dict[str, Any]:
    """
    Turn `dimension:value` query parameters into an equality filter.

    Values are converted to the dimension's type and match literally. The
    dimensions named in `nulls` must be None: unknown values, and
    rolled-up dimensions of subtotal rows.
    """
    attributes = {
        name: service.schema.resolve(path).attribute
        for name, path in zip(spec.dimension_names, spec.dimensions)
    }
    parsed = {}
    for item in filters:
        name, sep, raw = item.partition(":")
        if not sep:
            raise HTTPException(status_code=400, detail=f"Filter '{item}' is not in dimension:value form")
        attribute = attributes.get(name)
        if attribute is None:
            raise HTTPException(status_code=400, detail=f"'{name}' is not a dimension of {spec.spec_id}")
        try:
            parsed[name] = _parse_value(attribute, raw)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"'{raw}' is not a valid {attribute.type.value} value for '{name}'",
            )

    for name in nulls:
        if name not in attributes:
            raise HTTPException(status_code=400, detail=f"'{name}' is not a dimension of {spec.spec_id}")
        if name in parsed:
            raise HTTPException(status_code=400, detail=f"'{name}' is filtered on a value and on null")
        parsed[name] = None
    return parsed


@router.get("", response_model=List[AggregateStatus])
async def list_aggregates(
    service: AggregationService = Depends(get_service),
) -> List[AggregateStatus]:
    """All registered aggregates with their refresh status."""
    return [AggregateStatus(**status) for status in service.statuses()]


@router.post("", response_model=AggregateDetail, status_code=201)
async def register_aggregate(
    spec: AggregateSpec,
    service: AggregationService = Depends(get_service),
) -> AggregateDetail:
    """Register a new aggregate. It is served after its first refresh."""
    spec_id = await service.register(spec)
    logger.info("Aggregate registered via API", spec_id=spec_id)
    return AggregateDetail(spec=service.registry.get(spec_id), status=AggregateStatus(**service.status(spec_id)))


@router.get("/{spec_id}", response_model=AggregateDetail)
async def get_aggregate(
    spec_id: str,
    service: AggregationService = Depends(get_service),
) -> AggregateDetail:
    """Aggregate definition and refresh status."""
    spec = service.registry.get(spec_id)
    return AggregateDetail(spec=spec, status=AggregateStatus(**service.status(spec_id)))


@router.delete("/{spec_id}", status_code=204)
async def delete_aggregate(
    spec_id: str,
    service: AggregationService = Depends(get_service),
) -> Response:
    """Unregister an aggregate and drop its artifact."""
    await service.remove(spec_id)
    return Response(status_code=204)


@router.get("/{spec_id}/rows", response_model=AggregateRows)
async def get_aggregate_rows(
    spec_id: str,
    filter: List[str] = Query(default=[], description="dimension:value, repeatable"),
    null: List[str] = Query(default=[], description="Dimension that must be null, repeatable"),
    subtotals: bool = Query(True, description="Include subtotal and grand total rows"),
    order_by: List[str] = Query(default=[], description="Column, '-' prefix for descending"),
    limit: Optional[int] = Query(None, ge=1, le=10000),
    service: AggregationService = Depends(get_service),
) -> AggregateRows:
    """
    Rows of the current artifact.

    Served without waiting on a running refresh; check `stale` and the
    status endpoint for freshness.
    """
    spec = service.registry.get(spec_id)
    artifact = service.store.get(spec_id)
    try:
        rows = service.store.query(
            spec_id,
            filter=parse_filters(service, spec, filter, null) or None,
            order_by=order_by or None,
            subtotals=subtotals,
            limit=limit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return AggregateRows(
        spec_id=spec_id,
        version=artifact.version,
        computed_at=artifact.computed_at,
        stale=artifact.stale,
        count=len(rows),
        rows=[{key: _json_value(value) for key, value in row.items()} for row in rows],
    )


@router.get("/{spec_id}/status", response_model=AggregateStatus)
async def get_aggregate_status(
    spec_id: str,
    service: AggregationService = Depends(get_service),
) -> AggregateStatus:
    """Refresh record, artifact summary and staleness."""
    return AggregateStatus(**service.status(spec_id))


@router.post("/{spec_id}/refresh", response_model=RefreshResponse)
async def refresh_aggregate(
    spec_id: str,
    response: Response,
    mode: Optional[RefreshMode] = None,
    wait: bool = True,
    service: AggregationService = Depends(get_service),
) -> RefreshResponse:
    """
    Trigger a refresh.

    With wait=false the refresh is scheduled and 202 is returned. A request
    for an aggregate that is already refreshing is coalesced into the
    running refresh.
    """
    mode = mode or service.default_mode
    timeout = settings.aggregation.refresh_timeout_seconds
    try:
        outcome = await asyncio.wait_for(
            service.coordinator.refresh(spec_id, mode=mode, wait=wait),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        # The refresh keeps running; only this request stops waiting
        response.status_code = 202
        return RefreshResponse(spec_id=spec_id, status="running", mode=RefreshMode(mode).value)

    if outcome.status in ("scheduled", "coalesced"):
        response.status_code = 202
    return RefreshResponse(
        spec_id=outcome.spec_id,
        status=outcome.status,
        mode=outcome.mode.value,
        version=outcome.version,
        coalesced=outcome.coalesced,
        groups=outcome.groups,
        duration_seconds=outcome.duration_seconds,
    )
