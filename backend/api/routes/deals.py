"""
Deals endpoints - CRUD, pipeline stage transitions and CSV import/export.

Endpoints:
- GET    /api/deals                     - List deals
- GET    /api/deals/stages              - Describe every pipeline stage
- GET    /api/deals/stages/{stage}      - Describe one stage
- GET    /api/deals/export              - Download all deals as CSV
- POST   /api/deals/import              - Upsert deals from CSV text
- GET    /api/deals/{deal_id}           - Fetch one deal
- POST   /api/deals                     - Create a deal at Lead
- PATCH  /api/deals/{deal_id}           - Update fields editable at the deal's stage
- POST   /api/deals/{deal_id}/advance   - Move to the next stage in the flow
- POST   /api/deals/{deal_id}/close     - Close an Offered deal as Won/Lost/Dropped
- POST   /api/deals/{deal_id}/move      - Move to any stage (explicit override, e.g. revert)
- DELETE /api/deals/{deal_id}           - Delete a deal
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.auth_middleware import AuthContext, get_current_auth
from config import settings
from models.database import get_session
from models.deal import Deal
from services.deal_pipeline import (
    STAGE_ORDER,
    TERMINAL_STAGES,
    DealStage,
    can_close,
    describe_stage,
    editable_fields,
    missing_required_fields,
    next_stage,
    parse_stage,
)
from services.deals_csv import DealsCSVError, export_deals_csv, import_deals, parse_deals_csv

router = APIRouter()
logger = logging.getLogger(__name__)

ProgressStatus = Literal["Open", "Ongoing", "Done"]
# Matches the Numeric(15, 2) money columns
Money = Annotated[Decimal, Field(max_digits=15, decimal_places=2)]


class DealAttributes(BaseModel):
    """Writable deal attributes. Which ones apply depends on the stage."""
    model_config = ConfigDict(extra="forbid")

    deal_name: Optional[str] = Field(None, max_length=255)

    # Lead
    project_name: Optional[str] = Field(None, max_length=255)
    customer_name: Optional[str] = Field(None, max_length=255)
    lead_name: Optional[str] = Field(None, max_length=255)
    lead_owner: Optional[str] = Field(None, max_length=255)
    region: Optional[str] = Field(None, max_length=100)
    priority: Optional[int] = Field(None, ge=1, le=5)
    internal_comment: Optional[str] = None

    # Discussions
    customer_need: Optional[str] = None
    relationship_strength: Optional[Literal["Low", "Medium", "High"]] = None

    # Qualified
    budget: Optional[str] = Field(None, max_length=255)
    business_value: Optional[ProgressStatus] = None
    decision_maker_level: Optional[ProgressStatus] = None
    customer_challenges: Optional[ProgressStatus] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    expected_closing_date: Optional[date] = None
    is_recurring: Optional[Literal["Yes", "No", "Unclear"]] = None

    # RFQ
    total_contract_value: Optional[Money] = None
    currency_type: Optional[Literal["EUR", "USD", "INR"]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    project_duration: Optional[int] = Field(None, ge=0, le=2**31 - 1)
    action_items: Optional[str] = None
    rfq_received_date: Optional[date] = None
    proposal_due_date: Optional[date] = None
    rfq_status: Optional[Literal["Drafted", "Submitted", "Rejected", "Accepted"]] = None

    # Offered
    current_status: Optional[str] = None
    closing: Optional[str] = None

    # Won
    won_reason: Optional[str] = None
    quarterly_revenue_q1: Optional[Money] = None
    quarterly_revenue_q2: Optional[Money] = None
    quarterly_revenue_q3: Optional[Money] = None
    quarterly_revenue_q4: Optional[Money] = None
    total_revenue: Optional[Money] = None
    signed_contract_date: Optional[date] = None
    implementation_start_date: Optional[date] = None
    handoff_status: Optional[Literal["Not Started", "In Progress", "Complete"]] = None

    # Lost
    lost_reason: Optional[str] = None
    need_improvement: Optional[str] = None

    # Dropped
    drop_reason: Optional[str] = None


class StageResponse(BaseModel):
    """Response model for a pipeline stage."""
    stage: str
    index: int
    is_terminal: bool
    next_stage: Optional[str]
    terminal_options: list[str]
    visible_fields: list[str]
    editable_fields: list[str]
    required_fields: list[str]


class StageListResponse(BaseModel):
    stages: list[StageResponse]


class DealResponse(BaseModel):
    """A deal plus what its current stage allows."""
    deal: dict[str, Any]
    stage: Optional[StageResponse]  # None when the stored stage is not recognised
    missing_required_fields: list[str]


class DealListResponse(BaseModel):
    """Response model for listing deals."""
    deals: list[dict[str, Any]]
    total: int


class CloseRequest(BaseModel):
    stage: DealStage


class MoveRequest(BaseModel):
    stage: DealStage


class ImportRequest(BaseModel):
    csv_text: str


class ImportResponse(BaseModel):
    created: int
    updated: int
    skipped: int
    error_count: int
    errors: list[str]


def _parse_deal_id(deal_id: str) -> UUID:
    try:
        return UUID(deal_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid deal ID")


async def _load_deal(session: AsyncSession, deal_uuid: UUID) -> Deal:
    deal: Optional[Deal] = await session.get(Deal, deal_uuid)
    if deal is None:
        raise HTTPException(status_code=404, detail="Deal not found")
    return deal


def _stage_response(stage: DealStage) -> StageResponse:
    return StageResponse(**describe_stage(stage))


def _deal_response(deal: Deal) -> DealResponse:
    stage = parse_stage(deal.stage)
    return DealResponse(
        deal=deal.to_dict(),
        stage=_stage_response(stage) if stage else None,
        missing_required_fields=missing_required_fields(deal.field_values(), stage) if stage else [],
    )


def _reject_non_editable(values: dict[str, Any], stage: DealStage) -> None:
    allowed = set(editable_fields(stage)) | {"deal_name"}
    rejected = sorted(name for name in values if name not in allowed)
    if rejected:
        raise HTTPException(
            status_code=422,
            detail={
                "message": f"Fields are not editable at stage {stage.value}",
                "fields": rejected,
            },
        )


def _require_complete(deal: Deal, stage: DealStage, force: bool) -> None:
    missing = missing_required_fields(deal.field_values(), stage)
    if missing and not force:
        raise HTTPException(
            status_code=422,
            detail={
                "message": f"Required fields for stage {stage.value} are missing",
                "missing_fields": missing,
            },
        )


def _set_stage(deal: Deal, stage: DealStage, auth: AuthContext) -> None:
    deal.stage = stage.value
    deal.modified_by = auth.user_id
    deal.modified_at = datetime.utcnow()


@router.get("", response_model=DealListResponse)
async def list_deals(
    stage: Optional[str] = Query(None, description="Only deals at this stage"),
    open_only: bool = Query(False, description="Exclude Won/Lost/Dropped deals"),
    limit: int = Query(100, ge=1, le=500, description="Max results"),
    auth: AuthContext = Depends(get_current_auth),
) -> DealListResponse:
    """List deals, most recently modified first."""
    query = select(Deal).order_by(Deal.modified_at.desc().nullslast()).limit(limit)

    if stage:
        resolved = parse_stage(stage)
        if resolved is None:
            raise HTTPException(status_code=400, detail=f"Unknown stage: {stage}")
        query = query.where(Deal.stage == resolved.value)
    if open_only:
        query = query.where(Deal.stage.notin_([s.value for s in TERMINAL_STAGES]))

    async with get_session(user_id=auth.user_id_str) as session:
        result = await session.execute(query)
        deals = result.scalars().all()

    logger.info(
        "Fetched deals",
        extra={"user_id": auth.user_id_str, "stage": stage, "open_only": open_only, "deal_count": len(deals)},
    )
    return DealListResponse(deals=[d.to_dict() for d in deals], total=len(deals))


@router.get("/stages", response_model=StageListResponse)
async def list_stages() -> StageListResponse:
    """Describe every stage of the pipeline in order."""
    return StageListResponse(stages=[_stage_response(s) for s in STAGE_ORDER])


@router.get("/stages/{stage}", response_model=StageResponse)
async def get_stage(stage: str) -> StageResponse:
    resolved = parse_stage(stage)
    if resolved is None:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
    return _stage_response(resolved)


@router.get("/export")
async def export_deals(auth: AuthContext = Depends(get_current_auth)) -> Response:
    """Download every deal visible to the caller as CSV."""
    async with get_session(user_id=auth.user_id_str) as session:
        result = await session.execute(select(Deal).order_by(Deal.modified_at.desc().nullslast()))
        deals = result.scalars().all()

    try:
        content = export_deals_csv(d.field_values() for d in deals)
    except DealsCSVError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{settings.DEALS_EXPORT_FILENAME}"'},
    )


@router.post("/import", response_model=ImportResponse)
async def import_deals_csv(
    request: ImportRequest,
    auth: AuthContext = Depends(get_current_auth),
) -> ImportResponse:
    """Create or update deals from CSV text, matching on deal name."""
    try:
        rows = parse_deals_csv(request.csv_text, max_rows=settings.DEALS_IMPORT_MAX_ROWS)
    except DealsCSVError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Importing deals CSV", extra={"user_id": auth.user_id_str, "row_count": len(rows)})

    async with get_session(user_id=auth.user_id_str) as session:
        outcome = await import_deals(session, rows, auth.user_id)
        await session.commit()

    return ImportResponse(**outcome.to_dict())


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(deal_id: str, auth: AuthContext = Depends(get_current_auth)) -> DealResponse:
    deal_uuid = _parse_deal_id(deal_id)
    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        return _deal_response(deal)


@router.post("", response_model=DealResponse, status_code=201)
async def create_deal(
    request: DealAttributes,
    auth: AuthContext = Depends(get_current_auth),
) -> DealResponse:
    """Create a deal. New deals always start at Lead."""
    values = request.model_dump(exclude_unset=True)
    _reject_non_editable(values, DealStage.LEAD)

    deal_name = (values.pop("deal_name", None) or "").strip()
    if not deal_name:
        deal_name = (values.get("project_name") or "").strip() or "Untitled Deal"

    now = datetime.utcnow()
    deal = Deal(
        id=uuid4(),
        deal_name=deal_name,
        stage=DealStage.LEAD.value,
        created_by=auth.user_id,
        modified_by=auth.user_id,
        created_at=now,
        modified_at=now,
        **values,
    )

    async with get_session(user_id=auth.user_id_str) as session:
        session.add(deal)
        await session.commit()

    logger.info("Created deal", extra={"deal_id": str(deal.id), "user_id": auth.user_id_str})
    return _deal_response(deal)


@router.patch("/{deal_id}", response_model=DealResponse)
async def update_deal(
    deal_id: str,
    request: DealAttributes,
    auth: AuthContext = Depends(get_current_auth),
) -> DealResponse:
    """Update attributes that are editable at the deal's current stage."""
    deal_uuid = _parse_deal_id(deal_id)
    values = request.model_dump(exclude_unset=True)

    if "deal_name" in values and not (values["deal_name"] or "").strip():
        raise HTTPException(status_code=422, detail="deal_name cannot be empty")

    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        stage = parse_stage(deal.stage)
        if stage is None:
            raise HTTPException(status_code=409, detail=f"Deal has an unknown stage: {deal.stage}")
        _reject_non_editable(values, stage)

        for name, value in values.items():
            setattr(deal, name, value)
        deal.modified_by = auth.user_id
        deal.modified_at = datetime.utcnow()
        await session.commit()

        logger.info(
            "Updated deal",
            extra={"deal_id": deal_id, "user_id": auth.user_id_str, "fields": sorted(values)},
        )
        return _deal_response(deal)


@router.post("/{deal_id}/advance", response_model=DealResponse)
async def advance_deal(
    deal_id: str,
    force: bool = Query(False, description="Advance even if required fields are missing"),
    auth: AuthContext = Depends(get_current_auth),
) -> DealResponse:
    """Move the deal one step forward along Lead -> ... -> Offered."""
    deal_uuid = _parse_deal_id(deal_id)

    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        current = parse_stage(deal.stage)
        if current is None:
            raise HTTPException(status_code=409, detail=f"Deal has an unknown stage: {deal.stage}")

        target = next_stage(current)
        if target is None:
            if can_close(current):
                detail = "Deal is at Offered; close it as Won, Lost or Dropped"
            else:
                detail = f"Deal is already closed as {current.value}"
            raise HTTPException(status_code=409, detail=detail)

        _require_complete(deal, current, force)
        _set_stage(deal, target, auth)
        await session.commit()

        logger.info(
            "Advanced deal",
            extra={"deal_id": deal_id, "from_stage": current.value, "to_stage": target.value, "forced": force},
        )
        return _deal_response(deal)


@router.post("/{deal_id}/close", response_model=DealResponse)
async def close_deal(
    deal_id: str,
    request: CloseRequest,
    force: bool = Query(False, description="Close even if Offered fields are missing"),
    auth: AuthContext = Depends(get_current_auth),
) -> DealResponse:
    """Close an Offered deal into one of the terminal stages."""
    if request.stage not in TERMINAL_STAGES:
        raise HTTPException(
            status_code=422,
            detail=f"Deals can only be closed as {', '.join(s.value for s in TERMINAL_STAGES)}",
        )
    deal_uuid = _parse_deal_id(deal_id)

    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        current = parse_stage(deal.stage)
        if current is None or not can_close(current):
            raise HTTPException(status_code=409, detail="Only deals at Offered can be closed")

        _require_complete(deal, current, force)
        _set_stage(deal, request.stage, auth)
        await session.commit()

        logger.info(
            "Closed deal",
            extra={"deal_id": deal_id, "outcome": request.stage.value, "forced": force},
        )
        return _deal_response(deal)


@router.post("/{deal_id}/move", response_model=DealResponse)
async def move_deal(
    deal_id: str,
    request: MoveRequest,
    auth: AuthContext = Depends(get_current_auth),
) -> DealResponse:
    """Put the deal at an arbitrary stage, e.g. to revert a mistaken transition."""
    deal_uuid = _parse_deal_id(deal_id)

    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        previous = deal.stage
        if previous == request.stage.value:
            raise HTTPException(status_code=409, detail=f"Deal is already at {previous}")

        _set_stage(deal, request.stage, auth)
        await session.commit()

        logger.warning(
            "Moved deal outside the forward flow",
            extra={
                "deal_id": deal_id,
                "from_stage": previous,
                "to_stage": request.stage.value,
                "user_id": auth.user_id_str,
            },
        )
        return _deal_response(deal)


@router.delete("/{deal_id}", status_code=204)
async def delete_deal(deal_id: str, auth: AuthContext = Depends(get_current_auth)) -> Response:
    deal_uuid = _parse_deal_id(deal_id)

    async with get_session(user_id=auth.user_id_str) as session:
        deal = await _load_deal(session, deal_uuid)
        await session.delete(deal)
        await session.commit()

    logger.info("Deleted deal", extra={"deal_id": deal_id, "user_id": auth.user_id_str})
    return Response(status_code=204)
