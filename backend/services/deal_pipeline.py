"""
Deal pipeline model - stages, per-stage fields and stage transitions.

The pipeline is linear up to Offered, then branches into one of three
terminal outcomes:

    Lead -> Discussions -> Qualified -> RFQ -> Offered -> {Won, Lost, Dropped}

Fields are introduced stage by stage and stay visible for every later stage.
Terminal stages see everything through Offered plus their own closing fields.

All functions here are pure. Unknown stage values (e.g. corrupted rows) resolve
to empty results so callers can treat them as "nothing known".
"""
from __future__ import annotations

from enum import StrEnum
from typing import Any, Mapping, Optional


class DealStage(StrEnum):
    LEAD = "Lead"
    DISCUSSIONS = "Discussions"
    QUALIFIED = "Qualified"
    RFQ = "RFQ"
    OFFERED = "Offered"
    WON = "Won"
    LOST = "Lost"
    DROPPED = "Dropped"


STAGE_ORDER: tuple[DealStage, ...] = (
    DealStage.LEAD,
    DealStage.DISCUSSIONS,
    DealStage.QUALIFIED,
    DealStage.RFQ,
    DealStage.OFFERED,
    DealStage.WON,
    DealStage.LOST,
    DealStage.DROPPED,
)

ACTIVE_STAGES: tuple[DealStage, ...] = STAGE_ORDER[:5]
TERMINAL_STAGES: tuple[DealStage, ...] = (DealStage.WON, DealStage.LOST, DealStage.DROPPED)

COMMENT_FIELD: str = "internal_comment"

# Fields introduced at each active stage
STAGE_FIELDS: dict[DealStage, tuple[str, ...]] = {
    DealStage.LEAD: (
        "project_name", "lead_name", "customer_name", "region", "lead_owner", "priority",
    ),
    DealStage.DISCUSSIONS: (
        "customer_need", "relationship_strength", "internal_comment",
    ),
    DealStage.QUALIFIED: (
        "budget", "business_value", "decision_maker_level", "customer_challenges",
        "probability", "expected_closing_date", "is_recurring",
    ),
    DealStage.RFQ: (
        "total_contract_value", "currency_type", "start_date", "end_date",
        "project_duration", "rfq_received_date", "proposal_due_date", "rfq_status",
        "action_items",
    ),
    # business_value / decision_maker_level are revisited here; already visible since Qualified
    DealStage.OFFERED: (
        "business_value", "decision_maker_level", "current_status", "closing",
    ),
}

CLOSING_FIELDS: dict[DealStage, tuple[str, ...]] = {
    DealStage.WON: (
        "won_reason", "quarterly_revenue_q1", "quarterly_revenue_q2",
        "quarterly_revenue_q3", "quarterly_revenue_q4", "total_revenue",
        "signed_contract_date", "implementation_start_date", "handoff_status",
    ),
    DealStage.LOST: ("lost_reason", "need_improvement"),
    DealStage.DROPPED: ("drop_reason",),
}

REQUIRED_FIELDS: dict[DealStage, tuple[str, ...]] = {
    DealStage.LEAD: (
        "project_name", "lead_name", "customer_name", "region", "lead_owner", "priority",
    ),
    DealStage.DISCUSSIONS: ("customer_need", "relationship_strength", "internal_comment"),
    DealStage.QUALIFIED: (
        "customer_challenges", "budget", "probability", "expected_closing_date",
        "is_recurring", "internal_comment",
    ),
    DealStage.RFQ: (
        "total_contract_value", "currency_type", "start_date", "end_date",
        "rfq_received_date", "proposal_due_date", "rfq_status", "action_items",
        "internal_comment",
    ),
    DealStage.OFFERED: ("business_value", "decision_maker_level", "current_status", "closing"),
    DealStage.WON: ("won_reason", "start_date", "total_revenue", "signed_contract_date", "handoff_status"),
    DealStage.LOST: ("lost_reason", "need_improvement"),
    DealStage.DROPPED: ("drop_reason",),
}

_NEXT_STAGE: dict[DealStage, Optional[DealStage]] = {
    DealStage.LEAD: DealStage.DISCUSSIONS,
    DealStage.DISCUSSIONS: DealStage.QUALIFIED,
    DealStage.QUALIFIED: DealStage.RFQ,
    DealStage.RFQ: DealStage.OFFERED,
    # Offered branches; the caller picks one of TERMINAL_STAGES
    DealStage.OFFERED: None,
    DealStage.WON: None,
    DealStage.LOST: None,
    DealStage.DROPPED: None,
}


# ------------------------------------------------------------------
# GUARDRAILS
# ------------------------------------------------------------------

assert set(STAGE_ORDER) == set(DealStage), "STAGE_ORDER is out of sync with DealStage"
assert set(STAGE_FIELDS) == set(ACTIVE_STAGES), "STAGE_FIELDS must cover every active stage"
assert set(CLOSING_FIELDS) == set(TERMINAL_STAGES), "CLOSING_FIELDS must cover every terminal stage"
assert set(REQUIRED_FIELDS) == set(DealStage), "REQUIRED_FIELDS must cover every stage"
assert set(_NEXT_STAGE) == set(DealStage), "_NEXT_STAGE must cover every stage"


def _build_visible_fields() -> dict[DealStage, tuple[str, ...]]:
    """Precompute the cumulative field list for every stage."""
    visible: dict[DealStage, tuple[str, ...]] = {}
    accumulated: list[str] = []

    for stage in ACTIVE_STAGES:
        for name in STAGE_FIELDS[stage]:
            if name not in accumulated:
                accumulated.append(name)
        fields = list(accumulated)
        if COMMENT_FIELD not in fields:
            fields.append(COMMENT_FIELD)
        visible[stage] = tuple(fields)

    # Terminal stages inherit everything through Offered
    through_offered: tuple[str, ...] = visible[DealStage.OFFERED]
    for stage in TERMINAL_STAGES:
        fields = list(through_offered)
        for name in CLOSING_FIELDS[stage]:
            if name not in fields:
                fields.append(name)
        visible[stage] = tuple(fields)

    return visible


_VISIBLE_FIELDS: dict[DealStage, tuple[str, ...]] = _build_visible_fields()


def parse_stage(value: Any) -> Optional[DealStage]:
    """Coerce a raw value into a DealStage, or None if it isn't one."""
    if isinstance(value, DealStage):
        return value
    if not isinstance(value, str):
        return None
    try:
        return DealStage(value)
    except ValueError:
        return None


def stage_index(stage: DealStage | str) -> int:
    """Zero-based position of the stage in STAGE_ORDER, -1 if unknown."""
    resolved = parse_stage(stage)
    if resolved is None:
        return -1
    return STAGE_ORDER.index(resolved)


def is_terminal(stage: DealStage | str) -> bool:
    return parse_stage(stage) in TERMINAL_STAGES


def visible_fields(stage: DealStage | str) -> list[str]:
    """
    Fields shown for a deal currently at the given stage.

    Ordered by first introduction, no duplicates, always including the
    internal comment field. Returns [] for unknown stages.
    """
    resolved = parse_stage(stage)
    if resolved is None:
        return []
    return list(_VISIBLE_FIELDS[resolved])


def editable_fields(stage: DealStage | str) -> list[str]:
    # All visible fields are editable
    return visible_fields(stage)


def required_fields(stage: DealStage | str) -> list[str]:
    """Fields that must be non-empty before the stage counts as complete."""
    resolved = parse_stage(stage)
    if resolved is None:
        return []
    return list(REQUIRED_FIELDS[resolved])


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def missing_required_fields(values: Mapping[str, Any], stage: DealStage | str) -> list[str]:
    """Required fields for the stage that are absent, None or blank in `values`."""
    return [name for name in required_fields(stage) if _is_blank(values.get(name))]


def next_stage(stage: DealStage | str) -> Optional[DealStage]:
    """
    The single next stage in the forward flow.

    None means there is no deterministic next stage: either the deal is at
    Offered (caller must choose from terminal_stage_options()), already
    terminal, or the stage is unknown.
    """
    resolved = parse_stage(stage)
    if resolved is None:
        return None
    return _NEXT_STAGE[resolved]


def terminal_stage_options() -> list[DealStage]:
    return list(TERMINAL_STAGES)


def can_close(stage: DealStage | str) -> bool:
    """Only Offered may branch into a terminal stage."""
    return parse_stage(stage) == DealStage.OFFERED


def describe_stage(stage: DealStage) -> dict[str, Any]:
    """Summary of a stage for API responses."""
    following = next_stage(stage)
    return {
        "stage": stage.value,
        "index": stage_index(stage),
        "is_terminal": is_terminal(stage),
        "next_stage": following.value if following else None,
        "terminal_options": [s.value for s in terminal_stage_options()] if can_close(stage) else [],
        "visible_fields": visible_fields(stage),
        "editable_fields": editable_fields(stage),
        "required_fields": required_fields(stage),
    }
