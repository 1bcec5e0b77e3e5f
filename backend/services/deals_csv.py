"""
CSV import/export for deals.

Export writes a fixed column order so a file exported here can be edited in a
spreadsheet and imported back. Import is an upsert keyed on a
case-insensitive match of deal_name.

Header normalization accepts the loose spellings people type into
spreadsheets ("Customer", "Contract Value", "Q1" ...).
"""
from __future__ import annotations

import csv
import io
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.deal import Deal
from services.deal_pipeline import DealStage, parse_stage

logger = logging.getLogger(__name__)

EXPORT_FIELDS: tuple[str, ...] = (
    "deal_name", "stage", "internal_comment", "project_name", "lead_name",
    "customer_name", "region", "lead_owner", "priority", "customer_need",
    "relationship_strength", "budget", "probability", "expected_closing_date",
    "is_recurring", "customer_challenges", "business_value", "decision_maker_level",
    "total_contract_value", "currency_type", "start_date", "end_date",
    "project_duration", "action_items", "rfq_received_date", "proposal_due_date",
    "rfq_status", "current_status", "closing", "won_reason", "quarterly_revenue_q1",
    "quarterly_revenue_q2", "quarterly_revenue_q3", "quarterly_revenue_q4",
    "total_revenue", "signed_contract_date", "implementation_start_date",
    "handoff_status", "lost_reason", "need_improvement", "drop_reason",
)

HEADER_ALIASES: dict[str, str] = {
    "name": "deal_name",
    "title": "deal_name",
    "comment": "internal_comment",
    "comments": "internal_comment",
    "project": "project_name",
    "lead": "lead_name",
    "customer": "customer_name",
    "client": "customer_name",
    "owner": "lead_owner",
    "need": "customer_need",
    "closing_date": "expected_closing_date",
    "recurring": "is_recurring",
    "challenges": "customer_challenges",
    "value": "business_value",
    "contract_value": "total_contract_value",
    "currency": "currency_type",
    "duration": "project_duration",
    "actions": "action_items",
    "status": "current_status",
    "q1": "quarterly_revenue_q1",
    "q2": "quarterly_revenue_q2",
    "q3": "quarterly_revenue_q3",
    "q4": "quarterly_revenue_q4",
    "revenue": "total_revenue",
}

INTEGER_FIELDS: frozenset[str] = frozenset({"priority", "probability", "project_duration"})

MONEY_FIELDS: frozenset[str] = frozenset({
    "total_contract_value",
    "quarterly_revenue_q1",
    "quarterly_revenue_q2",
    "quarterly_revenue_q3",
    "quarterly_revenue_q4",
    "total_revenue",
})

DATE_FIELDS: frozenset[str] = frozenset({
    "expected_closing_date",
    "start_date",
    "end_date",
    "rfq_received_date",
    "proposal_due_date",
    "signed_contract_date",
    "implementation_start_date",
})

# Postgres INTEGER and NUMERIC(15, 2) column limits
MAX_INTEGER = 2**31 - 1
MAX_INTEGER_DIGITS = 10
MAX_MONEY_INTEGER_DIGITS = 13

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class DealsCSVError(Exception):
    """Raised when a CSV file cannot be exported or imported as a whole."""


@dataclass
class DealImportRow:
    """One data row mapped to deal columns. Empty `values` means nothing usable."""
    row_number: int
    values: dict[str, Any]


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "error_count": self.error_count,
            "errors": list(self.errors),
        }


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def export_deals_csv(deals: Iterable[Mapping[str, Any]]) -> str:
    """Render deals (as column dicts) to CSV text with a header row."""
    rows = list(deals)
    if not rows:
        raise DealsCSVError("No deals to export")

    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(EXPORT_FIELDS)
    for deal in rows:
        writer.writerow([_format_cell(deal.get(name)) for name in EXPORT_FIELDS])

    logger.info("Exported deals to CSV", extra={"deal_count": len(rows)})
    return output.getvalue()


def normalize_header(header: str) -> str:
    """Map a free-form column header onto a deal column name."""
    normalized = _NON_ALNUM.sub("_", header.strip().lower())
    return HEADER_ALIASES.get(normalized, normalized)


def _parse_decimal(value: str) -> Optional[Decimal]:
    try:
        number = Decimal(value.replace(",", ""))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def convert_value(field_name: str, raw: str) -> Any:
    """
    Convert a CSV cell to the column's Python type.

    Unparsable numbers and dates become None rather than failing the row.
    """
    value = raw.strip()
    if value == "":
        return None

    if field_name in INTEGER_FIELDS:
        number = _parse_decimal(value)
        # Bound the exponent before int() so "9e3000000" can't build a huge integer
        if number is None or number.adjusted() > MAX_INTEGER_DIGITS - 1:
            return None
        if number != number.to_integral_value():
            return None
        integer = int(number)
        return integer if abs(integer) <= MAX_INTEGER else None

    if field_name in MONEY_FIELDS:
        number = _parse_decimal(value)
        # Numeric(15, 2) holds at most 13 digits before the point
        if number is None or number.adjusted() > MAX_MONEY_INTEGER_DIGITS - 1:
            return None
        return number

    if field_name in DATE_FIELDS:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            logger.warning("Unparsable date in CSV", extra={"field": field_name, "value": value})
            return None

    return value


def parse_deals_csv(text: str, max_rows: Optional[int] = None) -> list[DealImportRow]:
    """
    Parse CSV text into rows of deal column values.

    Columns whose header doesn't map to a deal column are ignored.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    records = [row for row in reader if any(cell.strip() for cell in row)]

    if not records:
        raise DealsCSVError("No headers found in CSV file")

    headers, data_rows = records[0], records[1:]
    if not data_rows:
        raise DealsCSVError("No data rows found in CSV file")
    if max_rows is not None and len(data_rows) > max_rows:
        raise DealsCSVError(f"CSV file has {len(data_rows)} rows, the limit is {max_rows}")

    header_map: dict[int, str] = {}
    for index, header in enumerate(headers):
        name = normalize_header(header)
        if name in EXPORT_FIELDS:
            header_map[index] = name
    logger.info(
        "Parsed deals CSV headers",
        extra={"headers": headers, "mapped_columns": sorted(set(header_map.values()))},
    )

    parsed: list[DealImportRow] = []
    for offset, row in enumerate(data_rows):
        row_number = offset + 1
        values: dict[str, Any] = {}
        for index, name in header_map.items():
            if index >= len(row):
                continue
            converted = convert_value(name, row[index])
            if converted is not None:
                values[name] = converted

        if values:
            if not values.get("deal_name"):
                values["deal_name"] = values.get("project_name") or f"Deal {row_number}"
            raw_stage = values.get("stage")
            stage = parse_stage(raw_stage) if raw_stage is not None else DealStage.LEAD
            if stage is None:
                logger.warning(
                    "Unknown stage in CSV row, defaulting to Lead",
                    extra={"row": row_number, "stage": raw_stage},
                )
                stage = DealStage.LEAD
            values["stage"] = stage.value

        parsed.append(DealImportRow(row_number=row_number, values=values))

    return parsed


async def import_deals(
    session: AsyncSession,
    rows: list[DealImportRow],
    user_id: uuid.UUID,
) -> ImportResult:
    """
    Upsert parsed rows. Existing deals are matched on deal_name, ignoring case.

    Each row runs in its own savepoint so a failing row doesn't abort the rest.
    The caller commits.
    """
    result = ImportResult()

    for row in rows:
        if not row.values:
            result.skipped += 1
            continue

        deal_name: str = str(row.values["deal_name"]).strip()
        try:
            async with session.begin_nested():
                query = (
                    select(Deal)
                    .where(func.lower(Deal.deal_name) == deal_name.lower())
                    .limit(1)
                )
                existing: Optional[Deal] = (await session.execute(query)).scalars().first()
                now = datetime.utcnow()

                if existing is not None:
                    for name, value in row.values.items():
                        setattr(existing, name, value)
                    existing.modified_by = user_id
                    existing.modified_at = now
                else:
                    session.add(
                        Deal(
                            **row.values,
                            created_by=user_id,
                            modified_by=user_id,
                            created_at=now,
                            modified_at=now,
                        )
                    )
                await session.flush()
        except Exception as e:
            logger.warning(
                "Failed to import deal row",
                extra={"row": row.row_number, "deal_name": deal_name, "error": str(e)},
            )
            result.errors.append(f"Row {row.row_number}: {e}")
            continue

        if existing is not None:
            result.updated += 1
        else:
            result.created += 1

    logger.info("Deals CSV import finished", extra={"import_result": result.to_dict()})
    return result
