from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Iterator
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.dialects import postgresql

from api.auth_middleware import AuthContext, get_current_auth
from api.main import app
from api.routes import deals
from models.deal import Deal
from services.deals_csv import ImportResult


client = TestClient(app)

USER_ID = UUID("00000000-0000-0000-0000-0000000000aa")


class _FakeScalars:
    def __init__(self, values: list[Deal]) -> None:
        self._values = values

    def all(self) -> list[Deal]:
        return self._values


class _FakeExecuteResult:
    def __init__(self, values: list[Deal]) -> None:
        self._values = values

    def scalars(self) -> _FakeScalars:
        return _FakeScalars(self._values)


class _FakeSession:
    def __init__(self, stored: list[Deal]) -> None:
        self.stored = {d.id: d for d in stored}
        self.added: list[Deal] = []
        self.deleted: list[Deal] = []
        self.queries: list[object] = []
        self.commits = 0

    async def get(self, _model: type, key: UUID) -> Deal | None:
        return self.stored.get(key)

    async def execute(self, query: object) -> _FakeExecuteResult:
        self.queries.append(query)
        return _FakeExecuteResult(list(self.stored.values()))

    def add(self, obj: Deal) -> None:
        self.added.append(obj)

    async def delete(self, obj: Deal) -> None:
        self.deleted.append(obj)

    async def commit(self) -> None:
        self.commits += 1


def _deal(**values: object) -> Deal:
    values.setdefault("id", uuid4())
    values.setdefault("deal_name", "Harbour cranes")
    values.setdefault("stage", "Lead")
    return Deal(**values)


def _complete_lead(**values: object) -> Deal:
    return _deal(
        project_name="Harbour cranes",
        lead_name="Dana",
        customer_name="Port Authority",
        region="EMEA",
        lead_owner="Sam",
        priority=2,
        **values,
    )


def _complete_offered(**values: object) -> Deal:
    return _deal(
        stage="Offered",
        business_value="Done",
        decision_maker_level="Ongoing",
        current_status="Offer sent",
        closing="Q3",
        **values,
    )


@pytest.fixture
def auth_override() -> Iterator[AuthContext]:
    auth = AuthContext(user_id=USER_ID, email="rep@example.com")
    app.dependency_overrides[get_current_auth] = lambda: auth
    try:
        yield auth
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> Iterator[_FakeSession]:
    session = _FakeSession(stored=[])
    captured_user_ids: list[str | None] = []

    @asynccontextmanager
    async def _get_session(user_id: str | None = None) -> AsyncIterator[_FakeSession]:
        captured_user_ids.append(user_id)
        yield session

    monkeypatch.setattr(deals, "get_session", _get_session)
    session.captured_user_ids = captured_user_ids  # type: ignore[attr-defined]
    yield session


def test_deal_endpoints_require_authentication() -> None:
    response = client.get("/api/deals")
    assert response.status_code == 401


def test_list_stages_is_public_and_ordered() -> None:
    response = client.get("/api/deals/stages")
    assert response.status_code == 200
    stages = response.json()["stages"]
    assert [s["stage"] for s in stages] == [
        "Lead", "Discussions", "Qualified", "RFQ", "Offered", "Won", "Lost", "Dropped",
    ]
    assert stages[0]["next_stage"] == "Discussions"
    assert stages[4]["terminal_options"] == ["Won", "Lost", "Dropped"]


def test_get_unknown_stage_returns_404() -> None:
    response = client.get("/api/deals/stages/Negotiation")
    assert response.status_code == 404


def test_get_stage_describes_fields() -> None:
    response = client.get("/api/deals/stages/Won")
    assert response.status_code == 200
    body = response.json()
    assert body["is_terminal"] is True
    assert "won_reason" in body["visible_fields"]
    assert body["visible_fields"] == body["editable_fields"]


def test_list_deals_uses_caller_identity(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    fake_db.stored = {d.id: d for d in [_deal(), _deal(deal_name="Wind park", stage="RFQ")]}

    response = client.get("/api/deals", params={"open_only": True})

    assert response.status_code == 200
    assert response.json()["total"] == 2
    assert fake_db.captured_user_ids == [str(USER_ID)]  # type: ignore[attr-defined]


def test_list_deals_rejects_unknown_stage_filter(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get("/api/deals", params={"stage": "Negotiation"})
    assert response.status_code == 400


def _compiled(query: object) -> str:
    return str(query.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))  # type: ignore[attr-defined]


def test_list_deals_open_only_excludes_terminal_stages(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get("/api/deals", params={"open_only": True})

    assert response.status_code == 200
    sql = _compiled(fake_db.queries[0])
    assert "deals.stage NOT IN ('Won', 'Lost', 'Dropped')" in sql
    assert "deals.stage = " not in sql


def test_list_deals_filters_by_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get("/api/deals", params={"stage": "RFQ", "limit": 25})

    assert response.status_code == 200
    sql = _compiled(fake_db.queries[0])
    assert "deals.stage = 'RFQ'" in sql
    assert "NOT IN" not in sql
    assert "LIMIT 25" in sql


def test_list_deals_without_filters(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    client.get("/api/deals")

    sql = _compiled(fake_db.queries[0])
    assert "WHERE" not in sql
    assert "LIMIT 100" in sql


@pytest.mark.parametrize("limit", [0, 501])
def test_list_deals_limit_bounds(auth_override: AuthContext, fake_db: _FakeSession, limit: int) -> None:
    response = client.get("/api/deals", params={"limit": limit})
    assert response.status_code == 422
    assert fake_db.queries == []


def test_get_deal_invalid_id(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get("/api/deals/not-a-uuid")
    assert response.status_code == 400


def test_get_deal_not_found(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get(f"/api/deals/{uuid4()}")
    assert response.status_code == 404


def test_get_deal_reports_missing_required_fields(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(project_name="Harbour cranes", region="EMEA")
    fake_db.stored = {deal.id: deal}

    response = client.get(f"/api/deals/{deal.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["deal"]["id"] == str(deal.id)
    assert body["stage"]["stage"] == "Lead"
    assert body["missing_required_fields"] == ["lead_name", "customer_name", "lead_owner", "priority"]


def test_get_deal_with_corrupt_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="Negotiation")
    fake_db.stored = {deal.id: deal}

    response = client.get(f"/api/deals/{deal.id}")

    assert response.status_code == 200
    assert response.json()["stage"] is None
    assert response.json()["missing_required_fields"] == []


def test_create_deal_starts_at_lead(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.post(
        "/api/deals",
        json={"project_name": "Harbour cranes", "customer_name": "Port Authority", "priority": 3},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["deal"]["stage"] == "Lead"
    assert body["deal"]["deal_name"] == "Harbour cranes"
    assert body["deal"]["created_by"] == str(USER_ID)
    assert len(fake_db.added) == 1
    assert fake_db.commits == 1


def test_create_deal_defaults_name(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.post("/api/deals", json={})
    assert response.status_code == 201
    assert response.json()["deal"]["deal_name"] == "Untitled Deal"


def test_create_deal_rejects_fields_from_later_stages(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.post("/api/deals", json={"project_name": "X", "won_reason": "Price"})
    assert response.status_code == 422
    assert response.json()["detail"]["fields"] == ["won_reason"]
    assert fake_db.added == []


def test_create_deal_validates_ranges_and_enums(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    assert client.post("/api/deals", json={"priority": 9}).status_code == 422
    assert client.post("/api/deals", json={"relationship_strength": "Huge"}).status_code == 422
    assert client.post("/api/deals", json={"unknown_field": 1}).status_code == 422


def test_create_deal_enforces_column_lengths(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    assert client.post("/api/deals", json={"region": "R" * 101}).status_code == 422
    assert client.post("/api/deals", json={"project_name": "p" * 256}).status_code == 422
    assert fake_db.added == []

    response = client.post("/api/deals", json={"region": "R" * 100})
    assert response.status_code == 201


def test_update_deal_enforces_column_limits(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="RFQ")
    fake_db.stored = {deal.id: deal}

    assert client.patch(f"/api/deals/{deal.id}", json={"total_contract_value": "1e20"}).status_code == 422
    assert client.patch(f"/api/deals/{deal.id}", json={"total_contract_value": "10.125"}).status_code == 422
    assert client.patch(f"/api/deals/{deal.id}", json={"budget": "b" * 256}).status_code == 422
    assert fake_db.commits == 0

    response = client.patch(f"/api/deals/{deal.id}", json={"total_contract_value": "9999999999999.99"})
    assert response.status_code == 200
    assert str(deal.total_contract_value) == "9999999999999.99"


def test_update_deal_allows_visible_fields(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="RFQ")
    fake_db.stored = {deal.id: deal}

    response = client.patch(
        f"/api/deals/{deal.id}",
        json={"budget": "250k", "currency_type": "EUR", "start_date": "2026-11-01"},
    )

    assert response.status_code == 200
    assert deal.budget == "250k"
    assert deal.start_date == date(2026, 11, 1)
    assert deal.modified_by == USER_ID
    assert fake_db.commits == 1


def test_update_deal_rejects_fields_not_visible_at_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="Discussions")
    fake_db.stored = {deal.id: deal}

    response = client.patch(f"/api/deals/{deal.id}", json={"total_contract_value": "1000"})

    assert response.status_code == 422
    assert deal.total_contract_value is None
    assert fake_db.commits == 0


def test_update_deal_cannot_patch_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal()
    fake_db.stored = {deal.id: deal}

    response = client.patch(f"/api/deals/{deal.id}", json={"stage": "Won"})

    assert response.status_code == 422
    assert deal.stage == "Lead"


def test_update_deal_rejects_blank_name(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal()
    fake_db.stored = {deal.id: deal}
    response = client.patch(f"/api/deals/{deal.id}", json={"deal_name": "  "})
    assert response.status_code == 422


def test_advance_blocks_on_missing_required_fields(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(project_name="Harbour cranes")
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/advance")

    assert response.status_code == 422
    assert "lead_name" in response.json()["detail"]["missing_fields"]
    assert deal.stage == "Lead"


def test_advance_moves_to_next_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _complete_lead()
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/advance")

    assert response.status_code == 200
    assert deal.stage == "Discussions"
    assert response.json()["stage"]["next_stage"] == "Qualified"
    assert fake_db.commits == 1


def test_advance_with_force_skips_required_check(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="Qualified")
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/advance", params={"force": True})

    assert response.status_code == 200
    assert deal.stage == "RFQ"


@pytest.mark.parametrize("stage", ["Offered", "Won", "Lost", "Dropped"])
def test_advance_has_no_next_stage(auth_override: AuthContext, fake_db: _FakeSession, stage: str) -> None:
    deal = _deal(stage=stage)
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/advance", params={"force": True})

    assert response.status_code == 409
    assert deal.stage == stage


def test_close_offered_deal_as_won(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _complete_offered()
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/close", json={"stage": "Won"})

    assert response.status_code == 200
    assert deal.stage == "Won"
    body = response.json()
    assert body["stage"]["is_terminal"] is True
    assert "won_reason" in body["missing_required_fields"]


def test_close_requires_terminal_target(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _complete_offered()
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/close", json={"stage": "RFQ"})

    assert response.status_code == 422
    assert deal.stage == "Offered"


def test_close_requires_offered_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="RFQ")
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/close", json={"stage": "Lost"})

    assert response.status_code == 409
    assert deal.stage == "RFQ"


def test_move_reverts_stage(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="Lost")
    fake_db.stored = {deal.id: deal}

    response = client.post(f"/api/deals/{deal.id}/move", json={"stage": "Offered"})

    assert response.status_code == 200
    assert deal.stage == "Offered"
    assert deal.modified_by == USER_ID


def test_move_to_same_stage_conflicts(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(stage="RFQ")
    fake_db.stored = {deal.id: deal}
    response = client.post(f"/api/deals/{deal.id}/move", json={"stage": "RFQ"})
    assert response.status_code == 409


def test_delete_deal(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal()
    fake_db.stored = {deal.id: deal}

    response = client.delete(f"/api/deals/{deal.id}")

    assert response.status_code == 204
    assert fake_db.deleted == [deal]
    assert fake_db.commits == 1


def test_export_returns_csv(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    deal = _deal(deal_name="Wind park", region="APAC")
    fake_db.stored = {deal.id: deal}

    response = client.get("/api/deals/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    lines = response.text.splitlines()
    assert lines[0].startswith("deal_name,stage,internal_comment")
    assert lines[1].startswith("Wind park,Lead,")


def test_export_without_deals_returns_404(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.get("/api/deals/export")
    assert response.status_code == 404
    assert response.json()["detail"] == "No deals to export"


def test_import_rejects_empty_csv(auth_override: AuthContext, fake_db: _FakeSession) -> None:
    response = client.post("/api/deals/import", json={"csv_text": ""})
    assert response.status_code == 400
    assert response.json()["detail"] == "No headers found in CSV file"


def test_import_passes_parsed_rows_to_service(
    auth_override: AuthContext,
    fake_db: _FakeSession,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    async def _fake_import(session: object, rows: list, user_id: UUID) -> ImportResult:
        captured["rows"] = rows
        captured["user_id"] = user_id
        return ImportResult(created=2)

    monkeypatch.setattr(deals, "import_deals", _fake_import)

    response = client.post(
        "/api/deals/import",
        json={"csv_text": "Name,Customer\nWind park,Acme\nHydro,Volta\n"},
    )

    assert response.status_code == 200
    assert response.json() == {"created": 2, "updated": 0, "skipped": 0, "error_count": 0, "errors": []}
    assert captured["user_id"] == USER_ID
    assert [r.values["deal_name"] for r in captured["rows"]] == ["Wind park", "Hydro"]
    assert fake_db.commits == 1
