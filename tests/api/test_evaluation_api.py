"""Tests for the evaluation API endpoints."""

import pytest
from fastapi.testclient import TestClient

from formengine.api.main import app

DEFINITION = {
    "id": "intake",
    "questions": [
        {"id": "NAME", "type": "TEXT", "label": "Name", "required": True},
        {
            "id": "AGE",
            "type": "NUMBER",
            "validationRules": [{"level": "warn", "then": {"fieldId": "AGE", "max": 120}, "message": "Check the age."}],
        },
        {
            "id": "NICK",
            "type": "TEXT",
            "visibility": {"showWhen": {"fieldId": "NAME", "equals": "admin"}},
        },
    ],
}

GUIDED_DEFINITION = {
    "questions": [
        {"id": "NAME", "type": "TEXT", "required": True},
        {
            "id": "REVIEW",
            "type": "TEXT",
            "required": True,
            "visibility": {"showWhen": {"fieldId": "__ckStep", "equals": "s2"}},
        },
    ],
    "steps": {
        "mode": "guided",
        "items": [
            {"id": "s1", "include": [{"kind": "question", "id": "NAME"}]},
            {"id": "s2", "include": [{"kind": "question", "id": "REVIEW"}]},
        ],
    },
}

ROW_FLOW_DEFINITION = {
    "questions": [{
        "id": "MEALS",
        "type": "LINE_ITEM_GROUP",
        "lineItemConfig": {
            "fields": [{"id": "RECIPE", "type": "TEXT"}, {"id": "QTY", "type": "NUMBER"}],
            "rowFlow": {
                "output": {"hideEmpty": True, "segments": [{"fieldRef": "RECIPE"}, {"fieldRef": "QTY"}]},
                "prompts": [{"id": "recipe", "fieldRef": "RECIPE"}, {"id": "qty", "fieldRef": "QTY"}],
                "actions": [{"id": "deleteRow", "effects": [{"type": "deleteRow"}]}],
            },
        },
    }],
}

ROW_FLOW_ITEMS = {"MEALS": [{"id": "r1", "values": {"RECIPE": "Soup", "QTY": ""}}]}


@pytest.fixture
def client():
    return TestClient(app)


# =========================================================================
# Health
# =========================================================================


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["default_language"] in ("EN", "FR", "NL")


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_is_generated(client):
    assert client.get("/health").headers.get("X-Request-ID")


# =========================================================================
# /evaluate
# =========================================================================


class TestEvaluate:
    """Tests for POST /api/v1/evaluate."""

    def test_required_error_and_hidden_map(self, client):
        response = client.post("/api/v1/evaluate", json={"definition": DEFINITION, "values": {"NAME": ""}})
        assert response.status_code == 200
        data = response.json()
        assert data["passed"] is False
        assert data["errors"] == {"NAME": "Name is required."}
        assert data["issues"][0]["source"] == "required"
        assert data["hidden"] == {"NAME": False, "AGE": False, "NICK": True}
        assert data["steps"] == []
        assert data["virtual_fields"] == {}

    def test_language_is_normalized(self, client):
        definition = {"questions": [
            {"id": "NAME", "type": "TEXT", "label": {"en": "Name", "fr": "Nom"}, "required": True},
        ]}
        response = client.post("/api/v1/evaluate", json={"definition": definition, "language": " fr "})
        assert response.json()["errors"] == {"NAME": "Nom est obligatoire."}

    def test_warnings_are_routed_by_view(self, client):
        payload = {"definition": DEFINITION, "values": {"NAME": "Ann", "AGE": 130}, "view": "summary"}
        data = client.post("/api/v1/evaluate", json=payload).json()
        assert data["passed"] is True
        assert data["warnings"]["top"] == [{"field_path": "AGE", "message": "Check the age."}]
        assert data["warnings"]["by_field"] == {}

    def test_guided_form_exposes_virtual_fields(self, client):
        payload = {"definition": GUIDED_DEFINITION, "values": {"NAME": "Ann"}, "active_step_id": "s2"}
        data = client.post("/api/v1/evaluate", json=payload).json()
        assert data["virtual_fields"]["__ckStep"] == "s2"
        assert data["virtual_fields"]["__ckStepIndex"] == 1
        assert [s["id"] for s in data["steps"]] == ["s1", "s2"]
        assert data["hidden"]["REVIEW"] is False
        assert data["errors"] == {"REVIEW": "REVIEW is required."}

    def test_guided_condition_hides_on_other_step(self, client):
        payload = {"definition": GUIDED_DEFINITION, "values": {"NAME": "Ann"}, "active_step_id": "s1"}
        data = client.post("/api/v1/evaluate", json=payload).json()
        assert data["hidden"]["REVIEW"] is True
        assert data["passed"] is True

    def test_invalid_definition_is_422(self, client):
        response = client.post("/api/v1/evaluate", json={"definition": {"questions": "nope"}})
        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "invalid_definition"
        assert data["details"] == {"path": "questions"}

    def test_invalid_phase_is_rejected(self, client):
        response = client.post("/api/v1/evaluate", json={"definition": DEFINITION, "phase": "later"})
        assert response.status_code == 422


# =========================================================================
# Row flow
# =========================================================================


class TestRowFlow:
    """Tests for the row-flow endpoints."""

    def make_payload(self, **extra):
        payload = {
            "definition": ROW_FLOW_DEFINITION,
            "line_items": ROW_FLOW_ITEMS,
            "group_key": "MEALS",
            "row_id": "r1",
        }
        payload.update(extra)
        return payload

    def test_state(self, client):
        response = client.post("/api/v1/row-flow/state", json=self.make_payload())
        assert response.status_code == 200
        data = response.json()
        assert data["output_text"] == "Soup"
        assert data["active_prompt_id"] == "qty"
        assert [p["id"] for p in data["prompts"]] == ["recipe", "qty"]

    def test_action_plan(self, client):
        response = client.post("/api/v1/row-flow/actions/deleteRow", json=self.make_payload())
        assert response.status_code == 200
        assert response.json() == {
            "action_id": "deleteRow",
            "effects": [{"groupKey": "MEALS", "rowId": "r1", "type": "deleteRow"}],
        }

    def test_unknown_action_is_404(self, client):
        response = client.post("/api/v1/row-flow/actions/nope", json=self.make_payload())
        assert response.status_code == 404

    def test_unknown_row_is_404(self, client):
        response = client.post("/api/v1/row-flow/state", json=self.make_payload(row_id="r9"))
        assert response.status_code == 404
        assert "r9" in response.json()["detail"]

    def test_group_without_row_flow_is_404(self, client):
        payload = self.make_payload(definition=DEFINITION, group_key="NAME")
        assert client.post("/api/v1/row-flow/state", json=payload).status_code == 404


# =========================================================================
# Ordered entry
# =========================================================================


class TestOrderedEntry:
    """Tests for POST /api/v1/ordered-entry."""

    def test_blocked_by_earlier_required_question(self, client):
        payload = {"definition": DEFINITION, "target": {"scope": "top", "question_id": "AGE"}}
        data = client.post("/api/v1/ordered-entry", json=payload).json()
        assert data["allowed"] is False
        assert data["block"] == {"missing_field_path": "NAME", "scope": "top", "reason": "missingRequired"}

    def test_allowed_when_earlier_questions_are_answered(self, client):
        payload = {
            "definition": DEFINITION,
            "values": {"NAME": "Ann"},
            "target": {"scope": "top", "question_id": "AGE"},
        }
        assert client.post("/api/v1/ordered-entry", json=payload).json() == {"allowed": True, "block": None}

    def test_without_target_scans_whole_form(self, client):
        data = client.post("/api/v1/ordered-entry", json={"definition": DEFINITION}).json()
        assert data["block"]["missing_field_path"] == "NAME"
