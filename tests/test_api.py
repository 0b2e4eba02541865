"""Tests for the HTTP API."""

import json
import math

import numpy as np
import pytest
from fastapi.testclient import TestClient

import api.main as api_main
from api.main import _json, app

AMOUNT_SPEC = {"rows": ["team"], "values": [{"field": "amt", "aggregation": "sum"}]}


@pytest.fixture
def client():
    return TestClient(app)


class TestCollect:
    def test_object_of_arrays_with_group_marker(self, client):
        body = {"data": {"a": [{"x": 1}], "b": [{"x": 2}]}, "groupMarker": "src"}
        payload = client.post("/collect", json=body).json()
        assert payload["records"] == [{"x": 1, "src": "a"}, {"x": 2, "src": "b"}]
        assert {"key": "x", "type": "number"} in payload["availableFields"]

    def test_merge_spec(self, client):
        data = [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}, {"id": 3, "name": "c"}]
        payload = client.post("/merge-spec", json={"data": data}).json()
        assert payload["mergeBy"] == ["id"]
        assert payload["ambiguous"] is False


def test_reconcile(client):
    body = {"data": [{"id": 1, "a": 1}, {"id": 1, "b": 2}], "mergeSpec": {"mergeBy": ["id"]}}
    payload = client.post("/reconcile", json=body).json()
    assert payload["records"] == [{"id": 1, "a": 1, "b": 2}]
    assert payload["mergeSpec"] == {"mergeBy": ["id"], "preserve": []}
    assert payload["mergeAmbiguous"] is False


class TestPivot:
    def test_pivot(self, client, team_amounts):
        payload = client.post("/pivot", json={"records": team_amounts, "spec": AMOUNT_SPEC}).json()
        assert payload["isPivot"] is True
        assert payload["grandTotal"]["amt"] == 30
        assert payload["error"] is None

    def test_visible_records_drive_the_grand_total(self, client, team_amounts):
        body = {"records": team_amounts, "spec": AMOUNT_SPEC, "visibleRecords": team_amounts[:1]}
        assert client.post("/pivot", json=body).json()["grandTotal"]["amt"] == 10

    def test_bad_aggregation_degrades(self, client, team_amounts):
        spec = {"rows": ["team"], "values": [{"field": "amt", "aggregation": "median"}]}
        payload = client.post("/pivot", json={"records": team_amounts, "spec": spec}).json()
        assert payload["isPivot"] is False
        assert "Unknown aggregation" in payload["error"]


class TestCalculatedFields:
    def test_validate(self, client):
        payload = client.post("/calculated-fields/validate", json={"formula": "[a]/[b]", "availableFields": ["a", "b"]}).json()
        assert payload["isValid"] is True
        assert payload["warnings"] == ["Consider using IF() to prevent division by zero"]
        assert payload["circular"]["hasCircularDependency"] is False

    def test_evaluate_infers_available_fields(self, client):
        body = {"records": [{"x": 1}], "calculatedFields": [{"name": "D", "formula": "[x] * 2"}]}
        payload = client.post("/calculated-fields/evaluate", json=body).json()
        assert payload["records"] == [{"x": 1, "calc_D": 2}]
        assert payload["calculatedTotals"] == {"calc_D": 2}

    def test_check(self, client):
        fields = [{"name": "X", "formula": "[Y] + 1"}, {"name": "Y", "formula": "[X] * 2"}]
        payload = client.post("/calculated-fields/check", json={"calculatedFields": fields}).json()
        assert payload == {"hasCircularDependency": True, "circularFields": ["X", "Y"]}

    def test_templates(self, client):
        assert len(client.get("/calculated-fields/templates").json()["templates"]) == 8


def test_format(client):
    body = {"values": [0.5, None, "Error"], "format": "percentage"}
    assert client.post("/format", json=body).json() == {"formatted": ["50.00%", None, "Error"]}


class TestView:
    def test_view(self, client, team_amounts):
        body = {"data": team_amounts, "mergeSpec": {"mergeBy": ["team"]}, "pivotSpec": AMOUNT_SPEC}
        payload = client.post("/view", json=body).json()
        assert payload["grandTotal"]["amt"] == 30
        assert payload["totalCount"] == 2

    def test_view_with_filters(self, client, team_amounts):
        body = {
            "data": team_amounts,
            "mergeSpec": {"mergeBy": ["team"]},
            "pivotSpec": AMOUNT_SPEC,
            "filters": {"columns": {"team": {"constraints": [{"value": "X", "matchMode": "equals"}]}}},
        }
        payload = client.post("/view", json=body).json()
        assert payload["grandTotal"]["amt"] == 10
        assert payload["filteredCount"] == 1

    def test_failure_returns_500(self, client, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(api_main, "build_view", boom)
        resp = client.post("/view", json={"data": []})
        assert resp.status_code == 500
        assert resp.json() == {"error": "boom", "type": "RuntimeError"}


def test_json_encoding_of_non_finite_and_numpy_values():
    resp = _json({"nan": math.nan, "inf": math.inf, "n": np.int64(3), "f": np.float64(1.5)})
    assert json.loads(resp.body) == {"nan": None, "inf": None, "n": 3, "f": 1.5}
