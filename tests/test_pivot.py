"""Tests for the pivot aggregation engine."""

from gridcore.pivot import compute_grand_total, humanize, pivot


class TestFlatGroupBy:
    def test_rows_values_and_row_totals(self, team_amounts, amount_spec):
        result = pivot(team_amounts, amount_spec)
        assert result.is_pivot
        assert result.pivot_data == [
            {"team": "X", "amt": 10, "amt_total": 10},
            {"team": "Y", "amt": 20, "amt_total": 20},
        ]

    def test_grand_total(self, team_amounts, amount_spec):
        grand = pivot(team_amounts, amount_spec).grand_total
        assert grand["isGrandTotal"] is True
        assert grand["team"] == "Grand Total"
        assert grand["amt"] == 30

    def test_grand_total_tracks_visible_records(self, team_amounts, amount_spec):
        visible = [r for r in team_amounts if r["team"] != "Y"]
        assert pivot(team_amounts, amount_spec, visible_records=visible).grand_total["amt"] == 10
        assert compute_grand_total(visible, amount_spec)["amt"] == 10

    def test_several_aggregations_of_one_field(self, team_amounts):
        spec = {
            "rows": ["team"],
            "values": [{"field": "amt", "aggregation": "sum"}, {"field": "amt", "aggregation": "max"}],
            "showRowTotals": False,
        }
        row = pivot(team_amounts, spec).pivot_data[0]
        assert row == {"team": "X", "amt_sum": 10, "amt_max": 10}

    def test_count_counts_defined_values(self):
        records = [{"team": "X", "name": "a"}, {"team": "X", "name": None}, {"team": "X", "name": "b"}]
        spec = {"rows": ["team"], "values": [{"field": "name", "aggregation": "count"}]}
        assert pivot(records, spec).pivot_data[0]["name"] == 2

    def test_strings_are_not_coerced(self):
        records = [{"team": "X", "amt": "10"}, {"team": "X", "amt": 5}]
        spec = {"rows": ["team"], "values": ["amt"]}
        assert pivot(records, spec).pivot_data[0]["amt"] == 5


class TestColumnSpread:
    def test_cells_and_totals(self, quarterly_sales):
        spec = {"rows": ["team"], "columns": ["quarter"], "values": [{"field": "amt", "aggregation": "sum"}]}
        result = pivot(quarterly_sales, spec)
        assert result.column_values == ["Q1", "Q2"]
        x, y = result.pivot_data
        assert x == {"team": "X", "Q1_amt_sum": 10, "Q2_amt_sum": 5, "amt_total": 15}
        assert y == {"team": "Y", "Q1_amt_sum": 20, "Q2_amt_sum": 0, "amt_total": 20}
        assert result.column_totals == {"Q1_amt_sum": 30, "Q2_amt_sum": 5}
        assert result.grand_total["Q1_amt_sum"] == 30
        assert result.grand_total["amt_total"] == 35

    def test_column_descriptors(self, quarterly_sales):
        spec = {"rows": ["team"], "columns": ["quarter"], "values": [{"field": "amt", "aggregation": "sum"}]}
        columns = pivot(quarterly_sales, spec).pivot_columns
        assert [c["key"] for c in columns] == ["team", "Q1_amt_sum", "Q2_amt_sum", "amt_total"]
        assert columns[0]["isPivotRow"] and columns[0]["title"] == "Team"
        assert columns[1]["isPivotValue"] and columns[1]["pivotColumn"] == "Q1"
        assert columns[1]["title"] == "Q1 - amt (sum)"
        assert columns[3]["isPivotTotal"]

    def test_multiple_column_fields_join_labels(self):
        records = [{"team": "X", "year": 2024, "q": "Q1", "amt": 3}]
        spec = {"rows": ["team"], "columns": ["year", "q"], "values": ["amt"], "showRowTotals": False}
        assert pivot(records, spec).pivot_data[0] == {"team": "X", "2024|Q1_amt_sum": 3}


class TestSubTotals:
    def test_hierarchical_sub_totals(self, regional_sales):
        spec = {"rows": ["region", "team"], "values": ["amt"], "showRowTotals": False}
        rows = pivot(regional_sales, spec).pivot_data
        assert [(r["region"], r["team"], r.get("isSubTotal", False)) for r in rows] == [
            ("N", "X", False),
            ("N", "Y", False),
            ("N", None, True),
            ("S", "X", False),
            ("S", None, True),
        ]
        assert rows[2]["amt"] == 3
        assert rows[2]["subTotalDepth"] == 1
        assert rows[4]["amt"] == 4

    def test_sub_totals_disabled(self, regional_sales):
        spec = {"rows": ["region", "team"], "values": ["amt"], "showSubTotals": False}
        assert len(pivot(regional_sales, spec).pivot_data) == 3


class TestOrdering:
    def test_descending(self, team_amounts, amount_spec):
        spec = {**amount_spec, "sortDirection": "desc"}
        assert [r["team"] for r in pivot(team_amounts, spec).pivot_data] == ["Y", "X"]

    def test_first_seen_when_unsorted(self, amount_spec):
        records = [{"team": "Y", "amt": 1}, {"team": "X", "amt": 2}]
        spec = {**amount_spec, "sortRows": False}
        assert [r["team"] for r in pivot(records, spec).pivot_data] == ["Y", "X"]


class TestDegrade:
    def test_missing_values_returns_flat_records(self, team_amounts):
        result = pivot(team_amounts, {"rows": ["team"]})
        assert not result.is_pivot
        assert result.pivot_data == team_amounts
        assert result.error

    def test_unknown_aggregation(self, team_amounts):
        result = pivot(team_amounts, {"rows": ["team"], "values": [{"field": "amt", "aggregation": "median"}]})
        assert not result.is_pivot
        assert "Unknown aggregation" in result.error

    def test_disabled_spec(self, team_amounts, amount_spec):
        result = pivot(team_amounts, {**amount_spec, "enabled": False})
        assert not result.is_pivot
        assert result.error is None

    def test_non_mapping_spec(self, team_amounts):
        assert pivot(team_amounts, None).pivot_data == team_amounts


def test_calculated_fields_on_pivot_rows(team_amounts, amount_spec):
    spec = {**amount_spec, "calculatedFields": [{"name": "Double", "formula": "[amt] * 2"}]}
    result = pivot(team_amounts, spec)
    assert [r["calc_Double"] for r in result.pivot_data] == [20, 40]
    assert result.grand_total["calc_Double"] == 60
    calc_column = result.pivot_columns[-1]
    assert calc_column["key"] == "calc_Double"
    assert calc_column["isPivotCalculatedField"]


def test_calculated_grand_total_tracks_visible_records(team_amounts, amount_spec):
    spec = {**amount_spec, "calculatedFields": [{"id": "dbl", "name": "Double", "formula": "[amt_total] * 2"}]}
    visible = [r for r in team_amounts if r["team"] == "X"]
    result = pivot(team_amounts, spec, visible_records=visible)
    assert [r["calc_dbl"] for r in result.pivot_data] == [20, 40]
    assert result.grand_total["amt_total"] == 10
    assert result.grand_total["calc_dbl"] == 20
    assert pivot(team_amounts, spec, visible_records=[]).grand_total["calc_dbl"] == 0


def test_sub_totals_keep_first_seen_prefix_values(regional_sales):
    records = regional_sales + [{"region": "N", "team": "Z", "amt": 8}]
    spec = {"rows": ["region", "team"], "values": ["amt"], "showRowTotals": False}
    sub_totals = [r for r in pivot(records, spec).pivot_data if r.get("isSubTotal")]
    assert [(r["region"], r["amt"]) for r in sub_totals] == [("N", 11), ("S", 4)]


def test_to_dict(team_amounts, amount_spec):
    payload = pivot(team_amounts, amount_spec).to_dict()
    assert set(payload) == {"pivotData", "pivotColumns", "grandTotal", "columnTotals", "columnValues", "isPivot"}


def test_humanize():
    assert humanize("salesTeam") == "Sales Team"
    assert humanize("team") == "Team"
