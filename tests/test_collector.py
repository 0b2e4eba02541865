"""Tests for record collection and field sampling."""

from gridcore.collector import available_fields, collect, data_size, describe_fields, infer_field_type


class TestCollect:
    def test_sequence_keeps_records_only(self):
        assert collect([{"a": 1}, 5, [1], None, "x"]) == [{"a": 1}]

    def test_object_of_arrays_is_flattened_in_key_order(self):
        raw = {"service": [{"a": 1}], "support": [{"a": 2}, 3]}
        assert collect(raw) == [{"a": 1}, {"a": 2}]

    def test_group_marker(self):
        raw = {"service": [{"a": 1}], "support": [{"a": 2}]}
        assert collect(raw, group_marker="__group") == [
            {"a": 1, "__group": "service"},
            {"a": 2, "__group": "support"},
        ]

    def test_mapping_of_records(self):
        assert collect({"x": {"a": 1}, "y": {"a": 2}}) == [{"a": 1}, {"a": 2}]

    def test_unsupported_shapes_are_empty(self):
        assert collect(42) == []
        assert collect("text") == []
        assert collect(None) == []

    def test_input_is_not_mutated(self):
        rows = [{"a": 1}]
        out = collect(rows)
        out[0]["a"] = 2
        assert rows[0]["a"] == 1


def test_data_size():
    assert data_size([{}, {}]) == 2
    assert data_size({"a": [{}, {}], "b": [{}]}) == 3
    assert data_size(7) == 0


class TestInferFieldType:
    def test_boolean(self):
        assert infer_field_type([True, False]) == "boolean"

    def test_number(self):
        assert infer_field_type([1, 2.5]) == "number"

    def test_date(self):
        assert infer_field_type(["2025-01-01", "2025-02-03"]) == "date"

    def test_datetime(self):
        assert infer_field_type(["2025-01-01T10:00:00", "2025-01-02 11:30:00"]) == "datetime"

    def test_text(self):
        assert infer_field_type(["abc"]) == "text"
        assert infer_field_type([1, "a"]) == "text"
        assert infer_field_type([]) == "text"


def test_describe_fields():
    records = [{"id": 1, "name": "a"}, {"id": 2, "name": "a", "note": None}]
    descriptors = {d.key: d for d in describe_fields(records)}
    assert descriptors["id"].inferred_type == "number"
    assert descriptors["id"].sample_unique_count == 2
    assert descriptors["name"].sample_unique_count == 1
    assert descriptors["note"].inferred_type == "text"
    assert available_fields(list(descriptors.values()))[0] == {"key": "id", "type": "number"}
