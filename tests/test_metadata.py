import pytest

from aslquant.metadata import (
    ABSENT,
    as_float,
    as_float_list,
    find_sidecar,
    load_sidecar,
    resolve_field,
    resolve_run_metadata,
    slice_interval,
)

from .conftest import write_json


class TestResolveField:
    def test_alias_priority(self, tmp_path):
        source = load_sidecar(
            write_json(tmp_path / "asl.json", {"PLD": 2.0, "PostLabelingDelay": 1.8})
        )
        assert resolve_field([source], "post_labeling_delay") == 1.8

    def test_lower_priority_alias(self, tmp_path):
        source = load_sidecar(write_json(tmp_path / "asl.json", {"PLD": 2.0}))
        assert resolve_field([source], "post_labeling_delay") == 2.0

    def test_wrapped_value(self, tmp_path):
        source = load_sidecar(
            write_json(tmp_path / "asl.json", {"LabelingDuration": {"value": 1.5}})
        )
        assert resolve_field([source], "labeling_duration") == 1.5

    def test_null_is_not_present(self, tmp_path):
        source = load_sidecar(
            write_json(tmp_path / "asl.json", {"PostLabelingDelay": None, "PLD": 1.2})
        )
        assert resolve_field([source], "post_labeling_delay") == 1.2

    def test_absent(self, tmp_path):
        source = load_sidecar(write_json(tmp_path / "asl.json", {"Manufacturer": "GE"}))
        value = resolve_field([source], "inversion_times")
        assert value is ABSENT
        assert not value


class TestSidecars:
    def test_find_sidecar_strips_double_extension(self, tmp_path):
        sidecar = write_json(tmp_path / "sub-01_asl.json", {})
        assert find_sidecar(tmp_path / "sub-01_asl.nii.gz") == sidecar

    def test_missing_sidecar(self, tmp_path):
        assert find_sidecar(tmp_path / "sub-01_asl.nii.gz") is None

    def test_broken_sidecar_is_absent(self, tmp_path):
        bad = tmp_path / "asl.json"
        bad.write_text("{not json")
        assert load_sidecar(bad) is None


class TestRunMetadata:
    def test_run_sidecar_wins(self, tmp_path):
        run = write_json(tmp_path / "sub-01" / "asl.json", {"PostLabelingDelay": 1.8})
        write_json(tmp_path / "asl.json", {"PostLabelingDelay": 2.5})
        bundle = resolve_run_metadata(run, tmp_path)
        assert bundle["post_labeling_delay"] == 1.8
        assert bundle.level == "run"

    def test_dataset_fallback_takes_every_field_from_one_file(self, tmp_path):
        run = write_json(tmp_path / "sub-01" / "asl.json", {"Manufacturer": "GE"})
        write_json(tmp_path / "asl.json", {"PostLabelingDelay": 2.5})
        write_json(
            tmp_path / "sub-01" / "extra.json",
            {"PostLabelingDelay": 1.0, "LabelingDuration": 1.8},
        )
        bundle = resolve_run_metadata(run, tmp_path)
        assert bundle.level == "dataset"
        assert bundle.source_path == tmp_path / "asl.json"
        assert bundle["post_labeling_delay"] == 2.5
        # not spliced in from the deeper file
        assert bundle["labeling_duration"] is ABSENT

    def test_nearest_root_then_path_order(self, tmp_path):
        write_json(tmp_path / "a" / "b" / "deep.json", {"PLD": 3.0})
        write_json(tmp_path / "b" / "asl.json", {"PLD": 2.0})
        write_json(tmp_path / "a" / "asl.json", {"PLD": 1.0})
        bundle = resolve_run_metadata(None, tmp_path)
        assert bundle["post_labeling_delay"] == 1.0

    def test_nothing_found(self, tmp_path):
        bundle = resolve_run_metadata(None, tmp_path)
        assert bundle.resolved() == {}
        assert bundle.source_path is None


class TestConversions:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (1.8, [1.8]),
            ([0.5, 1.0], [0.5, 1.0]),
            ("0.5, 1.0,1.5", [0.5, 1.0, 1.5]),
            ([], None),
            ("abc", None),
            (ABSENT, None),
        ],
    )
    def test_as_float_list(self, value, expected):
        assert as_float_list(value) == expected

    def test_as_float_takes_first_of_list(self):
        assert as_float([1.8, 1.8]) == 1.8
        assert as_float([1.5, 1.8]) == 1.5
        assert as_float(ABSENT) is None

    def test_slice_interval(self):
        assert slice_interval([0.0, 0.045, 0.09]) == pytest.approx(0.045)
        assert slice_interval([0.0]) is None

    def test_as_float_unhashable_items(self):
        assert as_float([{"value": 1.8}, {"value": 1.8}]) is None
        assert as_float([[1.8], [2.0]]) is None
