import numpy as np
import pytest

from aslquant.errors import MissingInputError
from aslquant.roles import (
    PairOrder,
    RoleKind,
    classify_by_intensity,
    classify_image,
    classify_volume_roles,
    parse_context_lines,
    read_context_table,
    two_means_1d,
    volume_means,
)

from .conftest import PAIRED_MEANS, series_from_means, write_nifti


class TestTwoMeans:
    def test_paired_example(self):
        (c1, c2), labels = two_means_1d(PAIRED_MEANS)
        assert c1 == pytest.approx(50.0)
        assert c2 == pytest.approx(100.25)
        assert list(labels) == [1, 0, 1, 0, 1, 0, 1, 0]

    def test_brighter_cluster_is_control(self):
        assert classify_by_intensity(PAIRED_MEANS) == [0, 2, 4, 6]

    def test_label_first(self):
        means = [50.0, 100.0, 49.0, 102.0]
        assert classify_by_intensity(means) == [1, 3]

    def test_identical_means_do_not_split(self):
        assert classify_by_intensity([10.0] * 6) is None

    def test_non_finite_means(self):
        assert classify_by_intensity([1.0, np.nan, 2.0]) is None


class TestContextTable:
    def test_header_row_skipped(self):
        table = parse_context_lines(["volume_type\n", "control\n", "label\n"])
        assert table.roles == ("control", "label")
        assert table.control_indices == [0]

    def test_role_tokens_are_case_insensitive(self):
        table = parse_context_lines(["Label\n", "CONTROL\n"])
        assert table.control_indices == [1]
        assert table.first_role == "label"

    def test_unknown_token_is_not_control(self):
        table = parse_context_lines(["control", "m0scan", "label", "control"])
        assert table.roles == ("control", None, "label", "control")
        assert table.control_indices == [0, 3]

    def test_all_deltam(self):
        assert parse_context_lines(["volume_type", "deltam", "deltam"]).all_difference

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingInputError):
            read_context_table(tmp_path / "aslcontext.tsv")


class TestClassifyVolumeRoles:
    def test_single_volume_is_already_differenced(self):
        roles = classify_volume_roles(1)
        assert roles.kind is RoleKind.ALREADY_DIFFERENCED
        assert roles.is_difference

    def test_context_overrides_intensity(self):
        context = parse_context_lines(["label", "control"] * 4)
        roles = classify_volume_roles(8, context=context, means=PAIRED_MEANS)
        assert roles.kind is RoleKind.ALTERNATING_PAIR
        assert roles.order is PairOrder.LABEL_FIRST
        assert roles.control_indices == (1, 3, 5, 7)
        assert roles.tier == "aslcontext"

    def test_single_volume_ignores_context(self):
        context = parse_context_lines(["volume_type", "control", "label"])
        roles = classify_volume_roles(1, context=context)
        assert roles.kind is RoleKind.ALREADY_DIFFERENCED
        assert roles.tier == "dimensions"

    def test_header_only_context_falls_through(self):
        context = parse_context_lines(["volume_type"])
        roles = classify_volume_roles(8, context=context, means=PAIRED_MEANS)
        assert roles.tier == "clustering"
        assert roles.control_indices == (0, 2, 4, 6)

    def test_context_without_controls_falls_through(self):
        context = parse_context_lines(["label", "m0scan", "label", "m0scan"])
        roles = classify_volume_roles(4, context=context)
        assert roles.tier == "positional"
        assert roles.order is PairOrder.CONTROL_FIRST

    def test_context_all_deltam(self):
        context = parse_context_lines(["deltam"] * 4)
        roles = classify_volume_roles(4, context=context)
        assert roles.kind is RoleKind.ALREADY_DIFFERENCED

    def test_clustering(self):
        roles = classify_volume_roles(8, means=PAIRED_MEANS)
        assert roles.order is PairOrder.CONTROL_FIRST
        assert roles.control_indices == (0, 2, 4, 6)
        assert roles.tier == "clustering"

    def test_positional_fallback(self):
        roles = classify_volume_roles(6, means=[7.0] * 6)
        assert roles.order is PairOrder.CONTROL_FIRST
        assert roles.control_indices == (0, 2, 4)
        assert roles.tier == "positional"


class TestClassifyImage:
    def test_3d_image(self, tmp_path):
        asl = write_nifti(tmp_path / "asl.nii.gz", np.ones((4, 4, 2)))
        assert classify_image(asl).kind is RoleKind.ALREADY_DIFFERENCED

    def test_3d_image_with_context(self, tmp_path):
        asl = write_nifti(tmp_path / "asl.nii.gz", np.ones((4, 4, 2)))
        context = tmp_path / "aslcontext.tsv"
        context.write_text("volume_type\ncontrol\nlabel\n")
        assert classify_image(asl, context).kind is RoleKind.ALREADY_DIFFERENCED

    def test_singleton_fourth_dimension(self, tmp_path):
        asl = write_nifti(tmp_path / "asl.nii.gz", np.ones((4, 4, 2, 1)))
        assert classify_image(asl).kind is RoleKind.ALREADY_DIFFERENCED

    def test_series_without_context(self, paired_series):
        roles = classify_image(paired_series)
        assert roles.control_indices == (0, 2, 4, 6)

    def test_series_with_context(self, tmp_path, paired_series):
        context = tmp_path / "aslcontext.tsv"
        context.write_text("volume_type\n" + "label\ncontrol\n" * 4)
        roles = classify_image(paired_series, context)
        assert roles.control_indices == (1, 3, 5, 7)

    def test_unusable_context_clusters_intensities(self, tmp_path, paired_series):
        context = tmp_path / "aslcontext.tsv"
        context.write_text("volume_type\n")
        roles = classify_image(paired_series, context)
        assert roles.tier == "clustering"
        assert roles.control_indices == (0, 2, 4, 6)

    def test_volume_means_ignore_nans(self):
        data = series_from_means([4.0, 2.0])
        data[0, 0, 0, 0] = np.nan
        assert list(volume_means(data)) == pytest.approx([4.0, 2.0])
