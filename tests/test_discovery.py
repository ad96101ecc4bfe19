import numpy as np

from aslquant.discovery import (
    NO_SESSION,
    build_record,
    discover_runs,
    entity_free_name,
    find_asl,
)

from .conftest import write_json, write_nifti


def test_subject_without_sessions(bids_dataset):
    records = list(discover_runs(bids_dataset))
    assert len(records) == 1
    record = records[0]
    assert record.subject == "sub-01"
    assert record.session == NO_SESSION
    assert record.asl.name == "sub-01_asl.nii.gz"
    assert record.asl_sidecar.name == "sub-01_asl.json"
    assert record.m0.name == "sub-01_m0scan.nii.gz"
    assert record.structural.parent.name == "anat"
    assert record.context is None
    assert record.procdir == bids_dataset / "sub-01" / "processed"


def test_sessions_and_subject_filter(tmp_path):
    for sub in ("sub-01", "sub-02"):
        for ses in ("ses-1", "ses-2"):
            asl = tmp_path / sub / ses / "perf" / "asl.nii.gz"
            write_nifti(asl, np.ones((2, 2, 2, 2)))
    records = list(discover_runs(tmp_path, subjects=["sub-02"]))
    assert [r.label for r in records] == ["sub-02/ses-1", "sub-02/ses-2"]


def test_asl_search(tmp_path):
    write_nifti(tmp_path / "processed" / "asl_nonan.nii.gz", np.ones((2, 2, 2)))
    write_nifti(tmp_path / "other" / "ASL_raw.nii", np.ones((2, 2, 2)))
    write_nifti(tmp_path / "perf" / "sub-01_asl.nii.gz", np.ones((2, 2, 2)))
    write_nifti(tmp_path / "perf" / "sub-01_aslm0.nii.gz", np.ones((2, 2, 2)))
    assert find_asl(tmp_path, exclude_dirs=("processed",)) == (
        tmp_path / "perf" / "sub-01_asl.nii.gz"
    )


def test_context_and_missing_asl(tmp_path):
    asl = write_nifti(tmp_path / "perf" / "sub-01_asl.nii.gz", np.ones((2, 2, 2, 4)))
    context = tmp_path / "perf" / "sub-01_aslcontext.tsv"
    context.write_text("volume_type\ncontrol\nlabel\ncontrol\nlabel\n")
    write_json(tmp_path / "perf" / "sub-01_asl.json", {"PLD": 1.8})
    record = build_record("sub-01", NO_SESSION, tmp_path)
    assert record.asl == asl
    assert record.context == context

    (tmp_path / "nothing_here").mkdir()
    empty = build_record("sub-02", NO_SESSION, tmp_path / "nothing_here")
    assert empty.asl is None


def test_subject_label_containing_m0(tmp_path):
    top = tmp_path / "sub-M01"
    asl = write_nifti(top / "perf" / "sub-M01_asl.nii.gz", np.ones((2, 2, 2, 4)))
    record = build_record("sub-M01", NO_SESSION, top)
    assert record.asl == asl
    assert record.m0 is None

    m0 = write_nifti(top / "perf" / "sub-M01_ses-M0_m0scan.nii.gz", np.ones((2, 2, 2)))
    record = build_record("sub-M01", NO_SESSION, top)
    assert record.asl == asl
    assert record.m0 == m0


def test_entity_free_name():
    assert entity_free_name("sub-M01_ses-1_asl.nii.gz") == "_asl.nii.gz"
    assert entity_free_name("sub-01_acq-m0_asl.nii") == "_acq-m0_asl.nii"
