import json

import pytest

from aslquant import dataset_prep
from aslquant.dataset_prep import (
    GENERAL_FIX,
    MINIMAL_DESCRIPTION,
    convert_dicoms,
    ensure_dataset_description,
    parse_validator_output,
    prepare_dataset,
)
from aslquant.errors import ExternalToolFailure

VALIDATOR_OUTPUT = """
        [ERROR] NOT_INCLUDED Files with such naming scheme are not part of BIDS specification.
                /sub-01/perf/asl_raw.nii.gz
                /sub-01/perf/asl_raw.json

        [ERROR] SOMETHING_NEW An error nobody has seen before.
                /sub-02/anat/T1.nii

        [WARNING] SIDECAR_KEY_RECOMMENDED A data file's JSON sidecar is missing a key.
"""


def test_parse_validator_output():
    issues = parse_validator_output(VALIDATOR_OUTPUT)
    assert [i.code for i in issues] == ["NOT_INCLUDED", "SOMETHING_NEW"]
    assert issues[0].files == [
        "/sub-01/perf/asl_raw.nii.gz",
        "/sub-01/perf/asl_raw.json",
    ]
    assert "bidsignore" in issues[0].suggestion
    assert issues[1].suggestion == GENERAL_FIX


def test_ensure_dataset_description(tmp_path):
    created = ensure_dataset_description(tmp_path)
    with open(created) as f:
        assert json.load(f) == MINIMAL_DESCRIPTION

    created.write_text('{"Name": "mine", "BIDSVersion": "1.9.0"}')
    ensure_dataset_description(tmp_path)
    with open(created) as f:
        assert json.load(f)["Name"] == "mine"


class TestConvertDicoms:
    def test_no_dicoms(self, tmp_path, monkeypatch):
        def never(*args, **kwargs):
            raise AssertionError("dcm2niix should not run")

        monkeypatch.setattr(dataset_prep, "sp_run", never)
        assert convert_dicoms(tmp_path) == 0

    def test_dicoms_deleted_after_conversion(self, tmp_path, monkeypatch):
        calls = []
        monkeypatch.setattr(
            dataset_prep, "sp_run", lambda cmd, **kw: calls.append(cmd)
        )
        (tmp_path / "scan").mkdir()
        dicom = tmp_path / "scan" / "IM0001.dcm"
        dicom.write_bytes(b"\0")
        assert convert_dicoms(tmp_path) == 1
        assert calls[0][0] == "dcm2niix"
        assert not dicom.exists()

    def test_dicoms_kept_on_failure(self, tmp_path, monkeypatch):
        def fail(cmd, **kwargs):
            raise ExternalToolFailure(cmd, returncode=1)

        monkeypatch.setattr(dataset_prep, "sp_run", fail)
        dicom = tmp_path / "IM0001.IMA"
        dicom.write_bytes(b"\0")
        convert_dicoms(tmp_path)
        assert dicom.exists()


def test_prepare_dataset_without_validator(tmp_path, monkeypatch):
    monkeypatch.setattr(dataset_prep, "sp_run", lambda cmd, **kw: None)
    assert prepare_dataset(tmp_path, validate=False) == []
    assert (tmp_path / "dataset_description.json").exists()


def test_prepare_missing_dataset(tmp_path):
    with pytest.raises(ValueError):
        prepare_dataset(tmp_path / "missing")
