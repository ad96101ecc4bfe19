import json
from pathlib import Path

import nibabel as nb
import numpy as np
import pytest

# per-volume intensities of a control-first label/control series
PAIRED_MEANS = [100.0, 50.0, 102.0, 49.0, 98.0, 51.0, 101.0, 50.0]

REPORT_TEXT = """Perfusion
=========

Mean within mask, 45.20 ml/100g/min, 3.1
GM mean, 58.10 ml/100g/min, 2.0
Pure GM mean, 62.40 ml/100g/min, 1.9
Cortical GM mean, 60.00 ml/100g/min, 2.2
WM mean, 22.30 ml/100g/min, 1.1
Pure WM mean, 20.10 ml/100g/min, 1.0
Cerebral WM mean, 21.70 ml/100g/min, 1.2
"""


def write_nifti(path, data):
    path = Path(path)
    path.parent.mkdir(exist_ok=True, parents=True)
    img = nb.Nifti1Image(np.asarray(data, dtype=np.float32), affine=np.eye(4))
    nb.save(img, str(path))
    return path


def write_json(path, data):
    path = Path(path)
    path.parent.mkdir(exist_ok=True, parents=True)
    with open(path, "w") as f:
        json.dump(data, f)
    return path


def series_from_means(means, shape=(4, 4, 2)):
    """4D series whose every voxel in volume i equals means[i]."""
    return np.stack([np.full(shape, m, dtype=np.float32) for m in means], axis=3)


@pytest.fixture
def paired_series(tmp_path):
    return write_nifti(tmp_path / "asl.nii.gz", series_from_means(PAIRED_MEANS))


@pytest.fixture
def bids_dataset(tmp_path):
    """A single-subject dataset with a full pCASL run and an M0 scan."""
    root = tmp_path / "bids"
    root.mkdir()
    write_json(
        root / "dataset_description.json", {"Name": "test", "BIDSVersion": "1.8.0"}
    )

    perf = root / "sub-01" / "perf"
    write_nifti(perf / "sub-01_asl.nii.gz", series_from_means(PAIRED_MEANS))
    write_json(
        perf / "sub-01_asl.json",
        {
            "ArterialSpinLabelingType": "PCASL",
            "PostLabelingDelay": 1.8,
            "LabelingDuration": 1.8,
            "RepetitionTimePreparation": 4.0,
        },
    )
    write_nifti(perf / "sub-01_m0scan.nii.gz", np.full((4, 4, 2), 1000.0))
    write_json(perf / "sub-01_m0scan.json", {"RepetitionTimePreparation": 6.0})
    write_nifti(root / "sub-01" / "anat" / "sub-01_T1w.nii.gz", np.ones((4, 4, 2)))
    return root


@pytest.fixture
def untimed_dataset(tmp_path):
    """A dataset whose only run has no timing information anywhere."""
    root = tmp_path / "untimed"
    perf = root / "sub-02" / "perf"
    write_nifti(perf / "sub-02_asl.nii.gz", series_from_means(PAIRED_MEANS))
    write_json(perf / "sub-02_asl.json", {"Manufacturer": "Siemens"})
    write_nifti(root / "sub-02" / "anat" / "sub-02_T1w.nii.gz", np.ones((4, 4, 2)))
    return root
