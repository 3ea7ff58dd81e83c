"""
Tests for BIDS filename validation, recording discovery and derivative paths.
"""

from pathlib import Path

import pytest

from elliptical_speech.bids_utils import (
    BIDSValidationError,
    RawDataWriteError,
    find_subject_recordings,
    generate_derivative_path,
    parse_bids_entities,
    validate_bids_path,
    validate_output_location,
)


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")
    return path


class TestValidateBidsPath:
    def test_valid_paths(self):
        assert validate_bids_path("sub-01_task-ellipticalspeech_nirs.snirf")
        assert validate_bids_path("sub-01_ses-02_task-ellipticalspeech_nirs.snirf")
        assert validate_bids_path(Path("sub-01/nirs/sub-01_task-x_events.tsv"))

    def test_wrong_entity_order(self):
        with pytest.raises(BIDSValidationError, match="must come before"):
            validate_bids_path("task-ellipticalspeech_sub-01_nirs.snirf")

    def test_missing_subject(self):
        with pytest.raises(BIDSValidationError):
            validate_bids_path("ses-01_task-ellipticalspeech_nirs.snirf")


def test_parse_bids_entities():
    entities = parse_bids_entities(
        "/data/raw/sub-01/ses-02/nirs/sub-01_ses-02_task-ellipticalspeech_nirs.snirf"
    )
    assert entities == {
        "sub": "01",
        "ses": "02",
        "task": "ellipticalspeech",
        "suffix": "nirs",
    }


class TestFindSubjectRecordings:
    def test_with_and_without_sessions(self, tmp_path):
        _touch(tmp_path / "sub-02/nirs/sub-02_task-ellipticalspeech_nirs.snirf")
        _touch(
            tmp_path / "sub-01/ses-02/nirs/sub-01_ses-02_task-ellipticalspeech_nirs.snirf"
        )
        _touch(
            tmp_path / "sub-01/ses-01/nirs/sub-01_ses-01_task-ellipticalspeech_nirs.snirf"
        )
        # Other task and sidecar files are ignored
        _touch(tmp_path / "sub-02/nirs/sub-02_task-rest_nirs.snirf")
        _touch(tmp_path / "sub-02/nirs/sub-02_task-ellipticalspeech_events.tsv")

        recordings = find_subject_recordings(tmp_path, "ellipticalspeech")

        assert [(r.subject_id, r.session_id) for r in recordings] == [
            ("01", "01"),
            ("01", "02"),
            ("02", None),
        ]
        assert all(r.task == "ellipticalspeech" for r in recordings)

    def test_empty_dataset(self, tmp_path):
        assert find_subject_recordings(tmp_path, "ellipticalspeech") == []

    def test_missing_root(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_subject_recordings(tmp_path / "raw", "ellipticalspeech")


class TestGenerateDerivativePath:
    def test_without_session(self):
        path = generate_derivative_path(
            subject_id="01",
            task_id="ellipticalspeech",
            suffix="desc-glm_design",
            extension=".tsv",
        )
        assert path == Path(
            "data/derivatives/elliptical-speech/sub-01/"
            "sub-01_task-ellipticalspeech_desc-glm_design.tsv"
        )

    def test_with_session_and_base_dir(self, tmp_path):
        path = generate_derivative_path(
            subject_id="03",
            session_id="02",
            task_id="ellipticalspeech",
            suffix="desc-hbo_topo",
            extension=".png",
            pipeline_name="",
            base_dir=tmp_path,
        )
        assert path == (
            tmp_path
            / "sub-03"
            / "ses-02"
            / "sub-03_ses-02_task-ellipticalspeech_desc-hbo_topo.png"
        )


class TestValidateOutputLocation:
    def test_outside_root_is_allowed(self, tmp_path):
        validate_output_location(tmp_path / "derivatives", tmp_path / "raw")

    def test_root_itself_is_rejected(self, tmp_path):
        with pytest.raises(RawDataWriteError):
            validate_output_location(tmp_path / "raw", tmp_path / "raw")

    def test_inside_root_is_rejected(self, tmp_path):
        with pytest.raises(RawDataWriteError, match="immutable"):
            validate_output_location(
                tmp_path / "raw" / "derivatives" / "glm", tmp_path / "raw"
            )
