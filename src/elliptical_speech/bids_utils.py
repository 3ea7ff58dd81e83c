"""
BIDS Utilities

This module provides utilities for validating BIDS (Brain Imaging Data
Structure) filenames, discovering fNIRS recordings in a BIDS dataset,
generating derivative output paths, and keeping outputs out of the raw
dataset.

Scientific Context:
    BIDS organizes the study's recordings as
    sub-<label>/[ses-<label>/]nirs/sub-<label>_[ses-<label>_]task-<label>_nirs.snirf
    Key principles:
    - Entity ordering: sub-XX_ses-XX_task-XX (fixed order)
    - Key-value pairs: separated by underscores
    - Derivatives: stored in derivatives/<pipeline_name>/
    - Raw data immutability: never write inside the raw dataset

References:
    - BIDS Specification: https://bids-specification.readthedocs.io/
    - Luke et al. (2025). fNIRS-BIDS, the Brain Imaging Data Structure
      extended to functional near-infrared spectroscopy. Scientific Data.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ORDERED_ENTITIES = ["sub", "ses", "task", "acq", "ce", "rec", "dir", "run", "echo"]


class BIDSValidationError(Exception):
    """Exception raised when BIDS validation fails."""

    pass


class RawDataWriteError(Exception):
    """Exception raised when attempting to write inside the raw dataset."""

    pass


@dataclass(frozen=True)
class BIDSRecording:
    """One fNIRS recording found in a BIDS dataset."""

    path: Path
    subject_id: str
    session_id: str | None
    task: str | None


def _strip_extensions(filename: str) -> str:
    stem = filename
    while stem != Path(stem).stem:
        stem = Path(stem).stem
    return stem


def validate_bids_path(file_path: str | Path) -> bool:
    """
    Validate that a file path follows BIDS entity ordering conventions.

    BIDS requires entities to appear in a specific order:
    sub-<label>_ses-<label>_task-<label>_[other entities]_<suffix>.<extension>

    Args:
        file_path: Path to validate (can be string or Path object)

    Returns:
        True if path follows BIDS conventions

    Raises:
        BIDSValidationError: If path violates BIDS entity ordering with
            specific guidance on correct format

    Examples:
        >>> validate_bids_path("sub-01_ses-01_task-ellipticalspeech_nirs.snirf")
        True

        >>> validate_bids_path("task-ellipticalspeech_sub-01_nirs.snirf")
        BIDSValidationError: Incorrect entity ordering...
    """
    path = Path(file_path)
    filename = path.name
    parts = _strip_extensions(filename).split("_")

    if len(parts) < 2:
        raise BIDSValidationError(
            f"Invalid BIDS filename: '{filename}'\n"
            f"BIDS filenames must contain at least a subject entity and suffix.\n"
            f"Expected format: sub-<label>_[ses-<label>_][task-<label>_]<suffix>\n"
            f"Example: sub-01_task-ellipticalspeech_nirs.snirf"
        )

    # The last part is the suffix (e.g. 'nirs', 'events')
    found_entities = []
    entity_positions = {}
    for i, part in enumerate(parts[:-1]):
        if "-" in part:
            entity_key = part.split("-")[0]
            found_entities.append(entity_key)
            entity_positions[entity_key] = i

    if "sub" not in found_entities:
        raise BIDSValidationError(
            f"Invalid BIDS filename: '{filename}'\n"
            f"Missing mandatory 'sub' (subject) entity.\n"
            f"Expected format: sub-<label>_[ses-<label>_][task-<label>_]<suffix>\n"
            f"Example: sub-01_task-ellipticalspeech_nirs.snirf"
        )

    relevant_entities = [e for e in ORDERED_ENTITIES if e in found_entities]
    for current_entity, next_entity in zip(relevant_entities, relevant_entities[1:]):
        if entity_positions[current_entity] > entity_positions[next_entity]:
            correct_parts = [
                part
                for entity in relevant_entities
                for part in parts[:-1]
                if part.startswith(f"{entity}-")
            ]
            correct_parts.append(parts[-1])
            correct_filename = "_".join(correct_parts) + "".join(path.suffixes)

            raise BIDSValidationError(
                f"Invalid BIDS filename: '{filename}'\n"
                f"Incorrect entity ordering: '{current_entity}' must come before "
                f"'{next_entity}'.\n"
                f"\n"
                f"Current order: {' → '.join(found_entities)}\n"
                f"Required order: {' → '.join(relevant_entities)}\n"
                f"\n"
                f"Correct filename: {correct_filename}"
            )

    return True


def parse_bids_entities(file_path: str | Path) -> dict[str, str]:
    """
    Extract entity key-value pairs and the suffix from a BIDS filename.

    Args:
        file_path: BIDS file path

    Returns:
        Mapping of entity -> label, plus 'suffix'

    Raises:
        BIDSValidationError: If the filename is not valid BIDS

    Example:
        >>> parse_bids_entities("sub-01_ses-02_task-ellipticalspeech_nirs.snirf")
        {'sub': '01', 'ses': '02', 'task': 'ellipticalspeech', 'suffix': 'nirs'}
    """
    validate_bids_path(file_path)
    parts = _strip_extensions(Path(file_path).name).split("_")
    entities = {}
    for part in parts[:-1]:
        if "-" in part:
            key, value = part.split("-", 1)
            entities[key] = value
    entities["suffix"] = parts[-1]
    return entities


def find_subject_recordings(
    bids_root: Path,
    task: str,
    extension: str = ".snirf",
) -> list[BIDSRecording]:
    """
    Discover the fNIRS recordings of one task in a BIDS dataset.

    Matches ``sub-*/nirs/*`` and ``sub-*/ses-*/nirs/*`` files named
    ``..._task-<task>_nirs<extension>``, sorted by subject then session.

    Args:
        bids_root: Root of the raw BIDS dataset
        task: Task label (without 'task-')
        extension: Recording file extension

    Returns:
        List of BIDSRecording

    Raises:
        FileNotFoundError: If bids_root does not exist
    """
    if not bids_root.exists():
        raise FileNotFoundError(f"BIDS root not found: {bids_root}")

    pattern = f"*_task-{task}_nirs{extension}"
    candidates = sorted(
        set(bids_root.glob(f"sub-*/nirs/{pattern}"))
        | set(bids_root.glob(f"sub-*/ses-*/nirs/{pattern}"))
    )

    recordings = []
    for path in candidates:
        try:
            entities = parse_bids_entities(path)
        except BIDSValidationError as e:
            logger.warning(f"Skipping non-BIDS file {path.name}: {e}")
            continue
        recordings.append(
            BIDSRecording(
                path=path,
                subject_id=entities["sub"],
                session_id=entities.get("ses"),
                task=entities.get("task"),
            )
        )

    recordings.sort(key=lambda r: (r.subject_id, r.session_id or ""))
    logger.info(
        f"Found {len(recordings)} task-{task} recordings in {bids_root} "
        f"({len({r.subject_id for r in recordings})} subjects)"
    )
    return recordings


def generate_derivative_path(
    subject_id: str,
    session_id: Optional[str] = None,
    task_id: Optional[str] = None,
    suffix: str = "",
    extension: str = "",
    pipeline_name: str = "elliptical-speech",
    base_dir: Path = Path("data/derivatives"),
) -> Path:
    """
    Generate BIDS-compliant derivative output path.

    Creates paths following BIDS derivative structure:
    <base_dir>/<pipeline_name>/sub-<label>/[ses-<label>/]<filename>

    Args:
        subject_id: Subject identifier (without 'sub-' prefix)
        session_id: Session identifier (without 'ses-' prefix), optional
        task_id: Task identifier (without 'task-' prefix), optional
        suffix: BIDS suffix (e.g., 'desc-glm_design')
        extension: File extension (e.g., '.tsv', '.png')
        pipeline_name: Name of the processing pipeline
        base_dir: Base derivatives directory

    Returns:
        Path object with BIDS-compliant derivative path

    Examples:
        >>> generate_derivative_path(
        ...     subject_id="01",
        ...     task_id="ellipticalspeech",
        ...     suffix="desc-glm_design",
        ...     extension=".tsv",
        ... )
        Path('data/derivatives/elliptical-speech/sub-01/
             sub-01_task-ellipticalspeech_desc-glm_design.tsv')
    """
    subject_dir = base_dir / pipeline_name / f"sub-{subject_id}"
    output_dir = subject_dir / f"ses-{session_id}" if session_id else subject_dir

    filename_parts = [f"sub-{subject_id}"]
    if session_id:
        filename_parts.append(f"ses-{session_id}")
    if task_id:
        filename_parts.append(f"task-{task_id}")
    if suffix:
        filename_parts.append(suffix)

    return output_dir / ("_".join(filename_parts) + extension)


def validate_output_location(output_path: str | Path, bids_root: str | Path) -> None:
    """
    Refuse to write derivatives inside the raw BIDS dataset.

    Args:
        output_path: Intended output file or directory
        bids_root: Root of the raw dataset

    Raises:
        RawDataWriteError: If output_path is bids_root or lies inside it
    """
    output = Path(output_path).resolve()
    root = Path(bids_root).resolve()
    if output == root or root in output.parents:
        raise RawDataWriteError(
            f"Attempted to write inside the raw dataset.\n"
            f"Output: {output_path}\n"
            f"Raw BIDS root: {bids_root}\n"
            f"\n"
            f"Raw data must remain immutable. Write derivatives to a separate\n"
            f"directory (e.g. data/derivatives/elliptical-speech/) and use\n"
            f"generate_derivative_path() to build per-subject paths."
        )
