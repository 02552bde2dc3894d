"""
Loaders for the files the engine reads from disk.

Every loader validates through the schemas in ``tap2music.data.schema`` and
turns any problem (missing file, broken JSON/YAML, schema violation) into a
``LoadError`` so callers only have to handle one failure type.
"""

import json
from pathlib import Path
from typing import List, Tuple, Union

import yaml
from pydantic import ValidationError

from tap2music.data.schema import EngineSettings, EventLog, NoteEvent, ReferenceTrace, WeightsManifest
from tap2music.errors import LoadError


MANIFEST_FILENAME = "weights_manifest.json"


def resolve_manifest_path(path: Union[str, Path]) -> Path:
    """
    Accept either a manifest file or the checkpoint directory containing it.

    Example:
        >>> resolve_manifest_path("model/")
        PosixPath('model/weights_manifest.json')
    """
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    return path


def _read_json(path: Path, what: str):
    if not path.exists():
        raise LoadError(f"{what} not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise LoadError(f"Invalid JSON in {what} {path} (line {e.lineno}): {e.msg}") from e


def load_manifest(path: Union[str, Path]) -> Tuple[WeightsManifest, Path]:
    """
    Read and validate a weights manifest.

    Args:
        path: Manifest file or checkpoint directory

    Returns:
        Tuple of (manifest, directory the shard paths are relative to)

    Raises:
        LoadError: If the manifest is missing, not JSON or fails validation
    """
    manifest_path = resolve_manifest_path(path)
    raw = _read_json(manifest_path, "Weights manifest")
    try:
        manifest = WeightsManifest.model_validate(raw)
    except ValidationError as e:
        raise LoadError(f"Malformed weights manifest {manifest_path}: {e}") from e
    return manifest, manifest_path.parent


def load_trace(path: Union[str, Path]) -> ReferenceTrace:
    """Read and validate a reference trace JSON file."""
    path = Path(path)
    raw = _read_json(path, "Reference trace")
    try:
        return ReferenceTrace.model_validate(raw)
    except ValidationError as e:
        raise LoadError(f"Malformed reference trace {path}: {e}") from e


def save_trace(trace: ReferenceTrace, path: Union[str, Path]) -> Path:
    """Write a reference trace as JSON (the format ``load_trace`` reads)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(trace.model_dump(), f)
    return path


def load_settings(path: Union[str, Path]) -> EngineSettings:
    """
    Read engine settings from a YAML file.

    Relative ``checkpoint`` and ``trace`` entries are resolved against the
    settings file's directory so a settings file can travel with its model.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Settings file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise LoadError(f"Invalid YAML in settings file {path}: {e}") from e

    try:
        settings = EngineSettings.model_validate(raw)
    except ValidationError as e:
        raise LoadError(f"Invalid settings in {path}: {e}") from e

    # Resolve paths relative to the settings file
    for field_name in ("checkpoint", "trace"):
        value = getattr(settings, field_name)
        if value is not None and not Path(value).is_absolute():
            setattr(settings, field_name, str(path.parent / value))
    return settings


def load_events(path: Union[str, Path]) -> List[NoteEvent]:
    """Read a recorded list of note-on/note-off events (JSON)."""
    path = Path(path)
    raw = _read_json(path, "Event file")
    try:
        return EventLog.model_validate(raw).root
    except ValidationError as e:
        raise LoadError(f"Malformed event file {path}: {e}") from e
