"""
Data Subpackage

This package handles everything the engine reads from disk:
    - schema.py: Pydantic models for manifests, traces, sampling, settings
      and recorded note events
    - loader.py: Functions that load and validate those files

Anything malformed is reported as a LoadError before the engine uses it.
"""

from tap2music.data.schema import (
    EngineSettings,
    NoteEvent,
    ReferenceTrace,
    SamplingConfig,
    WeightsManifest,
)
from tap2music.data.loader import load_events, load_manifest, load_settings, load_trace
