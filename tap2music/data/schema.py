"""
Schema definitions for Tap2Music checkpoints, traces and settings.

This module defines the Pydantic models that validate everything read from
disk before the engine trusts it: the weights manifest that describes the
parameter shards, the reference trace used by the self-test, the sampling
configuration and the engine settings file.
"""

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator


# =============================================================================
# VALID OPTIONS
# =============================================================================

VALID_DTYPES = ["float32", "int32"]

VALID_STRATEGIES = ["temperature", "nucleus"]

VALID_ENGINES = ["uc", "hand", "dummy"]

# Feature rows are [pitch, dt, dur, vel] or [pitch, dt, dur, vel, hand]
VALID_FEATURE_WIDTHS = (4, 5)


# =============================================================================
# WEIGHTS MANIFEST
# =============================================================================

class WeightSpec(BaseModel):
    """
    One named array inside a shard group.

    Arrays are laid out back to back in the group's shards, in the order
    they are listed, as little-endian values of ``dtype``.

    Example:
        >>> WeightSpec(name="model.pitch_emb.weight", shape=[89, 32])
    """

    name: str = Field(
        ...,
        min_length=1,
        description="Parameter name, e.g. 'model.lstm.weight_ih_l0'",
        examples=["model.pitch_emb.weight"]
    )

    shape: List[int] = Field(
        ...,
        description="Array shape; an empty list is a scalar",
        examples=[[89, 32], [512]]
    )

    dtype: str = Field(
        default="float32",
        description="Element type of the stored values",
        examples=["float32"]
    )

    @field_validator('shape')
    @classmethod
    def validate_shape(cls, v: List[int]) -> List[int]:
        """Dimensions must be non-negative"""
        if any(dim < 0 for dim in v):
            raise ValueError(f"Shape dimensions must be >= 0. Got: {v}")
        return v

    @field_validator('dtype')
    @classmethod
    def validate_dtype(cls, v: str) -> str:
        if v not in VALID_DTYPES:
            raise ValueError(f"dtype must be one of {VALID_DTYPES}. Got: '{v}'")
        return v

    @property
    def num_elements(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count


class WeightGroup(BaseModel):
    """A set of arrays stored across one or more binary shard files."""

    paths: List[str] = Field(
        ...,
        min_length=1,
        description="Shard file names, relative to the manifest directory",
        examples=[["group1-shard1of1.bin"]]
    )

    weights: List[WeightSpec] = Field(
        ...,
        description="Arrays contained in the shards, in storage order"
    )


class WeightsManifest(RootModel[List[WeightGroup]]):
    """
    The full checkpoint manifest: a list of shard groups.

    This is the same layout TensorFlow.js writes as ``weights_manifest.json``,
    so checkpoints converted for the browser can be loaded unchanged.
    """

    @model_validator(mode='after')
    def check_unique_names(self) -> 'WeightsManifest':
        """A name may only appear once across all groups"""
        seen = set()
        duplicates = []
        for group in self.root:
            for spec in group.weights:
                if spec.name in seen:
                    duplicates.append(spec.name)
                seen.add(spec.name)
        if duplicates:
            raise ValueError(f"Duplicate parameter names in manifest: {duplicates}")
        return self

    def names(self) -> List[str]:
        return [spec.name for group in self.root for spec in group.weights]


# =============================================================================
# REFERENCE TRACE (self-test)
# =============================================================================

class ReferenceTrace(BaseModel):
    """
    Recorded inputs and expected logits for the numerical self-test.

    Attributes:
        feats: One feature row per step, [pitch, dt, dur, vel] plus an
               optional trailing hand index
        pitch_logits: Expected logit vector for each step

    Example:
        >>> trace = ReferenceTrace(
        ...     feats=[[88, 0.0, 0.0, 64.0]],
        ...     pitch_logits=[[0.1] * 89]
        ... )
        >>> trace.num_steps
        1
    """

    feats: List[List[float]] = Field(..., min_length=1)
    pitch_logits: List[List[float]] = Field(..., min_length=1)

    @model_validator(mode='after')
    def check_alignment(self) -> 'ReferenceTrace':
        if len(self.feats) != len(self.pitch_logits):
            raise ValueError(
                f"Trace has {len(self.feats)} feature rows but "
                f"{len(self.pitch_logits)} logit rows"
            )

        widths = {len(row) for row in self.feats}
        if len(widths) != 1 or widths.pop() not in VALID_FEATURE_WIDTHS:
            raise ValueError(
                f"Feature rows must all have width 4 or 5. Got widths: "
                f"{sorted({len(row) for row in self.feats})}"
            )

        if len({len(row) for row in self.pitch_logits}) != 1:
            raise ValueError("Logit rows must all have the same width")
        return self

    @property
    def num_steps(self) -> int:
        return len(self.feats)

    @property
    def feature_width(self) -> int:
        return len(self.feats[0])


# =============================================================================
# SAMPLING CONFIGURATION
# =============================================================================

class SamplingConfig(BaseModel):
    """
    How the next pitch is drawn from the model's logits.

    Changing the config affects every later prediction but never a pitch
    that was already sampled.

    Attributes:
        strategy: "temperature" or "nucleus"
        temperature: Softmax temperature (> 0); lower is more predictable
        top_p: Probability mass kept by nucleus sampling, in (0, 1]
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    strategy: Literal["temperature", "nucleus"] = Field(
        default="temperature",
        description="Sampling strategy",
        examples=["temperature", "nucleus"]
    )

    temperature: float = Field(
        default=0.8,
        gt=0.0,
        description="Softmax temperature",
        examples=[0.8, 1.0]
    )

    top_p: float = Field(
        default=0.85,
        gt=0.0,
        le=1.0,
        description="Nucleus sampling threshold",
        examples=[0.85, 0.15]
    )


# =============================================================================
# ENGINE SETTINGS (YAML)
# =============================================================================

class EngineSettings(BaseModel):
    """
    Settings for building an engine, usually read from a YAML file.

    Example (settings.yaml):
        engine: uc
        checkpoint: model/
        trace: model/test.json
        seed: 7
        sampling:
          strategy: nucleus
          top_p: 0.9
    """

    model_config = ConfigDict(extra='forbid')

    engine: str = Field(default="uc", description="Engine kind")
    checkpoint: Optional[str] = Field(
        default=None,
        description="Manifest file or the directory that contains it"
    )
    trace: Optional[str] = Field(default=None, description="Reference trace JSON")
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    seed: Optional[int] = Field(default=None, description="Sampler RNG seed")
    run_self_test: bool = Field(default=True)

    @field_validator('engine')
    @classmethod
    def validate_engine(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in VALID_ENGINES:
            raise ValueError(f"Engine must be one of {VALID_ENGINES}. Got: '{v}'")
        return v_lower


# =============================================================================
# RECORDED NOTE EVENTS (CLI replay)
# =============================================================================

class NoteEvent(BaseModel):
    """
    One timing event of a recorded performance.

    Example:
        {"type": "on", "time": 1200.0, "pitch": 60, "velocity": 80}
        {"type": "off", "time": 1450.0}
    """

    model_config = ConfigDict(extra='forbid')

    type: Literal["on", "off"]
    time: float = Field(..., description="Event time in milliseconds")
    pitch: Optional[int] = Field(default=None, description="Tapped MIDI pitch")
    velocity: Optional[float] = Field(default=None, ge=0, le=127)
    hand: Optional[int] = Field(default=None, ge=0, le=2)


class EventLog(RootModel[List[NoteEvent]]):
    """Ordered list of note events."""
