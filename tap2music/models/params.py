"""
Parameter Store for Tap2Music Models
====================================

This module owns the long-lived arrays of an engine: the model parameters
loaded from a checkpoint manifest. It also provides the ArrayTracker that
counts every long-lived array (parameters and recurrent hidden states) so
the self-test can detect arrays that were never released.

Lifetime rules:
    - Parameters live from ParameterStore creation until release().
    - Hidden states register themselves and unregister on dispose().
    - Forward-pass temporaries are never registered; they are plain local
      tensors freed when the call returns.

Example:
    store = ParameterStore.from_manifest(
        "model/",
        expected_ranks={"model.pitch_emb.weight": 2}
    )
    emb = store["model.pitch_emb.weight"]   # torch.Tensor [89, 32]
    store.release()
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union
import json

import numpy as np
import torch

from tap2music.data.loader import MANIFEST_FILENAME, load_manifest
from tap2music.errors import EngineStateError, LoadError


# =============================================================================
# CONFIGURATION
# =============================================================================

# Manifest dtype name → NumPy storage type (shards are little-endian)
DTYPE_MAP = {
    "float32": np.dtype("<f4"),
    "int32": np.dtype("<i4"),
}

DEFAULT_SHARD_NAME = "group1-shard1of1.bin"


# =============================================================================
# ARRAY TRACKING
# =============================================================================

@dataclass(frozen=True)
class MemoryInfo:
    """Snapshot of the arrays currently registered with a tracker."""

    num_arrays: int
    num_bytes: int


class ArrayTracker:
    """
    Bookkeeping for long-lived arrays.

    The tracker holds a reference to each registered tensor, so an array that
    is never released stays counted (and alive) - exactly the signal the
    self-test uses to report a leak.
    """

    def __init__(self):
        self._live: Dict[int, torch.Tensor] = {}

    def register(self, tensors: Iterable[torch.Tensor]) -> None:
        for tensor in tensors:
            self._live[id(tensor)] = tensor

    def release(self, tensors: Iterable[torch.Tensor]) -> None:
        for tensor in tensors:
            self._live.pop(id(tensor), None)

    def memory(self) -> MemoryInfo:
        num_bytes = sum(t.element_size() * t.nelement() for t in self._live.values())
        return MemoryInfo(num_arrays=len(self._live), num_bytes=num_bytes)


# Process-wide tracker used when none is passed explicitly
default_tracker = ArrayTracker()


def memory() -> MemoryInfo:
    """Memory snapshot of the default tracker."""
    return default_tracker.memory()


# =============================================================================
# PARAMETER STORE
# =============================================================================

class ParameterStore:
    """
    Named, read-only parameter arrays for one model instance.

    Attributes:
        tracker: ArrayTracker the arrays are registered with
        source: Where the arrays came from (for error messages)

    Lookup of a name that does not exist raises KeyError. That is a
    structural mismatch between code and checkpoint, so it is never caught:
    models check their required names once at construction instead.
    """

    def __init__(
        self,
        arrays: Mapping[str, torch.Tensor],
        tracker: Optional[ArrayTracker] = None,
        source: str = "<memory>"
    ):
        self.tracker = tracker if tracker is not None else default_tracker
        self.source = source
        self._arrays: Optional[Dict[str, torch.Tensor]] = dict(arrays)
        self.tracker.register(self._arrays.values())

    # ─────────────────────────────────────────────────────────────────────────
    # Construction
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def from_manifest(
        cls,
        path: Union[str, Path],
        expected_ranks: Optional[Mapping[str, int]] = None,
        tracker: Optional[ArrayTracker] = None
    ) -> 'ParameterStore':
        """
        Load every array listed in a weights manifest.

        Args:
            path: Manifest file or the checkpoint directory containing it
            expected_ranks: Names that must be present, with their rank
            tracker: Tracker to register arrays with (default tracker if None)

        Returns:
            Loaded ParameterStore

        Raises:
            LoadError: Missing/malformed manifest, missing or truncated shard,
                       missing required name or wrong rank
        """
        manifest, base_dir = load_manifest(path)

        arrays: Dict[str, torch.Tensor] = {}
        for group in manifest.root:
            # Shards of a group form one contiguous buffer
            chunks = []
            for shard in group.paths:
                shard_path = base_dir / shard
                if not shard_path.exists():
                    raise LoadError(f"Parameter shard not found: {shard_path}")
                chunks.append(shard_path.read_bytes())
            buffer = b"".join(chunks)

            offset = 0
            for spec in group.weights:
                dtype = DTYPE_MAP[spec.dtype]
                nbytes = spec.num_elements * dtype.itemsize
                if offset + nbytes > len(buffer):
                    raise LoadError(
                        f"Shard data for '{spec.name}' is truncated: need {nbytes} bytes "
                        f"at offset {offset}, group has {len(buffer)}"
                    )
                values = np.frombuffer(
                    buffer, dtype=dtype, count=spec.num_elements, offset=offset
                )
                values = values.astype(dtype.newbyteorder("="), copy=True).reshape(spec.shape)
                arrays[spec.name] = torch.from_numpy(values)
                offset += nbytes

        if expected_ranks:
            cls.check_ranks(arrays, expected_ranks, source=str(path))
        return cls(arrays, tracker=tracker, source=str(path))

    @staticmethod
    def check_ranks(
        arrays: Mapping[str, torch.Tensor],
        expected_ranks: Mapping[str, int],
        source: str = "<memory>"
    ) -> None:
        """Raise LoadError if a required name is missing or has the wrong rank."""
        missing = [name for name in expected_ranks if name not in arrays]
        if missing:
            raise LoadError(f"Checkpoint {source} is missing parameters: {missing}")

        wrong = [
            f"{name} (rank {arrays[name].dim()}, expected {rank})"
            for name, rank in expected_ranks.items()
            if arrays[name].dim() != rank
        ]
        if wrong:
            raise LoadError(f"Checkpoint {source} has parameters of the wrong rank: {wrong}")

    def copy(self, tracker: Optional[ArrayTracker] = None) -> 'ParameterStore':
        """Independent store with cloned arrays (released separately)."""
        arrays = {name: tensor.clone() for name, tensor in self._checked().items()}
        return ParameterStore(
            arrays,
            tracker=tracker if tracker is not None else self.tracker,
            source=self.source
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────────────

    def _checked(self) -> Dict[str, torch.Tensor]:
        if self._arrays is None:
            raise EngineStateError(f"Parameter store {self.source} has been released")
        return self._arrays

    def __getitem__(self, name: str) -> torch.Tensor:
        arrays = self._checked()
        if name not in arrays:
            raise KeyError(f"Unknown parameter '{name}' in {self.source}")
        return arrays[name]

    def __contains__(self, name: str) -> bool:
        return name in self._checked()

    def __len__(self) -> int:
        return len(self._checked())

    def names(self) -> List[str]:
        return list(self._checked())

    @property
    def released(self) -> bool:
        return self._arrays is None

    @property
    def num_bytes(self) -> int:
        return sum(t.element_size() * t.nelement() for t in self._checked().values())

    # ─────────────────────────────────────────────────────────────────────────
    # Release
    # ─────────────────────────────────────────────────────────────────────────

    def release(self) -> None:
        """Free every array. Releasing twice is a no-op."""
        if self._arrays is None:
            return
        self.tracker.release(self._arrays.values())
        self._arrays = None


# =============================================================================
# MANIFEST WRITING
# =============================================================================

def save_manifest(
    arrays: Mapping[str, Union[torch.Tensor, np.ndarray]],
    directory: Union[str, Path],
    shard_name: str = DEFAULT_SHARD_NAME
) -> Path:
    """
    Write arrays as a single-group manifest plus one binary shard.

    Args:
        arrays: Name → array, written in iteration order
        directory: Output directory (created if missing)
        shard_name: File name of the shard

    Returns:
        Path of the written weights_manifest.json
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    specs = []
    with open(directory / shard_name, 'wb') as f:
        for name, value in arrays.items():
            if isinstance(value, torch.Tensor):
                value = value.detach().cpu().numpy()
            if np.issubdtype(value.dtype, np.integer):
                dtype_name = "int32"
            else:
                dtype_name = "float32"
            f.write(np.ascontiguousarray(value, dtype=DTYPE_MAP[dtype_name]).tobytes())
            specs.append({"name": name, "shape": list(value.shape), "dtype": dtype_name})

    manifest_path = directory / MANIFEST_FILENAME
    with open(manifest_path, 'w', encoding='utf-8') as f:
        json.dump([{"paths": [shard_name], "weights": specs}], f, indent=2)
    return manifest_path
