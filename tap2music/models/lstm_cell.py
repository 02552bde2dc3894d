"""
Hand-Rolled LSTM Cell
=====================

A single LSTM step written out explicitly so the engine can run one event
at a time without torch.nn modules, using only the raw checkpoint arrays.

Gate packing:
    The checkpoint stores each layer as four arrays in PyTorch's layout:
        weight_ih [4H, I], weight_hh [4H, H], bias_ih [4H], bias_hh [4H]
    The 4H rows are packed as [input, forget, new, output]. TensorFlow's
    basicLSTMCell packs [input, new, forget, output] instead; decoding the
    slices in the wrong order still runs, but produces a silently wrong model.
    GATE_ORDER is the single source of truth for the slice order.

Step:
    res   = [x, h] @ [W_ih, W_hh]^T + (b_ih + b_hh)
    i,f,g,o = split(res)                 (GATE_ORDER)
    c'    = sigmoid(i) * tanh(g) + c * sigmoid(FORGET_BIAS + f)
    h'    = tanh(c') * sigmoid(o)
"""

from typing import Dict, List, Optional, Sequence, Tuple

import torch

from tap2music.errors import EngineStateError
from tap2music.models.params import ArrayTracker, default_tracker


# =============================================================================
# CONFIGURATION
# =============================================================================

GATE_ORDER = ("input", "forget", "new", "output")

# Fixed constant, not a learned parameter (PyTorch folds it into the biases)
FORGET_BIAS = 0.0


# =============================================================================
# HIDDEN STATE
# =============================================================================

class HiddenState:
    """
    Recurrent memory of a stacked LSTM: one (c, h) pair per layer.

    A hidden state has exactly one owner. The owner must call dispose()
    once the state is superseded; disposing twice, or feeding a disposed
    state back into the model, raises EngineStateError.

    Attributes:
        c: Cell memory per layer, each [batch, dim]
        h: Hidden output per layer, each [batch, dim]
    """

    def __init__(
        self,
        c: Sequence[torch.Tensor],
        h: Sequence[torch.Tensor],
        tracker: Optional[ArrayTracker] = None
    ):
        if len(c) != len(h):
            raise ValueError(
                f"Invalid shapes: {len(c)} cell arrays but {len(h)} hidden arrays"
            )
        self.c: List[torch.Tensor] = list(c)
        self.h: List[torch.Tensor] = list(h)
        self.tracker = tracker if tracker is not None else default_tracker
        self._disposed = False
        self.tracker.register(self.c + self.h)

    @property
    def num_layers(self) -> int:
        return len(self.c)

    @property
    def shape(self) -> Tuple[int, int]:
        """[batch, dim] of each layer array."""
        return tuple(self.h[0].shape) if self.h else (0, 0)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def check_alive(self) -> None:
        if self._disposed:
            raise EngineStateError("Hidden state has already been disposed")

    def dispose(self) -> None:
        self.check_alive()
        self.tracker.release(self.c + self.h)
        self.c = []
        self.h = []
        self._disposed = True

    def __repr__(self) -> str:
        if self._disposed:
            return "HiddenState(disposed)"
        return f"HiddenState(layers={self.num_layers}, shape={list(self.shape)})"


def zeros_hidden(
    num_layers: int,
    batch_size: int,
    dim: int,
    tracker: Optional[ArrayTracker] = None
) -> HiddenState:
    """Zero-filled hidden state (allocates memory the caller must dispose)."""
    c = [torch.zeros(batch_size, dim, dtype=torch.float32) for _ in range(num_layers)]
    h = [torch.zeros(batch_size, dim, dtype=torch.float32) for _ in range(num_layers)]
    return HiddenState(c, h, tracker=tracker)


# =============================================================================
# CELL
# =============================================================================

def split_gates(res: torch.Tensor) -> Dict[str, torch.Tensor]:
    """
    Decode the packed pre-activations [batch, 4H] into named gates.

    Example:
        >>> gates = split_gates(torch.arange(8.0).reshape(1, 8))
        >>> gates["forget"]
        tensor([[2., 3.]])
    """
    width = res.shape[1]
    if width % 4 != 0:
        raise ValueError(f"Packed gate width must be divisible by 4. Got: {width}")
    slice_cols = width // 4
    return {
        name: res[:, k * slice_cols:(k + 1) * slice_cols]
        for k, name in enumerate(GATE_ORDER)
    }


def lstm_cell(
    x: torch.Tensor,
    c: torch.Tensor,
    h: torch.Tensor,
    weight_ih: torch.Tensor,
    weight_hh: torch.Tensor,
    bias_ih: torch.Tensor,
    bias_hh: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    One LSTM step. Pure: no argument is modified.

    Args:
        x: Layer input [batch, I]
        c: Previous cell memory [batch, H]
        h: Previous hidden output [batch, H]
        weight_ih: Input-to-gates weight [4H, I]
        weight_hh: Hidden-to-gates weight [4H, H]
        bias_ih: Input-to-gates bias [4H]
        bias_hh: Hidden-to-gates bias [4H]

    Returns:
        Tuple of (new_c, new_h), each [batch, H]; owned by the caller
    """
    kernel = torch.cat([weight_ih, weight_hh], dim=1).t()   # [I+H, 4H]
    bias = bias_ih + bias_hh

    combined = torch.cat([x, h], dim=1)                      # [batch, I+H]
    res = combined @ kernel + bias                           # [batch, 4H]

    gates = split_gates(res)
    i = gates["input"]
    f = gates["forget"]
    g = gates["new"]
    o = gates["output"]

    new_c = torch.sigmoid(i) * torch.tanh(g) + c * torch.sigmoid(FORGET_BIAS + f)
    new_h = torch.tanh(new_c) * torch.sigmoid(o)
    return new_c, new_h


class RecurrentCell:
    """
    One LSTM layer bound to its four checkpoint arrays.

    The cell only references the arrays; the ParameterStore keeps owning
    them. Calling the cell runs lstm_cell().

    Example:
        >>> cell = RecurrentCell.from_store(store, layer=0)
        >>> new_c, new_h = cell(x, c, h)
    """

    def __init__(
        self,
        weight_ih: torch.Tensor,
        weight_hh: torch.Tensor,
        bias_ih: torch.Tensor,
        bias_hh: torch.Tensor
    ):
        gate_rows = weight_ih.shape[0]
        if gate_rows % 4 != 0 or weight_hh.shape != (gate_rows, gate_rows // 4):
            raise ValueError(
                f"Inconsistent LSTM weights: weight_ih {list(weight_ih.shape)}, "
                f"weight_hh {list(weight_hh.shape)}"
            )
        if bias_ih.shape != (gate_rows,) or bias_hh.shape != (gate_rows,):
            raise ValueError(
                f"LSTM biases must have shape [{gate_rows}]. Got: "
                f"{list(bias_ih.shape)}, {list(bias_hh.shape)}"
            )
        self.weight_ih = weight_ih
        self.weight_hh = weight_hh
        self.bias_ih = bias_ih
        self.bias_hh = bias_hh
        self.input_size = weight_ih.shape[1]
        self.hidden_size = gate_rows // 4

    @classmethod
    def from_store(cls, store, layer: int, prefix: str = "model.lstm") -> 'RecurrentCell':
        return cls(
            store[f"{prefix}.weight_ih_l{layer}"],
            store[f"{prefix}.weight_hh_l{layer}"],
            store[f"{prefix}.bias_ih_l{layer}"],
            store[f"{prefix}.bias_hh_l{layer}"],
        )

    def __call__(
        self,
        x: torch.Tensor,
        c: torch.Tensor,
        h: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        return lstm_cell(x, c, h, self.weight_ih, self.weight_hh, self.bias_ih, self.bias_hh)
