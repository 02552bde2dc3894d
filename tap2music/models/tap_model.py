"""
Tap2Music Sequence Models
=========================

Single-step forward passes over the raw checkpoint arrays. Each call takes
one feature row per stream plus the previous hidden state and returns the
pitch logits together with a NEW hidden state.

Architecture Overview (TapModel, the unconditional "uc" model):
    1. Pitch index (0-88, 88 = pad) → embedding (32 dims)
    2. [pitch_emb, log1p(dt), log1p(dur), velocity] → input_linear → 128
    3. 2 stacked LSTM cells (hand-rolled, see lstm_cell.py)
    4. Output head: Linear(128, 128) → ReLU → Linear(128, 89)

HandTapModel adds a hand index (0 = left, 1 = right, 2 = unknown):
    - the hand embedding (16 dims) joins the input concatenation
    - a FiLM transform of the hand embedding (Linear → GELU → Linear)
      modulates features before and after the LSTM stack:
          x → x * (1 + gamma) + beta

Checkpoint names follow the PyTorch module that produced them, e.g.
"model.lstm.weight_ih_l0" or "model.out_head.3.bias" (index 3 because the
training head is Linear, ReLU, Dropout, Linear).

Example:
    store = ParameterStore.from_manifest("model/", TapModel.parameter_ranks())
    model = TapModel(store)

    feat = torch.tensor([[88, 0.0, 0.0, 64.0]])      # pad token
    logits, hidden = model.forward(feat)            # [1, 89], 2 layers
    logits, next_hidden = model.forward(feat, hidden)
    hidden.dispose()                                # caller owns states
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union
import math

import torch

from tap2music.errors import LoadError, VocabularyRangeError
from tap2music.models.lstm_cell import HiddenState, RecurrentCell, zeros_hidden
from tap2music.models.params import ParameterStore


# =============================================================================
# CONFIGURATION
# =============================================================================

PIANO_NUM_KEYS = 88

TAP_CONFIG = {
    # Vocabulary: 88 piano keys + 1 pad/start token (the last index)
    "n_pitches": PIANO_NUM_KEYS + 1,
    "pitch_emb_dim": 32,

    # Scalar features after the embedding: dt, dur, vel
    "num_scalars": 3,

    # Recurrent stack
    "rnn_dim": 128,
    "num_layers": 2,

    # Output head hidden width
    "head_dim": 128,
}

HAND_CONFIG = {
    **TAP_CONFIG,

    # Hands: 0 = left, 1 = right, 2 = unknown
    "n_hands": 3,
    "hand_emb_dim": 16,

    # Hidden width of the FiLM transform
    "film_dim": 64,
}

GELU_COEFF = math.sqrt(2.0 / math.pi)


# =============================================================================
# HELPERS
# =============================================================================

def gelu(x: torch.Tensor) -> torch.Tensor:
    """GELU, tanh approximation: 0.5x(1 + tanh(sqrt(2/pi)(x + 0.044715x^3)))."""
    return 0.5 * x * (1.0 + torch.tanh(GELU_COEFF * (x + 0.044715 * x.pow(3))))


def linear(x: torch.Tensor, weight: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
    """x @ W^T + b (PyTorch Linear layout: weight is [out, in])."""
    return x @ weight.t() + bias


def as_features(feat: Union[torch.Tensor, Sequence[Sequence[float]]], width: int) -> torch.Tensor:
    """Coerce a feature batch to a float32 tensor [batch, width]."""
    if not isinstance(feat, torch.Tensor):
        feat = torch.tensor(feat, dtype=torch.float32)
    feat = feat.to(torch.float32)
    if feat.dim() == 1:
        feat = feat.unsqueeze(0)
    if feat.dim() != 2 or feat.shape[1] != width:
        raise ValueError(f"Expected features of shape [batch, {width}]. Got: {list(feat.shape)}")
    return feat


def lookup_index(values: torch.Tensor, size: int, what: str) -> torch.Tensor:
    """
    Convert a float index column to int64, checking it lies in [0, size - 1].

    Raises:
        VocabularyRangeError: If any index is out of range or not finite
    """
    bad = ~torch.isfinite(values) | (values < 0) | (values > size - 1)
    if bool(bad.any()):
        raise VocabularyRangeError(
            f"{what} index out of range [0, {size - 1}]: {values[bad].tolist()}"
        )
    return values.long()


# =============================================================================
# BASE MODEL
# =============================================================================

class TapModel:
    """
    Unconditional tap-to-pitch model ("uc").

    The model references the arrays in its ParameterStore and never copies
    them. It holds no per-stream state: all recurrent memory travels in the
    HiddenState objects passed to and returned from forward().

    Attributes:
        store: ParameterStore with the checkpoint arrays
        cells: One RecurrentCell per LSTM layer
        n_pitches: Vocabulary size (89)
        pad_index: Pad/start token index (88)
        feature_width: Columns of a feature row (4)

    Args:
        store: Loaded parameters
        config: Architecture configuration (TAP_CONFIG if None)

    Raises:
        LoadError: If the store is missing an array or an array has the
                   wrong shape for this architecture
    """

    feature_width = 4
    default_config = TAP_CONFIG

    def __init__(self, store: ParameterStore, config: Optional[Dict] = None):
        self.config = config if config else self.default_config.copy()
        self.store = store
        self.tracker = store.tracker

        self.n_pitches = self.config["n_pitches"]
        self.pad_index = self.n_pitches - 1
        self.rnn_dim = self.config["rnn_dim"]
        self.num_layers = self.config["num_layers"]

        self._check_structure()
        self.cells: List[RecurrentCell] = [
            RecurrentCell.from_store(store, layer) for layer in range(self.num_layers)
        ]

    # ─────────────────────────────────────────────────────────────────────────
    # Structure
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def expected_shapes(cls, config: Optional[Dict] = None) -> Dict[str, Tuple[int, ...]]:
        """Name → shape of every array this architecture reads."""
        cfg = config if config else cls.default_config
        rnn = cfg["rnn_dim"]
        shapes = {
            "model.pitch_emb.weight": (cfg["n_pitches"], cfg["pitch_emb_dim"]),
            "model.input_linear.weight": (rnn, cls._input_dim(cfg)),
            "model.input_linear.bias": (rnn,),
            "model.out_head.0.weight": (cfg["head_dim"], rnn),
            "model.out_head.0.bias": (cfg["head_dim"],),
            "model.out_head.3.weight": (cfg["n_pitches"], cfg["head_dim"]),
            "model.out_head.3.bias": (cfg["n_pitches"],),
        }
        for layer in range(cfg["num_layers"]):
            shapes[f"model.lstm.weight_ih_l{layer}"] = (4 * rnn, rnn)
            shapes[f"model.lstm.weight_hh_l{layer}"] = (4 * rnn, rnn)
            shapes[f"model.lstm.bias_ih_l{layer}"] = (4 * rnn,)
            shapes[f"model.lstm.bias_hh_l{layer}"] = (4 * rnn,)
        return shapes

    @classmethod
    def parameter_ranks(cls, config: Optional[Dict] = None) -> Dict[str, int]:
        """Name → rank, as expected by ParameterStore.from_manifest()."""
        return {name: len(shape) for name, shape in cls.expected_shapes(config).items()}

    @staticmethod
    def _input_dim(cfg: Dict) -> int:
        return cfg["pitch_emb_dim"] + cfg["num_scalars"]

    def _check_structure(self) -> None:
        ParameterStore.check_ranks(
            {name: self.store[name] for name in self.store.names()},
            self.parameter_ranks(self.config),
            source=self.store.source
        )
        wrong = [
            f"{name} {list(self.store[name].shape)} (expected {list(shape)})"
            for name, shape in self.expected_shapes(self.config).items()
            if tuple(self.store[name].shape) != shape
        ]
        if wrong:
            raise LoadError(f"Checkpoint {self.store.source} does not match the model: {wrong}")

    # ─────────────────────────────────────────────────────────────────────────
    # Hidden state
    # ─────────────────────────────────────────────────────────────────────────

    def init_hidden(self, batch_size: int = 1) -> HiddenState:
        """Zero hidden state. Allocates arrays the caller must dispose."""
        return zeros_hidden(self.num_layers, batch_size, self.rnn_dim, tracker=self.tracker)

    # ─────────────────────────────────────────────────────────────────────────
    # Hooks overridden by conditioned variants
    # ─────────────────────────────────────────────────────────────────────────

    def _embed(self, feat: torch.Tensor) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """Build the projected LSTM input; returns (x, conditioning)."""
        pitch_idx = lookup_index(feat[:, 0], self.n_pitches, "Pitch")
        pitch_emb = self.store["model.pitch_emb.weight"][pitch_idx]        # [B, 32]

        x = torch.cat([pitch_emb, feat[:, 1:4]], dim=1)                    # [B, 35]
        x = linear(x, self.store["model.input_linear.weight"],
                   self.store["model.input_linear.bias"])                   # [B, 128]
        return x, None

    def _modulate(self, x: torch.Tensor, conditioning: Optional[torch.Tensor], stage: str) -> torch.Tensor:
        return x

    # ─────────────────────────────────────────────────────────────────────────
    # Forward
    # ─────────────────────────────────────────────────────────────────────────

    @torch.no_grad()
    def forward(
        self,
        feat: Union[torch.Tensor, Sequence[Sequence[float]]],
        hidden: Optional[HiddenState] = None
    ) -> Tuple[torch.Tensor, HiddenState]:
        """
        Run one step for a batch of streams.

        Args:
            feat: Feature rows [batch, feature_width]
            hidden: Previous state (zeros if None). Not disposed here; the
                    caller still owns it.

        Returns:
            Tuple of (logits [batch, n_pitches], new HiddenState owned by
            the caller)

        Raises:
            VocabularyRangeError: Pitch (or hand) index outside the vocabulary
            ValueError: Wrong feature width or batch size mismatch
        """
        feat = as_features(feat, self.feature_width)
        batch_size = feat.shape[0]

        # Temporaries below are plain locals, released when the call returns
        if hidden is None:
            c = [torch.zeros(batch_size, self.rnn_dim) for _ in range(self.num_layers)]
            h = [torch.zeros(batch_size, self.rnn_dim) for _ in range(self.num_layers)]
        else:
            hidden.check_alive()
            if hidden.num_layers != self.num_layers or hidden.shape != (batch_size, self.rnn_dim):
                raise ValueError(
                    f"Hidden state {hidden!r} does not fit batch {batch_size} "
                    f"with {self.num_layers} layers of {self.rnn_dim}"
                )
            c = list(hidden.c)
            h = list(hidden.h)

        x, conditioning = self._embed(feat)
        x = self._modulate(x, conditioning, "film_in")

        for layer, cell in enumerate(self.cells):
            c[layer], h[layer] = cell(x, c[layer], h[layer])
            x = h[layer]

        x = self._modulate(x, conditioning, "film_out")

        y = linear(x, self.store["model.out_head.0.weight"], self.store["model.out_head.0.bias"])
        y = torch.relu(y)
        logits = linear(y, self.store["model.out_head.3.weight"], self.store["model.out_head.3.bias"])

        return logits, HiddenState(c, h, tracker=self.tracker)

    def release(self) -> None:
        """Release the parameter store. The model is unusable afterwards."""
        self.cells = []
        self.store.release()


# =============================================================================
# HAND-CONDITIONED MODEL
# =============================================================================

class HandTapModel(TapModel):
    """
    Tap-to-pitch model conditioned on which hand played the note.

    Feature rows carry a fifth column: the hand index (0 = left,
    1 = right, 2 = unknown).
    """

    feature_width = 5
    default_config = HAND_CONFIG

    def __init__(self, store: ParameterStore, config: Optional[Dict] = None):
        super().__init__(store, config)
        self.n_hands = self.config["n_hands"]

    @classmethod
    def expected_shapes(cls, config: Optional[Dict] = None) -> Dict[str, Tuple[int, ...]]:
        cfg = config if config else cls.default_config
        shapes = super().expected_shapes(cfg)
        shapes["model.hand_emb.weight"] = (cfg["n_hands"], cfg["hand_emb_dim"])
        for stage in ("film_in", "film_out"):
            shapes[f"model.{stage}.0.weight"] = (cfg["film_dim"], cfg["hand_emb_dim"])
            shapes[f"model.{stage}.0.bias"] = (cfg["film_dim"],)
            shapes[f"model.{stage}.2.weight"] = (2 * cfg["rnn_dim"], cfg["film_dim"])
            shapes[f"model.{stage}.2.bias"] = (2 * cfg["rnn_dim"],)
        return shapes

    @staticmethod
    def _input_dim(cfg: Dict) -> int:
        return cfg["pitch_emb_dim"] + cfg["hand_emb_dim"] + cfg["num_scalars"]

    def _embed(self, feat: torch.Tensor) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        pitch_idx = lookup_index(feat[:, 0], self.n_pitches, "Pitch")
        hand_idx = lookup_index(feat[:, 4], self.config["n_hands"], "Hand")

        pitch_emb = self.store["model.pitch_emb.weight"][pitch_idx]        # [B, 32]
        hand_emb = self.store["model.hand_emb.weight"][hand_idx]           # [B, 16]

        x = torch.cat([pitch_emb, hand_emb, feat[:, 1:4]], dim=1)          # [B, 51]
        x = linear(x, self.store["model.input_linear.weight"],
                   self.store["model.input_linear.bias"])
        return x, hand_emb

    def _modulate(self, x: torch.Tensor, conditioning: Optional[torch.Tensor], stage: str) -> torch.Tensor:
        # FiLM: per-feature scale and shift computed from the hand embedding
        film = linear(conditioning, self.store[f"model.{stage}.0.weight"],
                      self.store[f"model.{stage}.0.bias"])
        film = gelu(film)
        film = linear(film, self.store[f"model.{stage}.2.weight"],
                      self.store[f"model.{stage}.2.bias"])
        gamma, beta = film.chunk(2, dim=1)
        return x * (1.0 + gamma) + beta
