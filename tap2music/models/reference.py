"""
Reference PyTorch Modules for Tap2Music
=======================================

torch.nn versions of the two tap-to-pitch architectures. They define the
checkpoint layout (parameter names and shapes) that the hand-rolled engine
models in tap_model.py read, and they produce the reference traces the
self-test compares against.

Nothing here trains a model. The modules are used to:
    1. Export a checkpoint (weights manifest + shard) from a state dict
    2. Record a reference trace: feature rows + the logits nn.LSTM produces
    3. Cross-check the hand-rolled forward pass in the test-suite

Architecture Overview (TapLSTM):
    1. pitch index → nn.Embedding(89, 32)
    2. [pitch_emb, dt, dur, vel] → input_linear → 128
    3. nn.LSTM(128, 128, num_layers=2, batch_first=True)
    4. out_head: Linear(128,128) → ReLU → Dropout → Linear(128, 89)

HandTapLSTM additionally embeds the hand index and applies FiLM
(Linear → GELU → Linear) before and after the LSTM.

Example:
    manifest_path, trace_path = export_reference("model/", kind="uc", seed=0)
"""

from pathlib import Path
from typing import Dict, Optional, Tuple, Union
import copy

import numpy as np
import torch
import torch.nn as nn

from tap2music.data.loader import save_trace
from tap2music.data.schema import ReferenceTrace
from tap2music.models.params import save_manifest
from tap2music.models.tap_model import HAND_CONFIG, TAP_CONFIG


# =============================================================================
# CONFIGURATION
# =============================================================================

REFERENCE_CONFIG = {
    "dropout": 0.15,          # Only active in train mode; export uses eval()
    "trace_steps": 128,       # Rows in a recorded reference trace
    "trace_filename": "test.json",
    "state_prefix": "model.",  # Checkpoint names are "model.<module name>"
}


# =============================================================================
# UNCONDITIONAL MODEL
# =============================================================================

class TapLSTM(nn.Module):
    """
    Unconditional tap-to-pitch LSTM ("uc").

    Input rows are [pitch_idx, log1p(dt), log1p(dur), velocity]; the output
    is one logit vector over 88 keys + pad per step.

    Args:
        config: Architecture configuration (TAP_CONFIG if None)
    """

    default_config = TAP_CONFIG

    def __init__(self, config: Optional[Dict] = None):
        super().__init__()
        self.config = config if config else self.default_config.copy()

        self.n_pitches = self.config["n_pitches"]
        self.rnn_dim = self.config["rnn_dim"]
        self.num_layers = self.config["num_layers"]
        dropout = REFERENCE_CONFIG["dropout"]

        # ─────────────────────────────────────────────────────────────────────
        # Layer 1: Pitch embedding (89 tokens incl. pad → 32 dims)
        # ─────────────────────────────────────────────────────────────────────
        self.pitch_emb = nn.Embedding(self.n_pitches, self.config["pitch_emb_dim"])

        # ─────────────────────────────────────────────────────────────────────
        # Layer 2: Input projection (embedding + 3 scalars → rnn_dim)
        # ─────────────────────────────────────────────────────────────────────
        self.input_linear = nn.Linear(self._input_dim(), self.rnn_dim)

        # ─────────────────────────────────────────────────────────────────────
        # Layer 3: LSTM stack
        # ─────────────────────────────────────────────────────────────────────
        self.lstm = nn.LSTM(
            input_size=self.rnn_dim,
            hidden_size=self.rnn_dim,
            num_layers=self.num_layers,
            dropout=dropout if self.num_layers > 1 else 0,
            batch_first=True  # Input shape: [batch, seq, features]
        )

        # ─────────────────────────────────────────────────────────────────────
        # Layer 4: Output head (indices 0 and 3 carry the weights)
        # ─────────────────────────────────────────────────────────────────────
        self.out_head = nn.Sequential(
            nn.Linear(self.rnn_dim, self.config["head_dim"]),
            nn.ReLU(),
            nn.Dropout(dropout),
            nn.Linear(self.config["head_dim"], self.n_pitches),
        )

        self._build_conditioning()
        self._init_weights()

    def _input_dim(self) -> int:
        return self.config["pitch_emb_dim"] + self.config["num_scalars"]

    def _build_conditioning(self):
        """Extra layers of conditioned variants (none for the base model)."""

    def _init_weights(self):
        """
        Xavier for linear layers, orthogonal recurrent weights and a forget
        gate bias of 1 in both LSTM bias vectors.
        """
        nn.init.normal_(self.pitch_emb.weight, mean=0.0, std=0.1)

        for module in self.modules():
            if isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                nn.init.zeros_(module.bias)

        for name, param in self.lstm.named_parameters():
            if 'weight_ih' in name:
                nn.init.xavier_uniform_(param.data)
            elif 'weight_hh' in name:
                nn.init.orthogonal_(param.data)
            elif 'bias' in name:
                nn.init.zeros_(param.data)
                # Rows [H, 2H) are the forget gate in PyTorch's packing
                n = param.size(0)
                param.data[n // 4:n // 2].fill_(1.0)

    def _project(self, x: torch.Tensor) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        pitch_emb = self.pitch_emb(x[..., 0].long())
        z = torch.cat([pitch_emb, x[..., 1:4]], dim=-1)
        return self.input_linear(z), None

    def _film(self, z: torch.Tensor, conditioning: Optional[torch.Tensor], stage: str) -> torch.Tensor:
        return z

    def forward(
        self,
        x: torch.Tensor,
        hx: Optional[Tuple[torch.Tensor, torch.Tensor]] = None
    ) -> Tuple[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        """
        Run a whole sequence.

        Args:
            x: Feature rows [batch, seq_len, feature_width]
            hx: Optional (h, c), each [num_layers, batch, rnn_dim]

        Returns:
            logits [batch, seq_len, n_pitches] and the final (h, c)
        """
        z, conditioning = self._project(x)
        z = self._film(z, conditioning, "film_in")
        out, (h, c) = self.lstm(z, hx)
        out = self._film(out, conditioning, "film_out")
        return self.out_head(out), (h, c)

    def export_state(self) -> Dict[str, torch.Tensor]:
        """State dict renamed to checkpoint names ("model.lstm.weight_ih_l0", ...)."""
        prefix = REFERENCE_CONFIG["state_prefix"]
        return {f"{prefix}{name}": tensor.detach().clone() for name, tensor in self.state_dict().items()}


# =============================================================================
# HAND-CONDITIONED MODEL
# =============================================================================

class HandTapLSTM(TapLSTM):
    """
    Tap-to-pitch LSTM conditioned on the playing hand.

    Input rows carry a fifth column, the hand index (0 = left, 1 = right,
    2 = unknown). The hand embedding is concatenated to the input and
    drives two FiLM transforms around the LSTM.
    """

    default_config = HAND_CONFIG

    def _build_conditioning(self):
        hand_dim = self.config["hand_emb_dim"]
        film_dim = self.config["film_dim"]

        self.hand_emb = nn.Embedding(self.config["n_hands"], hand_dim)
        self.film_in = nn.Sequential(
            nn.Linear(hand_dim, film_dim),
            nn.GELU(approximate="tanh"),
            nn.Linear(film_dim, 2 * self.rnn_dim),
        )
        self.film_out = nn.Sequential(
            nn.Linear(hand_dim, film_dim),
            nn.GELU(approximate="tanh"),
            nn.Linear(film_dim, 2 * self.rnn_dim),
        )

    def _input_dim(self) -> int:
        return self.config["pitch_emb_dim"] + self.config["hand_emb_dim"] + self.config["num_scalars"]

    def _init_weights(self):
        super()._init_weights()
        nn.init.normal_(self.hand_emb.weight, mean=0.0, std=0.1)
        # Small non-zero FiLM output biases so the modulation is exercised
        for film in (self.film_in, self.film_out):
            nn.init.normal_(film[2].bias, mean=0.0, std=0.05)

    def _project(self, x: torch.Tensor) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        pitch_emb = self.pitch_emb(x[..., 0].long())
        hand_emb = self.hand_emb(x[..., 4].long())
        z = torch.cat([pitch_emb, hand_emb, x[..., 1:4]], dim=-1)
        return self.input_linear(z), hand_emb

    def _film(self, z: torch.Tensor, conditioning: Optional[torch.Tensor], stage: str) -> torch.Tensor:
        film = getattr(self, stage)(conditioning)
        gamma, beta = film.chunk(2, dim=-1)
        return z * (1.0 + gamma) + beta


REFERENCE_MODULES = {
    "uc": TapLSTM,
    "hand": HandTapLSTM,
}


# =============================================================================
# TRACE RECORDING / EXPORT
# =============================================================================

def make_reference_features(
    num_steps: int = REFERENCE_CONFIG["trace_steps"],
    with_hand: bool = False,
    seed: int = 0
) -> np.ndarray:
    """
    Plausible performance feature rows for a reference trace.

    The first row is the pad token with zero timing, like the first step of a
    live session. Timing columns are already log1p-compressed seconds.
    """
    rng = np.random.default_rng(seed)
    pad = TAP_CONFIG["n_pitches"] - 1

    pitches = rng.integers(0, pad, size=num_steps)
    pitches[0] = pad
    dt = rng.exponential(0.3, size=num_steps)
    dt[0] = 0.0
    dur = np.minimum(rng.exponential(0.2, size=num_steps), dt)
    velocity = rng.integers(20, 128, size=num_steps)

    columns = [pitches, np.log1p(dt), np.log1p(dur), velocity]
    if with_hand:
        columns.append(rng.integers(0, HAND_CONFIG["n_hands"], size=num_steps))
    return np.stack(columns, axis=1).astype(np.float32)


@torch.no_grad()
def record_trace(model: TapLSTM, feats: Union[np.ndarray, torch.Tensor]) -> ReferenceTrace:
    """
    Run ``feats`` through ``model`` as one sequence and record the logits.

    The logits are computed in float64 on a copy of the model, so a float32
    forward pass is only measured against its own rounding error.
    """
    reference = copy.deepcopy(model).double().eval()
    x = torch.as_tensor(feats, dtype=torch.float32).unsqueeze(0)   # [1, T, F]
    logits, _ = reference(x.double())
    return ReferenceTrace(
        feats=x[0].tolist(),
        pitch_logits=logits[0].tolist(),
    )


def export_reference(
    directory: Union[str, Path],
    kind: str = "uc",
    seed: int = 0,
    num_steps: int = REFERENCE_CONFIG["trace_steps"]
) -> Tuple[Path, Path]:
    """
    Write a seeded reference checkpoint and its recorded trace.

    The weights are freshly initialised (not trained). This gives a complete,
    self-consistent checkpoint for development and for the self-test.

    Args:
        directory: Output directory
        kind: "uc" or "hand"
        seed: Seed for both the weights and the trace features
        num_steps: Rows in the trace

    Returns:
        Tuple of (manifest path, trace path)
    """
    if kind not in REFERENCE_MODULES:
        raise ValueError(f"Unknown model kind '{kind}'. Valid kinds: {sorted(REFERENCE_MODULES)}")

    torch.manual_seed(seed)
    model = REFERENCE_MODULES[kind]()
    model.eval()

    directory = Path(directory)
    manifest_path = save_manifest(model.export_state(), directory)

    feats = make_reference_features(num_steps, with_hand=(kind == "hand"), seed=seed)
    trace_path = save_trace(record_trace(model, feats), directory / REFERENCE_CONFIG["trace_filename"])
    return manifest_path, trace_path
