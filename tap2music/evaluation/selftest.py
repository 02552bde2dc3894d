"""
Numerical Self-Test
===================

Replays a recorded reference trace through a freshly built model and checks
that the hand-rolled forward pass reproduces the recorded logits. A wrong
gate order, a transposed weight or a bias applied twice all still produce
plausible-looking pitches; only a numeric comparison catches them.

Procedure:
    1. Snapshot the tracker (arrays/bytes currently registered)
    2. Build a fresh model, replay every row, threading the hidden state
       exactly like the engine does, and accumulate sum(|actual - expected|)
    3. Dispose every hidden state, release the model's parameters
    4. Compare the tracker against the snapshot (a difference is a leak
       and is logged, not raised)
    5. NaN or total error above the hard threshold → SelfTestError;
       above the advisory threshold → warning only

Example:
    result = run_self_test(
        lambda: TapModel(ParameterStore.from_manifest("model/")),
        load_trace("model/test.json")
    )
    print(result)
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import math

import torch
from tqdm import tqdm

from tap2music.data.schema import ReferenceTrace
from tap2music.errors import SelfTestError
from tap2music.models.params import ArrayTracker, default_tracker
from tap2music.models.tap_model import TapModel

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# Sum of absolute logit error over the whole trace (128 steps x 89 classes)
SELF_TEST_THRESHOLD = 0.03
SELF_TEST_ADVISORY = 0.015


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class SelfTestResult:
    """Outcome of a self-test run that stayed under the hard threshold."""

    total_error: float
    num_steps: int
    advisory: bool = False
    leaked_arrays: int = 0
    leaked_bytes: int = 0

    @property
    def leaked(self) -> bool:
        return self.leaked_arrays != 0 or self.leaked_bytes != 0

    def __str__(self) -> str:
        status = "PASSED (advisory warning)" if self.advisory else "PASSED"
        lines = [f"Self-test {status}: total error {self.total_error:.6f} over {self.num_steps} steps"]
        if self.leaked:
            lines.append(f"  Memory difference: {self.leaked_arrays} arrays, {self.leaked_bytes} bytes")
        return "\n".join(lines)


# =============================================================================
# HARNESS
# =============================================================================

def run_self_test(
    model_factory: Callable[[], TapModel],
    trace: ReferenceTrace,
    threshold: float = SELF_TEST_THRESHOLD,
    advisory_threshold: float = SELF_TEST_ADVISORY,
    tracker: Optional[ArrayTracker] = None,
    progress: bool = False
) -> SelfTestResult:
    """
    Replay ``trace`` through a fresh model and compare logits.

    Args:
        model_factory: Builds a NEW model with its own parameter store; the
                       harness releases it when done
        trace: Reference features and expected logits
        threshold: Hard failure threshold for the summed absolute error
        advisory_threshold: Warning threshold
        tracker: Tracker the factory registers arrays with (default tracker)
        progress: Show a tqdm progress bar while replaying

    Returns:
        SelfTestResult

    Raises:
        SelfTestError: If the error is NaN or above ``threshold``, or the
                       trace does not fit the model
    """
    tracker = tracker if tracker is not None else default_tracker
    before = tracker.memory()

    model = model_factory()
    total_error = 0.0
    hidden = None
    try:
        if trace.feature_width != model.feature_width:
            raise SelfTestError(
                f"Trace rows have {trace.feature_width} features, model expects {model.feature_width}"
            )

        steps = tqdm(
            zip(trace.feats, trace.pitch_logits),
            total=trace.num_steps,
            desc="Self-test",
            disable=not progress
        )
        for row, expected_row in steps:
            feat = torch.tensor([row], dtype=torch.float32)
            logits, next_hidden = model.forward(feat, hidden)

            expected = torch.tensor([expected_row], dtype=torch.float64)
            if expected.shape != logits.shape:
                next_hidden.dispose()
                raise SelfTestError(
                    f"Trace logits have shape {list(expected.shape)}, model produced {list(logits.shape)}"
                )
            total_error += float((logits.double() - expected).abs().sum())

            if hidden is not None:
                hidden.dispose()
            hidden = next_hidden
    finally:
        if hidden is not None and not hidden.disposed:
            hidden.dispose()
        model.release()

    after = tracker.memory()
    result = SelfTestResult(
        total_error=total_error,
        num_steps=trace.num_steps,
        leaked_arrays=after.num_arrays - before.num_arrays,
        leaked_bytes=after.num_bytes - before.num_bytes,
    )
    if result.leaked:
        logger.warning(
            "Memory difference found after self-test: %d arrays, %d bytes",
            result.leaked_arrays, result.leaked_bytes
        )

    if math.isnan(total_error) or total_error > threshold:
        raise SelfTestError(
            f"Self-test failed with total error {total_error:.6f} (threshold {threshold})",
            total_error=total_error
        )
    if total_error > advisory_threshold:
        result.advisory = True
        logger.warning("Self-test total error %.6f exceeds advisory threshold %s",
                       total_error, advisory_threshold)

    logger.info("Passed self-test with total error %.6f", total_error)
    return result
