"""
Inference Engines - Tap Timing In, Piano Pitch Out
==================================================

An engine owns one autoregressive session. Each note-on event is turned into
a feature row (previous pitch, time since the previous event, duration of the
previous note, velocity), run through the sequence model together with the
previous hidden state, and a pitch is sampled from the resulting logits.

Lifecycle:
    IDLE  ──load()──▶  WARM  ──predict()──▶  RUNNING
                        ▲                       │
                        └────────reset()────────┘
    any state ──dispose()──▶ DISPOSED

    - load() seeds the hidden state with one pad-token pass
    - self_test() runs once per process per engine kind and may be called
      before load() (it builds its own model)
    - dispose() during a predict step is applied when the step returns
    - a failed self-test leaves the engine unusable until it is disposed

Engine kinds:
    - "uc":    TapEngine, unconditional model
    - "hand":  HandTapEngine, conditioned on the playing hand
    - "dummy": DummyEngine, no model; echoes or picks a random pitch

Usage:
    from tap2music.app.engine import create_engine

    engine = create_engine("uc", checkpoint="model/", trace="model/test.json", seed=7)
    engine.self_test()
    engine.load()

    pitch = engine.note_on(pitch=60, time=1200.0, velocity=80)   # 21-108
    engine.note_off(time=1450.0)
    engine.update_config(strategy="nucleus", top_p=0.9)
    engine.dispose()
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Set, Type, Union
import logging
import math
import time

import numpy as np

from tap2music.data.loader import load_trace
from tap2music.data.schema import EngineSettings, ReferenceTrace, SamplingConfig
from tap2music.errors import EngineStateError, LoadError, SelfTestError, VocabularyRangeError
from tap2music.evaluation.selftest import SelfTestResult, run_self_test
from tap2music.models.lstm_cell import HiddenState
from tap2music.models.params import ArrayTracker, ParameterStore, default_tracker
from tap2music.models.sampling import mask_logits, sample_pitch
from tap2music.models.tap_model import HandTapModel, PIANO_NUM_KEYS, TapModel

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

ENGINE_CONFIG = {
    # Class 0 is MIDI note 21 (A0); class 87 is MIDI note 108 (C8)
    "pitch_offset": 21,

    # Velocity used when a note-on carries none
    "default_velocity": 64,

    # Tapped keys below this pitch are played by the left hand
    "hand_split_pitch": 60,

    # Event times arrive in milliseconds; features use seconds
    "ms_per_second": 1000.0,
}

MIN_PITCH = ENGINE_CONFIG["pitch_offset"]
MAX_PITCH = ENGINE_CONFIG["pitch_offset"] + PIANO_NUM_KEYS - 1

# Hand indices of the hand-conditioned model
HAND_LEFT = 0
HAND_RIGHT = 1
HAND_UNKNOWN = 2


# =============================================================================
# STATE
# =============================================================================

class EngineState(Enum):
    IDLE = "idle"
    WARM = "warm"
    RUNNING = "running"
    DISPOSED = "disposed"


@dataclass
class NoteContext:
    """
    Conditioning information that accompanies a note-on.

    Attributes:
        pitch: MIDI pitch of the key the user tapped (if any)
        hand: Explicit hand index (0 = left, 1 = right, 2 = unknown)
    """
    pitch: Optional[int] = None
    hand: Optional[int] = None


@dataclass
class EngineSession:
    """
    Autoregressive context carried from one predict step to the next.

    Times are in seconds. ``last_event_time`` is None until the first
    note-on after load/reset, which makes the next delta time 0.
    """
    last_pitch_index: int
    last_event_time: Optional[float] = None
    last_duration: float = 0.0
    hidden: Optional[HiddenState] = field(default=None, repr=False)


# =============================================================================
# BASE ENGINE
# =============================================================================

class BaseInferenceEngine:
    """
    Shared lifecycle of every engine kind.

    Subclasses choose the model class and override prepare_input(); load,
    self-test, predict, reset and dispose behave identically for all of them.

    Args:
        checkpoint: Manifest file or checkpoint directory
        store: Already loaded ParameterStore (used instead of ``checkpoint``;
               the engine releases it on dispose)
        trace: Reference trace (path or ReferenceTrace) for self_test()
        sampling: Initial sampling configuration
        seed: Seed of the sampler's random generator
        tracker: ArrayTracker for parameters and hidden states
    """

    kind: ClassVar[str] = ""
    model_class: ClassVar[Optional[Type[TapModel]]] = TapModel

    # Engine kinds whose self-test passed in this process
    _self_tested: ClassVar[Set[str]] = set()

    def __init__(
        self,
        checkpoint: Optional[Union[str, Path]] = None,
        store: Optional[ParameterStore] = None,
        trace: Optional[Union[str, Path, ReferenceTrace]] = None,
        sampling: Optional[SamplingConfig] = None,
        seed: Optional[int] = None,
        tracker: Optional[ArrayTracker] = None
    ):
        self.checkpoint = checkpoint
        self.trace = trace
        self.sampling = sampling if sampling is not None else SamplingConfig()
        self.rng = np.random.default_rng(seed)

        self._store = store
        if tracker is not None:
            self.tracker = tracker
        elif store is not None:
            self.tracker = store.tracker
        else:
            self.tracker = default_tracker

        self.model: Optional[TapModel] = None
        self.state = EngineState.IDLE
        self.session: Optional[EngineSession] = None
        self.self_test_result: Optional[SelfTestResult] = None

        self._busy = False
        self._dispose_pending = False
        self._self_test_failed = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self.state.value}, sampling={self.sampling!r})"

    @property
    def is_ready(self) -> bool:
        """True once loaded and until disposed or a failed self-test; gate user input on this."""
        return (
            self.state in (EngineState.WARM, EngineState.RUNNING)
            and not self._dispose_pending
            and not self._self_test_failed
        )

    @property
    def pad_index(self) -> int:
        return PIANO_NUM_KEYS

    # ─────────────────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────────────────

    def _open_store(self) -> ParameterStore:
        if self._store is not None:
            return self._store
        if self.checkpoint is None:
            raise LoadError(f"No checkpoint configured for the '{self.kind}' engine")
        return ParameterStore.from_manifest(
            self.checkpoint,
            expected_ranks=self.model_class.parameter_ranks(),
            tracker=self.tracker
        )

    def _build_model(self, store: Optional[ParameterStore] = None) -> Optional[TapModel]:
        owned = store if store is not None else self._open_store()
        try:
            return self.model_class(owned)
        except LoadError:
            if owned is not self._store:
                owned.release()
            raise

    def load(self) -> None:
        """
        Acquire parameters, build the model and seed the hidden state.

        Raises:
            LoadError: Checkpoint missing, malformed or not matching the model
            EngineStateError: The engine was already loaded or disposed
        """
        if self.state is not EngineState.IDLE:
            raise EngineStateError(f"Cannot load a {self.state.value} engine")
        if self._self_test_failed:
            raise EngineStateError(f"Cannot load a '{self.kind}' engine that failed its self-test")

        self.model = self._build_model()
        self.session = EngineSession(last_pitch_index=self.pad_index)
        self._seed()
        self.state = EngineState.WARM
        logger.info("Loaded '%s' engine", self.kind)

    def _seed(self) -> None:
        """Run one pad-token step to initialise the hidden state."""
        row = self.prepare_input(self.pad_index, 0.0, 0.0, 0.0, NoteContext())
        _, self.session.hidden = self.model.forward([row])

    # ─────────────────────────────────────────────────────────────────────────
    # Self-test
    # ─────────────────────────────────────────────────────────────────────────

    def _self_test_model(self) -> TapModel:
        # Never the engine's own store: the harness releases what it gets
        if self._store is not None:
            return self._build_model(self._store.copy())
        return self._build_model()

    def self_test(self, force: bool = False, progress: bool = False) -> Optional[SelfTestResult]:
        """
        Compare the forward pass against the reference trace.

        Runs once per process per engine kind; later calls return None
        unless ``force`` is set. The engine's own model (if loaded) is not
        touched.

        Raises:
            SelfTestError: Error above the hard threshold or NaN; the engine
                is unusable afterwards and the kind is tested again next time
            LoadError: No trace configured, or trace/checkpoint unreadable
        """
        if self.state is EngineState.DISPOSED:
            raise EngineStateError("Cannot self-test a disposed engine")
        if self.kind in self._self_tested and not force:
            logger.debug("Self-test for '%s' already passed in this process", self.kind)
            return None

        if self.trace is None:
            raise LoadError(f"No reference trace configured for the '{self.kind}' engine")
        trace = self.trace if isinstance(self.trace, ReferenceTrace) else load_trace(self.trace)

        try:
            self.self_test_result = run_self_test(
                self._self_test_model, trace, tracker=self.tracker, progress=progress
            )
        except SelfTestError:
            self._self_test_failed = True
            self._self_tested.discard(self.kind)
            logger.error("Self-test failed; '%s' engine is unavailable", self.kind)
            raise
        self._self_tested.add(self.kind)
        return self.self_test_result

    # ─────────────────────────────────────────────────────────────────────────
    # Prediction
    # ─────────────────────────────────────────────────────────────────────────

    def _check_ready(self, action: str) -> None:
        if not self.is_ready:
            if self._self_test_failed:
                state = "self-test failed"
            elif self._dispose_pending:
                state = "disposing"
            else:
                state = self.state.value
            raise EngineStateError(f"Cannot {action} on a {state} engine")

    def _to_seconds(self, event_time: float) -> float:
        return float(event_time) / ENGINE_CONFIG["ms_per_second"]

    def prepare_input(
        self,
        pitch_index: int,
        log_dt: float,
        log_dur: float,
        velocity: float,
        context: NoteContext
    ) -> List[float]:
        """Feature row for one step: [pitch, log1p(dt), log1p(dur), velocity]."""
        return [float(pitch_index), log_dt, log_dur, float(velocity)]

    def predict(
        self,
        event_time: float,
        velocity: Optional[float] = None,
        context: Optional[NoteContext] = None
    ) -> int:
        """
        Predict the pitch to play for a note-on at ``event_time`` (ms).

        Returns:
            MIDI pitch in [21, 108]

        Raises:
            EngineStateError: Not loaded, disposed, or a step is already running
            VocabularyRangeError: A conditioning index is out of range
        """
        self._check_ready("predict")
        if self._busy:
            raise EngineStateError("A predict step is already running on this engine")

        self._busy = True
        start = time.perf_counter()
        try:
            pitch = self._step(
                event_time,
                ENGINE_CONFIG["default_velocity"] if velocity is None else velocity,
                context if context is not None else NoteContext()
            )
        finally:
            self._busy = False
            if self._dispose_pending:
                self._release()

        logger.debug("Predicted pitch %d in %.2f ms", pitch, (time.perf_counter() - start) * 1000.0)
        return pitch

    def _step(self, event_time: float, velocity: float, context: NoteContext) -> int:
        session = self.session
        now = self._to_seconds(event_time)

        if session.last_event_time is None:
            dt = 0.0
        else:
            dt = now - session.last_event_time
            if dt < 0:
                logger.warning("Event time went backwards by %.4f s; using dt = 0", -dt)
                dt = 0.0
        dur = min(session.last_duration, dt)

        row = self.prepare_input(session.last_pitch_index, math.log1p(dt), math.log1p(dur), velocity, context)
        logits, hidden = self.model.forward([row], session.hidden)
        try:
            # The pad token is an input marker, never an output
            logits = mask_logits(logits, [self.model.pad_index])
            pitch_index = sample_pitch(logits, self.sampling, self.rng)
        except Exception:
            hidden.dispose()
            raise

        session.hidden.dispose()
        session.hidden = hidden
        session.last_event_time = now
        session.last_pitch_index = pitch_index
        self.state = EngineState.RUNNING
        return pitch_index + ENGINE_CONFIG["pitch_offset"]

    def update_note_off(self, event_time: float) -> None:
        """Record the duration of the note that just ended (used by the next step)."""
        self._check_ready("record a note-off")
        session = self.session
        now = self._to_seconds(event_time)

        if session.last_event_time is None:
            logger.warning("Note-off at %.4f s without a preceding note-on; duration set to 0", now)
            session.last_duration = 0.0
            return

        duration = now - session.last_event_time
        if duration < 0:
            logger.warning("Note-off %.4f s before its note-on; duration set to 0", -duration)
            duration = 0.0
        session.last_duration = duration

    # ─────────────────────────────────────────────────────────────────────────
    # Call contract used by the UI / MIDI layer
    # ─────────────────────────────────────────────────────────────────────────

    def note_on(self, pitch: Optional[int], time: float, velocity: Optional[float] = None) -> int:
        return self.predict(time, velocity, NoteContext(pitch=pitch))

    def note_off(self, time: float) -> None:
        self.update_note_off(time)

    def update_config(self, **partial) -> SamplingConfig:
        """
        Change sampling parameters for all later predictions.

        Raises:
            pydantic.ValidationError: Invalid value (the old config is kept)
        """
        merged = {**self.sampling.model_dump(), **partial}
        self.sampling = SamplingConfig.model_validate(merged)
        return self.sampling

    # ─────────────────────────────────────────────────────────────────────────
    # Reset / dispose
    # ─────────────────────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Forget the session and re-seed from the pad token."""
        self._check_ready("reset")
        if self._busy:
            raise EngineStateError("Cannot reset while a predict step is running")

        if self.session.hidden is not None:
            self.session.hidden.dispose()
        self.session = EngineSession(last_pitch_index=self.pad_index)
        self._seed()
        self.state = EngineState.WARM

    def dispose(self) -> None:
        """Free the hidden state and parameters. Deferred while a step runs."""
        if self.state is EngineState.DISPOSED:
            return
        if self._busy:
            self._dispose_pending = True
            return
        self._release()

    def _release(self) -> None:
        if self.session is not None and self.session.hidden is not None:
            if not self.session.hidden.disposed:
                self.session.hidden.dispose()
            self.session.hidden = None
        if self.model is not None:
            self.model.release()
            self.model = None
        elif self._store is not None:
            self._store.release()
        self._dispose_pending = False
        self.state = EngineState.DISPOSED
        logger.info("Disposed '%s' engine", self.kind)


# =============================================================================
# ENGINE KINDS
# =============================================================================

class TapEngine(BaseInferenceEngine):
    """Unconditional engine: the tapped key only contributes its timing."""

    kind = "uc"
    model_class = TapModel


class HandTapEngine(BaseInferenceEngine):
    """
    Hand-conditioned engine.

    The hand is taken from ``context.hand`` when given; otherwise the tapped
    key decides (below middle C → left hand), and with no key it is unknown.
    """

    kind = "hand"
    model_class = HandTapModel

    @staticmethod
    def derive_hand(context: NoteContext) -> int:
        if context.hand is not None:
            return int(context.hand)
        if context.pitch is None:
            return HAND_UNKNOWN
        return HAND_LEFT if context.pitch < ENGINE_CONFIG["hand_split_pitch"] else HAND_RIGHT

    def prepare_input(
        self,
        pitch_index: int,
        log_dt: float,
        log_dur: float,
        velocity: float,
        context: NoteContext
    ) -> List[float]:
        row = super().prepare_input(pitch_index, log_dt, log_dur, velocity, context)
        row.append(float(self.derive_hand(context)))
        return row


class DummyEngine(BaseInferenceEngine):
    """
    Engine without a model, for UI development and tests.

    Echoes the tapped pitch when there is one, otherwise picks a uniformly
    random pitch in [21, 108].
    """

    kind = "dummy"
    model_class = None

    def _build_model(self, store: Optional[ParameterStore] = None) -> None:
        return None

    def _seed(self) -> None:
        pass

    def self_test(self, force: bool = False, progress: bool = False) -> None:
        if self.state is EngineState.DISPOSED:
            raise EngineStateError("Cannot self-test a disposed engine")
        return None

    def _step(self, event_time: float, velocity: float, context: NoteContext) -> int:
        if context.pitch is not None:
            if not MIN_PITCH <= context.pitch <= MAX_PITCH:
                raise VocabularyRangeError(
                    f"Pitch {context.pitch} outside the piano range [{MIN_PITCH}, {MAX_PITCH}]"
                )
            pitch = int(context.pitch)
        else:
            pitch = int(self.rng.integers(MIN_PITCH, MAX_PITCH + 1))

        self.session.last_event_time = self._to_seconds(event_time)
        self.session.last_pitch_index = pitch - ENGINE_CONFIG["pitch_offset"]
        self.state = EngineState.RUNNING
        return pitch


ENGINE_KINDS: Dict[str, Type[BaseInferenceEngine]] = {
    "uc": TapEngine,
    "hand": HandTapEngine,
    "dummy": DummyEngine,
}


def create_engine(kind: str, **kwargs) -> BaseInferenceEngine:
    """
    Construct an engine of the given kind (not loaded yet).

    Args:
        kind: "uc", "hand" or "dummy"
        **kwargs: Passed to the engine constructor

    Raises:
        ValueError: Unknown kind
    """
    key = kind.lower()
    if key not in ENGINE_KINDS:
        raise ValueError(f"Unknown engine kind '{kind}'. Valid kinds: {sorted(ENGINE_KINDS)}")
    return ENGINE_KINDS[key](**kwargs)


def engine_from_settings(settings: EngineSettings, tracker: Optional[ArrayTracker] = None) -> BaseInferenceEngine:
    """
    Build, self-test (if enabled) and load an engine from settings.

    The self-test runs before load so a failing checkpoint never reaches the
    ready state.
    """
    engine = create_engine(
        settings.engine,
        checkpoint=settings.checkpoint,
        trace=settings.trace,
        sampling=settings.sampling.model_copy(),
        seed=settings.seed,
        tracker=tracker
    )
    if settings.run_self_test:
        engine.self_test()
    engine.load()
    return engine
