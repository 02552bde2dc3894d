"""
Tests for the inference engines: lifecycle, feature construction, session
bookkeeping and memory ownership.

Times passed to the engine are milliseconds.

Run with: pytest tests/test_engine.py -v
"""

import logging
import math

import pytest
from pydantic import ValidationError

from tap2music.app.engine import (
    ENGINE_KINDS,
    DummyEngine,
    EngineState,
    HandTapEngine,
    NoteContext,
    create_engine,
    engine_from_settings,
)
from tap2music.data.loader import load_trace
from tap2music.data.schema import EngineSettings, ReferenceTrace, SamplingConfig
from tap2music.errors import EngineStateError, LoadError, SelfTestError, VocabularyRangeError
from tap2music.evaluation.selftest import SelfTestResult
from tap2music.models.params import ParameterStore
from tap2music.models.tap_model import TapModel


UC_PARAMS = 15
HAND_PARAMS = 24
HIDDEN_ARRAYS = 4


def shifted_trace(export, delta: float) -> ReferenceTrace:
    """The exported trace with ``delta`` added to every expected logit."""
    trace = load_trace(export.trace)
    logits = [[value + delta for value in row] for row in trace.pitch_logits]
    return ReferenceTrace(feats=trace.feats, pitch_logits=logits)


@pytest.fixture
def uc_engine(uc_export, tracker):
    engine = create_engine(
        "uc",
        checkpoint=uc_export.directory,
        trace=uc_export.trace,
        seed=0,
        tracker=tracker
    )
    yield engine
    engine.dispose()


@pytest.fixture
def loaded(uc_engine):
    uc_engine.load()
    return uc_engine


@pytest.fixture
def hand_engine(hand_export, tracker):
    engine = create_engine(
        "hand",
        checkpoint=hand_export.directory,
        trace=hand_export.trace,
        seed=0,
        tracker=tracker
    )
    engine.load()
    yield engine
    engine.dispose()


@pytest.fixture
def feature_rows(monkeypatch):
    """Returns a function that records every feature row an engine feeds its model."""
    def attach(engine):
        rows = []
        forward = engine.model.forward

        def spy(feat, hidden=None):
            rows.append(list(feat[0]))
            return forward(feat, hidden)

        monkeypatch.setattr(engine.model, "forward", spy)
        return rows
    return attach


class TestLifecycle:
    """IDLE → WARM → RUNNING → (reset) WARM → DISPOSED."""

    def test_initial_state(self, uc_engine):
        assert uc_engine.state is EngineState.IDLE
        assert not uc_engine.is_ready

    def test_predict_before_load(self, uc_engine):
        with pytest.raises(EngineStateError):
            uc_engine.note_on(60, 0.0, 64)

    def test_load_seeds_session(self, loaded, tracker):
        assert loaded.state is EngineState.WARM
        assert loaded.is_ready
        assert loaded.session.last_pitch_index == 88
        assert loaded.session.last_event_time is None
        assert loaded.session.hidden.num_layers == 2
        assert loaded.session.hidden.shape == (1, 128)
        assert tracker.memory().num_arrays == UC_PARAMS + HIDDEN_ARRAYS

    def test_load_twice(self, loaded):
        with pytest.raises(EngineStateError):
            loaded.load()

    def test_running_after_predict(self, loaded):
        loaded.note_on(60, 0.0, 64)
        assert loaded.state is EngineState.RUNNING

    def test_reset(self, loaded, tracker):
        for step in range(5):
            loaded.note_on(60, step * 250.0, 80)
        loaded.note_off(1100.0)

        loaded.reset()
        assert loaded.state is EngineState.WARM
        assert loaded.session.last_pitch_index == 88
        assert loaded.session.last_event_time is None
        assert loaded.session.last_duration == 0.0
        assert loaded.session.hidden.shape == (1, 128)
        assert tracker.memory().num_arrays == UC_PARAMS + HIDDEN_ARRAYS

    def test_dispose_releases_everything(self, loaded, tracker):
        loaded.note_on(60, 0.0, 64)
        loaded.dispose()
        assert loaded.state is EngineState.DISPOSED
        assert not loaded.is_ready
        assert tracker.memory().num_arrays == 0
        assert tracker.memory().num_bytes == 0

    def test_use_after_dispose(self, loaded):
        loaded.dispose()
        with pytest.raises(EngineStateError):
            loaded.note_on(60, 0.0, 64)
        with pytest.raises(EngineStateError):
            loaded.reset()
        loaded.dispose()

    def test_load_missing_checkpoint(self, tmp_path, tracker):
        engine = create_engine("uc", checkpoint=tmp_path / "nowhere", tracker=tracker)
        with pytest.raises(LoadError):
            engine.load()
        assert engine.state is EngineState.IDLE
        assert not engine.is_ready
        assert tracker.memory().num_arrays == 0

    def test_load_without_checkpoint(self):
        with pytest.raises(LoadError):
            create_engine("uc").load()

    def test_wrong_architecture(self, uc_export, tracker):
        """A uc checkpoint cannot back the hand engine."""
        engine = create_engine("hand", checkpoint=uc_export.directory, tracker=tracker)
        with pytest.raises(LoadError):
            engine.load()
        assert tracker.memory().num_arrays == 0


class TestPrediction:
    """Pitch range, timing features and session updates."""

    def test_pitch_range(self, loaded):
        pitches = [loaded.note_on(None, step * 120.0, 70) for step in range(200)]
        assert all(21 <= p <= 108 for p in pitches)

    def test_no_leak_over_many_steps(self, loaded, tracker):
        for step in range(50):
            loaded.note_on(None, step * 100.0, 70)
            loaded.note_off(step * 100.0 + 50.0)
        assert tracker.memory().num_arrays == UC_PARAMS + HIDDEN_ARRAYS

    def test_first_step_uses_pad_and_zero_dt(self, loaded, feature_rows):
        rows = feature_rows(loaded)
        loaded.note_on(60, 5000.0, 80)
        assert rows[0] == [88.0, 0.0, 0.0, 80.0]

    def test_timing_features(self, loaded, feature_rows):
        rows = feature_rows(loaded)
        first = loaded.note_on(60, 1000.0, 80)
        loaded.note_off(1200.0)
        loaded.note_on(62, 1500.0, 90)

        pitch, log_dt, log_dur, velocity = rows[1]
        assert pitch == first - 21
        assert log_dt == pytest.approx(math.log1p(0.5))
        assert log_dur == pytest.approx(math.log1p(0.2))
        assert velocity == 90.0

    def test_duration_capped_by_dt(self, loaded, feature_rows):
        rows = feature_rows(loaded)
        loaded.note_on(60, 0.0, 64)
        loaded.session.last_duration = 5.0
        loaded.note_on(60, 300.0, 64)
        assert rows[1][2] == pytest.approx(math.log1p(0.3))

    def test_default_velocity(self, loaded, feature_rows):
        rows = feature_rows(loaded)
        loaded.predict(0.0)
        assert rows[0][3] == 64.0

    def test_backwards_clock(self, loaded, feature_rows, caplog):
        rows = feature_rows(loaded)
        loaded.note_on(60, 2000.0, 64)
        with caplog.at_level(logging.WARNING, logger="tap2music.app.engine"):
            loaded.note_on(60, 1500.0, 64)
        assert rows[1][1] == 0.0
        assert "backwards" in caplog.text

    def test_reset_gives_zero_dt(self, loaded, feature_rows):
        loaded.note_on(60, 1000.0, 64)
        loaded.reset()
        rows = feature_rows(loaded)
        loaded.note_on(60, 9000.0, 64)
        assert rows[0][:3] == [88.0, 0.0, 0.0]

    def test_note_off_without_note_on(self, loaded, caplog):
        with caplog.at_level(logging.WARNING, logger="tap2music.app.engine"):
            loaded.note_off(500.0)
        assert loaded.session.last_duration == 0.0
        assert "without a preceding note-on" in caplog.text

    def test_same_seed_same_pitches(self, uc_export):
        runs = []
        for _ in range(2):
            engine = create_engine("uc", checkpoint=uc_export.directory, seed=42)
            engine.load()
            runs.append([engine.note_on(None, step * 200.0, 64) for step in range(20)])
            engine.dispose()
        assert runs[0] == runs[1]


class TestStepOwnership:
    """One step in flight; dispose during a step is deferred."""

    def test_dispose_during_step_is_deferred(self, loaded, tracker, monkeypatch):
        forward = loaded.model.forward
        seen = {}

        def disposing_forward(feat, hidden=None):
            loaded.dispose()
            seen["state"] = loaded.state
            return forward(feat, hidden)

        monkeypatch.setattr(loaded.model, "forward", disposing_forward)
        pitch = loaded.note_on(60, 0.0, 64)

        assert seen["state"] is not EngineState.DISPOSED
        assert 21 <= pitch <= 108
        assert loaded.state is EngineState.DISPOSED
        assert tracker.memory().num_arrays == 0

    def test_overlapping_predict(self, loaded, monkeypatch):
        forward = loaded.model.forward
        errors = []

        def reentrant_forward(feat, hidden=None):
            try:
                loaded.note_on(61, 10.0, 64)
            except EngineStateError as e:
                errors.append(e)
            return forward(feat, hidden)

        monkeypatch.setattr(loaded.model, "forward", reentrant_forward)
        loaded.note_on(60, 0.0, 64)
        assert len(errors) == 1

    def test_failed_step_keeps_session(self, hand_engine, tracker):
        hidden = hand_engine.session.hidden
        with pytest.raises(VocabularyRangeError):
            hand_engine.predict(0.0, 64, NoteContext(hand=5))
        assert hand_engine.session.hidden is hidden
        assert not hidden.disposed
        assert tracker.memory().num_arrays == HAND_PARAMS + HIDDEN_ARRAYS


class TestSamplingConfig:
    """update_config validates before applying."""

    def test_update(self, loaded):
        config = loaded.update_config(strategy="nucleus", top_p=0.5)
        assert config.strategy == "nucleus"
        assert loaded.sampling.top_p == 0.5
        assert loaded.sampling.temperature == 0.8

    def test_invalid_value_keeps_config(self, loaded):
        with pytest.raises(ValidationError):
            loaded.update_config(temperature=-1.0)
        assert loaded.sampling == SamplingConfig()

    def test_unknown_key(self, loaded):
        with pytest.raises(ValidationError):
            loaded.update_config(top_k=5)


class TestSelfTest:
    """self_test() from the engine's point of view."""

    def test_runs_in_idle(self, uc_engine, tracker):
        result = uc_engine.self_test()
        assert isinstance(result, SelfTestResult)
        assert uc_engine.state is EngineState.IDLE
        assert tracker.memory().num_arrays == 0

    def test_once_per_kind(self, uc_engine, uc_export):
        assert uc_engine.self_test() is not None
        other = create_engine("uc", checkpoint=uc_export.directory, trace=uc_export.trace)
        assert other.self_test() is None
        assert other.self_test(force=True) is not None

    def test_does_not_touch_loaded_model(self, loaded, tracker):
        hidden = loaded.session.hidden
        loaded.self_test()
        assert loaded.session.hidden is hidden
        assert tracker.memory().num_arrays == UC_PARAMS + HIDDEN_ARRAYS

    def test_without_trace(self, uc_export):
        engine = create_engine("uc", checkpoint=uc_export.directory)
        with pytest.raises(LoadError):
            engine.self_test()

    def test_injected_store(self, uc_export, tracker):
        store = ParameterStore.from_manifest(uc_export.directory, TapModel.parameter_ranks(), tracker=tracker)
        engine = create_engine("uc", store=store, trace=uc_export.trace)

        engine.self_test()
        assert not store.released
        engine.load()
        assert engine.note_on(60, 0.0, 64) in range(21, 109)
        engine.dispose()
        assert store.released
        assert tracker.memory().num_arrays == 0

    def test_failure_makes_engine_unavailable(self, uc_export, tracker):
        engine = create_engine(
            "uc", checkpoint=uc_export.directory, trace=shifted_trace(uc_export, 0.01), seed=0, tracker=tracker
        )
        engine.load()
        assert engine.is_ready

        with pytest.raises(SelfTestError):
            engine.self_test()

        assert not engine.is_ready
        with pytest.raises(EngineStateError, match="self-test failed"):
            engine.note_on(60, 0.0, 64)
        with pytest.raises(EngineStateError):
            engine.reset()

        engine.dispose()
        assert tracker.memory().num_arrays == 0

    def test_failure_before_load(self, uc_export, tracker):
        engine = create_engine(
            "uc", checkpoint=uc_export.directory, trace=shifted_trace(uc_export, 0.01), tracker=tracker
        )
        with pytest.raises(SelfTestError):
            engine.self_test()
        with pytest.raises(EngineStateError):
            engine.load()
        assert not engine.is_ready
        engine.dispose()

    def test_forced_failure_clears_cache(self, uc_engine, uc_export):
        assert uc_engine.self_test() is not None

        broken = create_engine("uc", checkpoint=uc_export.directory, trace=shifted_trace(uc_export, 0.01))
        with pytest.raises(SelfTestError):
            broken.self_test(force=True)
        broken.dispose()

        # The next engine of this kind is checked again instead of skipped
        later = create_engine("uc", checkpoint=uc_export.directory, trace=uc_export.trace)
        assert later.self_test() is not None
        later.dispose()


class TestHandEngine:
    """Hand derivation and the five-column feature row."""

    @pytest.mark.parametrize("context, expected", [
        (NoteContext(pitch=40), 0),
        (NoteContext(pitch=59), 0),
        (NoteContext(pitch=60), 1),
        (NoteContext(pitch=90), 1),
        (NoteContext(), 2),
        (NoteContext(pitch=40, hand=1), 1),
        (NoteContext(hand=2), 2),
    ])
    def test_derive_hand(self, context, expected):
        assert HandTapEngine.derive_hand(context) == expected

    def test_feature_row(self, hand_engine, feature_rows):
        rows = feature_rows(hand_engine)
        hand_engine.note_on(45, 0.0, 70)
        hand_engine.note_on(72, 300.0, 70)
        assert rows[0][4] == 0.0
        assert rows[1][4] == 1.0
        assert len(rows[0]) == 5

    def test_pitch_range(self, hand_engine):
        pitches = [hand_engine.note_on(40 + step % 40, step * 150.0, 64) for step in range(100)]
        assert all(21 <= p <= 108 for p in pitches)


class TestDummyEngine:
    """Same contract, no model."""

    def test_echo(self):
        engine = create_engine("dummy", seed=0)
        engine.load()
        assert engine.note_on(64, 0.0, 80) == 64
        assert engine.state is EngineState.RUNNING
        engine.dispose()
        assert engine.state is EngineState.DISPOSED

    def test_random_pitch(self):
        engine = DummyEngine(seed=1)
        engine.load()
        pitches = {engine.note_on(None, step * 10.0, 64) for step in range(500)}
        assert min(pitches) >= 21
        assert max(pitches) <= 108
        assert len(pitches) > 40

    def test_out_of_range_echo(self):
        engine = DummyEngine()
        engine.load()
        with pytest.raises(VocabularyRangeError):
            engine.note_on(12, 0.0, 64)

    def test_self_test_is_noop(self):
        assert DummyEngine().self_test() is None

    def test_lifecycle_checks(self):
        engine = DummyEngine()
        with pytest.raises(EngineStateError):
            engine.note_on(60, 0.0, 64)
        engine.load()
        engine.note_off(100.0)
        engine.reset()
        assert engine.session.last_event_time is None


class TestFactory:

    def test_kinds(self):
        assert set(ENGINE_KINDS) == {"uc", "hand", "dummy"}
        assert isinstance(create_engine("HAND"), HandTapEngine)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_engine("transformer")

    def test_from_settings(self, hand_export, tracker):
        settings = EngineSettings(
            engine="hand",
            checkpoint=str(hand_export.directory),
            trace=str(hand_export.trace),
            seed=3,
            sampling=SamplingConfig(strategy="nucleus", top_p=0.9),
        )
        engine = engine_from_settings(settings, tracker=tracker)
        assert engine.is_ready
        assert engine.self_test_result is not None
        assert engine.sampling.strategy == "nucleus"
        engine.dispose()
        assert tracker.memory().num_arrays == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
