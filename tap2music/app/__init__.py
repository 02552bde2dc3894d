"""
App Subpackage

This package contains the user-facing side of the engine:
    - engine.py: Inference engines (uc, hand, dummy) and their lifecycle
    - cli.py: Command line interface (selftest, play, export)

A front end only needs the engine call contract:
    engine = create_engine("hand", checkpoint="model/hand", trace="model/hand/test.json")
    engine.self_test()
    engine.load()
    engine.note_on(pitch, time, velocity) → MIDI pitch 21-108
    engine.note_off(time)
    engine.reset() / engine.update_config(...) / engine.dispose()
"""

from tap2music.app.engine import (
    ENGINE_KINDS,
    BaseInferenceEngine,
    DummyEngine,
    EngineState,
    HandTapEngine,
    NoteContext,
    TapEngine,
    create_engine,
    engine_from_settings,
)
