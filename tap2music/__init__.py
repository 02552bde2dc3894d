"""
Tap2Music - Source Package

Turns a live stream of performance timing events (note-on, note-off,
velocity) into a predicted piano pitch sequence using a small recurrent
model that is evaluated one step at a time.

Subpackages:
    - tap2music.data: Pydantic schemas and loaders (manifests, traces, settings)
    - tap2music.models: Parameter store, LSTM cell, sequence models, sampling
    - tap2music.evaluation: Numerical self-test against a reference trace
    - tap2music.app: Inference engines and the command-line interface

Example usage:
    from tap2music.app.engine import create_engine

    engine = create_engine("uc", checkpoint="model/", trace="model/test.json")
    engine.self_test()
    engine.load()
    pitch = engine.note_on(pitch=60, time=1200.0, velocity=80)
"""

__version__ = "0.1.0"
