"""
Models Subpackage

This package contains the numerical core of the engine:
    - params.py: ParameterStore (checkpoint arrays) and ArrayTracker
    - lstm_cell.py: Hand-rolled LSTM step and the HiddenState container
    - tap_model.py: Single-step TapModel / HandTapModel forward passes
    - sampling.py: Temperature and nucleus (top-p) sampling
    - reference.py: torch.nn reference modules, checkpoint/trace export

The engine models run one event at a time:
    1. Feature row [pitch, dt, dur, vel(, hand)] + previous HiddenState
    2. Embedding → input projection → LSTM stack → output head
    3. Logits [1, 89] + a new HiddenState owned by the caller
"""

from tap2music.models.params import ArrayTracker, ParameterStore, memory
from tap2music.models.lstm_cell import HiddenState, RecurrentCell, lstm_cell
from tap2music.models.tap_model import HandTapModel, TapModel
