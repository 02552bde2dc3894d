"""
Shared fixtures.

Checkpoints are exported once per test session with fixed seeds; every test
that loads parameters gets its own ArrayTracker so memory accounting is
isolated from other tests.
"""

from collections import namedtuple

import pytest
import torch

from tap2music.app.engine import BaseInferenceEngine
from tap2music.models.params import ArrayTracker, ParameterStore
from tap2music.models.reference import REFERENCE_MODULES, export_reference
from tap2music.models.tap_model import HandTapModel, TapModel


Export = namedtuple("Export", ["directory", "manifest", "trace"])

EXPORT_SEED = 0


@pytest.fixture(autouse=True)
def clear_self_test_cache():
    """The once-per-process self-test cache must not leak between tests."""
    BaseInferenceEngine._self_tested.clear()
    yield
    BaseInferenceEngine._self_tested.clear()


@pytest.fixture
def tracker():
    return ArrayTracker()


@pytest.fixture(scope="session")
def uc_export(tmp_path_factory):
    directory = tmp_path_factory.mktemp("uc")
    manifest, trace = export_reference(directory, kind="uc", seed=EXPORT_SEED)
    return Export(directory, manifest, trace)


@pytest.fixture(scope="session")
def hand_export(tmp_path_factory):
    directory = tmp_path_factory.mktemp("hand")
    manifest, trace = export_reference(directory, kind="hand", seed=EXPORT_SEED)
    return Export(directory, manifest, trace)


def build_reference(kind: str, seed: int = EXPORT_SEED):
    """The torch.nn module an export with ``seed`` was written from."""
    torch.manual_seed(seed)
    return REFERENCE_MODULES[kind]().eval()


@pytest.fixture
def uc_model(uc_export, tracker):
    store = ParameterStore.from_manifest(
        uc_export.directory, TapModel.parameter_ranks(), tracker=tracker
    )
    model = TapModel(store)
    yield model
    model.release()


@pytest.fixture
def hand_model(hand_export, tracker):
    store = ParameterStore.from_manifest(
        hand_export.directory, HandTapModel.parameter_ranks(), tracker=tracker
    )
    model = HandTapModel(store)
    yield model
    model.release()
