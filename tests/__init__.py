"""
Test Package

Contains unit tests for all modules.
Run with: pytest tests/ -v

Test files follow the pattern:
    test_<module_name>.py

Example:
    tests/test_lstm_cell.py   - Tests for tap2music/models/lstm_cell.py
    tests/test_engine.py      - Tests for tap2music/app/engine.py
    tests/test_selftest.py    - Tests for tap2music/evaluation/selftest.py

Shared fixtures (exported checkpoints, trackers) live in conftest.py.
"""
