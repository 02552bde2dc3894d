"""
Evaluation Subpackage

Numerical checks that must pass before an engine is trusted:
    - selftest.py: replay a reference trace, compare logits, detect leaks
"""

from tap2music.evaluation.selftest import (
    SELF_TEST_ADVISORY,
    SELF_TEST_THRESHOLD,
    SelfTestResult,
    run_self_test,
)
