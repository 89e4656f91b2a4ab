"""Outcome classification shared by every path that decides pass/fail."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from test_types import Classification, TaskOutcome, TestStatus

STRONG_SUCCESS_PATTERNS = (
    "test was successful",
    "test completed successfully",
    "all steps completed",
    "verification successful",
    "was successful",
    "successfully completed",
    "successfully verified",
    "test passed",
)

# Phrases that contain failure words but describe an expected absence.
FALSE_POSITIVE_CONTEXTS = (
    "was not displayed during this session",
    "was not shown during this session",
    "not displayed, so no action",
    "was not displayed so no action",
    "not shown, so no action",
    "was not shown so no action",
    "not displayed (expected)",
    "was not needed",
)

CRITICAL_FAILURE_PATTERNS = (
    "timeout",
    "timed out",
    "test failed",
    "task failed",
    "could not complete",
    "error occurred",
    "exception thrown",
    "did not complete the task",
    "unable to complete",
)

FAILURE_INDICATORS = ("error", "failed", "not found", "exception")

SUCCESS_INDICATORS = ("success", "passed", "verified", "confirmed", "successful")

KEYWORD_STOP_WORDS = {
    "should", "must", "will", "that", "this", "with", "from",
    "have", "been", "result", "expected", "displayed",
}

STOPPED_WITHOUT_RESULT = "Task stopped before producing a result"


@dataclass
class Evaluation:
    passed: bool
    reasoning: str


def _keywords(expected: str) -> list[str]:
    words = re.split(r"[\s,;.!?]+", expected)
    return [w for w in words if len(w) > 3 and w not in KEYWORD_STOP_WORDS]


def _preview(text: str, limit: int = 100) -> str:
    return text[:limit]


def evaluate_output(output: Optional[str], expected_result: Optional[str]) -> Evaluation:
    """Keyword scan of the agent's output against the expected result."""
    if not expected_result or not expected_result.strip():
        return Evaluation(True, "Finished without a defined expected result.")

    result = (output or "").lower().strip()
    expected = expected_result.lower().strip()

    strong_success = any(p in result for p in STRONG_SUCCESS_PATTERNS)
    false_positive = any(c in result for c in FALSE_POSITIVE_CONTEXTS)
    success_indicator = any(s in result for s in SUCCESS_INDICATORS)
    failure_suppressed = strong_success or false_positive

    keywords = _keywords(expected)
    matched = [kw for kw in keywords if kw in result]

    if strong_success or (success_indicator and false_positive):
        ratio = len(matched) / len(keywords) if keywords else 1.0
        return Evaluation(True, f"Output reports success and matches {round(ratio * 100)}% of expected keywords.")

    mismatch = f'Expected: "{_preview(expected_result)}". Actual: "{_preview(output or "")}".'

    if not failure_suppressed and any(p in result for p in CRITICAL_FAILURE_PATTERNS):
        return Evaluation(False, f"Output contains a critical failure indicator. {mismatch}")

    if not failure_suppressed and any(i in result for i in FAILURE_INDICATORS):
        return Evaluation(False, f"Output contains a failure indicator. {mismatch}")

    ratio = len(matched) / len(keywords) if keywords else 0.0

    if success_indicator and ratio >= 0.3:
        return Evaluation(True, f"Output reports success and matches {round(ratio * 100)}% of expected keywords.")

    if ratio >= 0.5:
        return Evaluation(True, f"{round(ratio * 100)}% of expected keywords found in the output.")

    return Evaluation(False, f"Only {round(ratio * 100)}% of expected keywords found. {mismatch}")


def classify_outcome(outcome: TaskOutcome, expected_result: Optional[str] = None) -> tuple[TestStatus, str]:
    """Map a polling outcome to the final test status plus a short reasoning."""
    if outcome.classification is Classification.EXPIRED:
        return TestStatus.PASSED, "Remote session expired; treated as finished."
    if outcome.classification is Classification.TIMED_OUT:
        return TestStatus.FAILED, outcome.result_summary or "Remote task timed out."
    if outcome.classification is Classification.CANCELLED:
        return TestStatus.FAILED, "Cancelled by user."
    if outcome.classification is Classification.FAILED:
        return TestStatus.FAILED, f"Remote task ended with status '{outcome.remote_status}'."

    evaluation = evaluate_output(outcome.output, expected_result)
    status = TestStatus.PASSED if evaluation.passed else TestStatus.FAILED
    return status, evaluation.reasoning
