from __future__ import annotations

import allure
import pytest

from repo_digest.engine.backend.base import BackendError
from repo_digest.engine.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_cli_failure,
    classify_exception,
    classify_http_status,
)
from repo_digest.engine.models import FailureKind

pytestmark = [
    allure.epic("Analysis Backends"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_authentication_over_transient_exit_code() -> None:
    classified = classify_cli_failure(
        exit_code=137,
        stdout="",
        stderr="Error: invalid API key provided",
    )
    assert classified.kind == FailureKind.AUTHENTICATION
    assert classified.matched_rule == "authentication"
    assert classified.matched_pattern == "invalid api key"


def test_classifier_maps_rate_limit_from_stdout() -> None:
    classified = classify_cli_failure(
        exit_code=1,
        stdout="HTTP 429 Too Many Requests, please retry",
        stderr="",
    )
    assert classified.kind == FailureKind.RATE_LIMITED
    assert classified.to_log_details() == {
        "classifier_version": 1,
        "kind": "rate_limited",
        "matched_rule": "rate_limited",
        "matched_pattern": "too many requests",
    }


def test_classifier_maps_context_overflow_to_malformed_request() -> None:
    classified = classify_cli_failure(
        exit_code=2,
        stdout="",
        stderr="prompt exceeds maximum context length",
    )
    assert classified.kind == FailureKind.MALFORMED_REQUEST


def test_classifier_uses_transient_exit_code_when_output_is_silent() -> None:
    classified = classify_cli_failure(exit_code=143, stdout="", stderr="")
    assert classified.kind == FailureKind.NETWORK
    assert classified.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_other() -> None:
    classified = classify_cli_failure(
        exit_code=2,
        stdout="fatal: unsupported syntax in prompt template",
        stderr="",
    )
    assert classified.kind == FailureKind.OTHER
    assert classified.matched_rule == "fallback_other"
    assert classified.matched_pattern is None


@pytest.mark.parametrize(
    ("status_code", "kind"),
    [
        (429, FailureKind.RATE_LIMITED),
        (401, FailureKind.AUTHENTICATION),
        (403, FailureKind.AUTHENTICATION),
        (400, FailureKind.MALFORMED_REQUEST),
        (413, FailureKind.MALFORMED_REQUEST),
        (408, FailureKind.NETWORK),
        (502, FailureKind.NETWORK),
        (503, FailureKind.NETWORK),
        (418, FailureKind.OTHER),
    ],
)
def test_http_status_mapping(status_code: int, kind: FailureKind) -> None:
    assert classify_http_status(status_code) == kind


def test_exception_classification_prefers_reported_kind() -> None:
    error = BackendError("slow down", kind=FailureKind.RATE_LIMITED)

    assert classify_exception(error) == FailureKind.RATE_LIMITED
    assert classify_exception(TimeoutError("read")) == FailureKind.TIMEOUT
    assert classify_exception(ConnectionResetError("peer")) == FailureKind.NETWORK
    assert classify_exception(ValueError("bad")) == FailureKind.OTHER
