import pytest

from core.domain.errors import (
    BackendError,
    ContentSafetyBlockedError,
    ModelAccessDeniedError,
    NoCredentialError,
    classify_failure,
)


@pytest.mark.parametrize(
    "status, message, expected",
    [
        (400, "Request blocked by SAFETY filter", ContentSafetyBlockedError),
        (403, "Content blocked", ContentSafetyBlockedError),
        (400, "Invalid argument", ModelAccessDeniedError),
        (403, "Forbidden", ModelAccessDeniedError),
        (500, "Ultra model not enabled", ModelAccessDeniedError),
        (401, "Unauthorized", ModelAccessDeniedError),
        (500, "Internal error", BackendError),
        (503, "blocked upstream", BackendError),
        (None, "timeout", BackendError),
    ],
)
def test_classify_failure(status, message, expected):
    error = classify_failure(status, message)

    assert type(error) is expected
    assert error.status_code == status


def test_safety_message_keeps_status_prefix():
    error = classify_failure(400, "blocked by safety")

    assert error.message == "[400] blocked by safety"
    assert error.classified().kind == "content_safety_blocked"


def test_classified_error_carries_user_message():
    classified = NoCredentialError("no token").classified()

    assert classified.kind == "no_credential"
    assert classified.message == "no token"
    assert "personal token" in classified.user_message
