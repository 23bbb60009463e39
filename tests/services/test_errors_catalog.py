import pytest

from cnvrgctl.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error(
        "no_matching_target", label_key="app", deployment="postgres", namespace="cnvrg"
    )

    assert "No running pod found for `app=postgres` in namespace `cnvrg`." in message
    assert "Suggested action:" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError):
        actionable_error("does_not_exist")
