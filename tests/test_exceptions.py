"""
Unit tests for the error taxonomy and kind helpers.
"""

import pytest

from firedoc.exceptions import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    FiredocError,
    OperationCanceledError,
    RetryExhaustedError,
    is_already_exists,
    is_canceled,
    is_not_found,
)


def raised_from(error, cause):
    try:
        raise error from cause
    except FiredocError as e:
        return e


def raised_during(error, context):
    try:
        try:
            raise context
        except FiredocError:
            raise error
    except FiredocError as e:
        return e


class TestKindHelpers:
    """Tests for is_not_found, is_already_exists and is_canceled."""

    @pytest.mark.parametrize("helper, error", [
        (is_not_found, DocumentNotFoundError("gone", path="a/b")),
        (is_already_exists, DocumentAlreadyExistsError("dup", path="a/b")),
        (is_canceled, OperationCanceledError("stop", operation="get")),
    ])
    def test_direct_match(self, helper, error):
        assert helper(error)

    @pytest.mark.parametrize("helper, error", [
        (is_not_found, DocumentNotFoundError("gone")),
        (is_already_exists, DocumentAlreadyExistsError("dup")),
        (is_canceled, OperationCanceledError("stop")),
    ])
    def test_match_through_cause(self, helper, error):
        wrapped = raised_from(RetryExhaustedError("gave up", operation="get", attempts=3), error)
        assert helper(wrapped)

    @pytest.mark.parametrize("helper, error", [
        (is_not_found, DocumentNotFoundError("gone")),
        (is_already_exists, DocumentAlreadyExistsError("dup")),
        (is_canceled, OperationCanceledError("stop")),
    ])
    def test_match_through_context(self, helper, error):
        assert helper(raised_during(FiredocError("cleanup failed"), error))

    def test_kinds_do_not_cross(self):
        canceled = OperationCanceledError("stop")
        assert not is_not_found(canceled)
        assert not is_already_exists(canceled)
        assert not is_canceled(DocumentNotFoundError("gone"))

    def test_none_and_foreign_errors(self):
        for helper in (is_not_found, is_already_exists, is_canceled):
            assert not helper(None)
            assert not helper(ValueError("x"))

    def test_cyclic_chain_terminates(self):
        first = FiredocError("first")
        second = FiredocError("second")
        first.__context__ = second
        second.__context__ = first
        assert not is_canceled(first)
