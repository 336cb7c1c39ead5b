"""Unit tests for the pipeline error taxonomy."""

import pytest

from git_proxy.errors import (
    ERROR_CATEGORIES,
    MAX_DETAIL_LENGTH,
    REASON_TEMPLATES,
    ErrorCategory,
    ErrorKind,
    PipelineError,
)


class TestErrorTables:
    """Tests for the kind, category and template tables."""

    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_every_kind_has_category_and_template(self, kind):
        assert kind in ERROR_CATEGORIES
        assert kind in REASON_TEMPLATES

    def test_categories(self):
        assert PipelineError(ErrorKind.DANGEROUS_FLAG).category is ErrorCategory.VALIDATION
        assert PipelineError(ErrorKind.RATE_LIMIT_EXCEEDED).category is ErrorCategory.RATE_LIMIT
        assert PipelineError(ErrorKind.REPOSITORY_BLOCKED).category is ErrorCategory.POLICY
        assert PipelineError(ErrorKind.TIMEOUT).category is ErrorCategory.EXECUTION

    def test_denials_exclude_execution_failures(self):
        assert PipelineError(ErrorKind.EMPTY_COMMAND).is_denial
        assert PipelineError(ErrorKind.FORCE_PUSH_BLOCKED).is_denial
        assert not PipelineError(ErrorKind.PROCESS_ERROR).is_denial
        assert not PipelineError(ErrorKind.CANCELLED).is_denial


class TestReasons:
    """Tests for rendered reasons."""

    def test_detail_substituted(self):
        error = PipelineError(ErrorKind.PROTECTED_BRANCH_DELETE, "main")
        assert error.reason == "Deletion of protected branch 'main' is not allowed"

    def test_detail_ignored_without_placeholder(self):
        error = PipelineError(ErrorKind.INVALID_WORKING_DIRECTORY, "relative/dir")
        assert error.reason == "Working directory must be an absolute path"
        assert "relative" not in error.reason

    def test_detail_capped(self):
        error = PipelineError(ErrorKind.REPOSITORY_BLOCKED, "x" * 1000)
        assert "x" * MAX_DETAIL_LENGTH + "..." in error.reason
        assert "x" * (MAX_DETAIL_LENGTH + 1) not in error.reason

    def test_braces_in_detail_are_literal(self):
        error = PipelineError(ErrorKind.REPOSITORY_BLOCKED, "{detail}")
        assert error.reason == "Repository '{detail}' is not permitted"

    def test_operation_name_never_echoed(self):
        """The rejected operation name is not part of the fixed reason."""
        error = PipelineError(ErrorKind.COMMAND_NOT_ALLOWED, "rm -rf /")
        assert "rm -rf" not in error.reason
        assert error.reason.startswith("Operation is not allowed.")

    def test_force_push_reason_mentions_lease(self):
        assert "--force-with-lease" in PipelineError(ErrorKind.FORCE_PUSH_BLOCKED).reason

    def test_to_dict(self):
        error = PipelineError(ErrorKind.TIMEOUT, "30")
        assert error.to_dict() == {
            "kind": "timeout",
            "category": "execution",
            "reason": "Command timed out after 30 seconds",
        }

    def test_frozen(self):
        error = PipelineError(ErrorKind.TIMEOUT)
        with pytest.raises(AttributeError):
            error.detail = "1"
