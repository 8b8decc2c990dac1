"""
Tests for common/errors.py

Tests cover:
- Status codes and response bodies of the error taxonomy
- normalize_errors decorator
"""

import pytest

from vendor_marketplace.common.errors import (
    AlreadyExists,
    BadRequest,
    InvalidIdentity,
    InvalidSignature,
    LifecycleConflict,
    MarketplaceError,
    NotFound,
    UpstreamFailure,
    ValidationFailed,
    normalize_errors,
)


class TestErrorTaxonomy:
    """Test error classes"""

    @pytest.mark.parametrize("error_class,status", [
        (InvalidIdentity, 400),
        (BadRequest, 400),
        (ValidationFailed, 400),
        (InvalidSignature, 403),
        (NotFound, 404),
        (AlreadyExists, 409),
        (LifecycleConflict, 409),
        (UpstreamFailure, 500),
    ])
    def test_status_codes(self, error_class, status):
        """Test each error's HTTP status"""
        error = error_class()

        assert isinstance(error, MarketplaceError)
        assert error.status == status
        assert error.to_dict() == {"status": status, "message": error_class.default_message}

    def test_to_dict_with_data(self):
        """Test that data is included when present"""
        error = ValidationFailed("Profile validation failed", data={"email": "this field is required"})

        assert error.to_dict() == {
            "status": 400,
            "message": "Profile validation failed",
            "data": {"email": "this field is required"},
        }

    def test_upstream_failure_keeps_cause_out_of_message(self):
        """Test that the original error is only kept as cause_message"""
        error = UpstreamFailure("search failed", cause_message="disk I/O error")

        assert error.message == "search failed"
        assert error.cause_message == "disk I/O error"
        assert "disk" not in str(error.to_dict())


class TestNormalizeErrors:
    """Test normalize_errors decorator"""

    @pytest.mark.asyncio
    async def test_passes_result(self):
        """Test successful calls are untouched"""
        @normalize_errors("op")
        async def op(x):
            return x * 2

        assert await op(21) == 42

    @pytest.mark.asyncio
    async def test_taxonomy_error_passes_through(self):
        """Test that MarketplaceError subclasses are re-raised as is"""
        @normalize_errors("op")
        async def op():
            raise NotFound("missing")

        with pytest.raises(NotFound, match="missing"):
            await op()

    @pytest.mark.asyncio
    async def test_other_errors_become_upstream_failure(self):
        """Test that unexpected errors are wrapped"""
        @normalize_errors("register_vendor")
        async def op():
            raise KeyError("delegatedPrivateKey")

        with pytest.raises(UpstreamFailure) as exc_info:
            await op()

        assert exc_info.value.message == "register_vendor failed because of an upstream error"
        assert "delegatedPrivateKey" in exc_info.value.cause_message
        assert isinstance(exc_info.value.__cause__, KeyError)

    def test_preserves_function_name(self):
        """Test functools.wraps metadata"""
        @normalize_errors("op")
        async def my_operation():
            pass

        assert my_operation.__name__ == "my_operation"
