"""
Tests for crm_analytics.validators module.
"""
import pytest

from crm_analytics.config import CacheConfig
from crm_analytics.exceptions import ValidationError
from crm_analytics.validators import (
    MAX_LIMIT,
    validate_cache_type,
    validate_customer_id,
    validate_limit,
)

CACHE_TYPES = CacheConfig().cache_types


class TestValidateLimit:
    """Tests for validate_limit function."""

    def test_valid_limit(self):
        assert validate_limit(10) == 10

    def test_boundaries(self):
        """Both ends of the range are accepted."""
        assert validate_limit(1) == 1
        assert validate_limit(MAX_LIMIT) == MAX_LIMIT

    def test_zero(self):
        """Zero is below the minimum."""
        with pytest.raises(ValidationError) as exc_info:
            validate_limit(0)
        assert "at least 1" in str(exc_info.value)

    def test_too_large(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_limit(MAX_LIMIT + 1)
        assert "exceed" in str(exc_info.value)

    def test_not_integer(self):
        """Strings and floats are rejected."""
        for value in ("10", 2.5, None):
            with pytest.raises(ValidationError):
                validate_limit(value)

    def test_bool_rejected(self):
        """bool is an int subclass but not a valid limit."""
        with pytest.raises(ValidationError):
            validate_limit(True)

    def test_custom_field_name(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_limit(0, field="top_n")
        assert exc_info.value.field == "top_n"


class TestValidateCustomerId:
    """Tests for validate_customer_id function."""

    def test_valid(self):
        assert validate_customer_id(42) == 42

    def test_zero_and_negative(self):
        for value in (0, -5):
            with pytest.raises(ValidationError) as exc_info:
                validate_customer_id(value)
            assert "positive" in str(exc_info.value)

    def test_not_integer(self):
        with pytest.raises(ValidationError):
            validate_customer_id("42")

    def test_product_field(self):
        """Same rule for product ids, with the field name in the error."""
        with pytest.raises(ValidationError) as exc_info:
            validate_customer_id(0, field="product_id")
        assert exc_info.value.field == "product_id"


class TestValidateCacheType:
    """Tests for validate_cache_type function."""

    def test_known_types(self):
        for cache_type in CACHE_TYPES:
            assert validate_cache_type(cache_type, CACHE_TYPES) == cache_type

    def test_normalizes_case_and_whitespace(self):
        assert validate_cache_type("  RFM ", CACHE_TYPES) == "rfm"

    def test_none_means_all(self):
        assert validate_cache_type(None, CACHE_TYPES) is None
        assert validate_cache_type("", CACHE_TYPES) is None

    def test_none_not_allowed(self):
        with pytest.raises(ValidationError):
            validate_cache_type(None, CACHE_TYPES, allow_none=False)

    def test_unknown_type(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_cache_type("sessions", CACHE_TYPES)
        assert "Must be one of" in str(exc_info.value)
        assert exc_info.value.value == "sessions"

    def test_not_string(self):
        with pytest.raises(ValidationError):
            validate_cache_type(5, CACHE_TYPES)
