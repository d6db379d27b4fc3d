"""Unit tests for identifier normalization and check-digit validation."""

import pytest

from reconciler.domain.services.identifier import check_digit, normalize, validate_check_digit


class TestNormalize:
    """Test suite for normalize()."""

    def test_annotation_after_delimiter_is_discarded(self):
        """Test that the part after the first delimiter is ignored."""
        assert normalize("12345678: Doctor Name") == ("12345678", True)

    def test_punctuation_is_stripped(self):
        """Test dotted and dashed identifiers."""
        assert normalize("1.234.567-2") == ("12345672", True)
        assert normalize(" 123 456 ") == ("123456", True)

    def test_spreadsheet_numbers(self):
        """Test integers handed back as floats or float strings."""
        assert normalize(12345672) == ("12345672", True)
        assert normalize(12345672.0) == ("12345672", True)
        assert normalize("12345672.0") == ("12345672", True)

    def test_non_integral_float_fails(self):
        """Test that a fractional number is not an identifier."""
        assert normalize(1234567.5) == (None, False)

    @pytest.mark.parametrize("raw", ["1.234", "12345", "123456789", "", "abc", None, True, float("nan")])
    def test_invalid_inputs(self, raw):
        """Test digit counts outside [6, 8] and non-identifier values."""
        assert normalize(raw) == (None, False)

    def test_custom_delimiter(self):
        """Test a configured delimiter other than ':'."""
        assert normalize("12345678-99", delimiter="-") == ("12345678", True)
        # with the default delimiter the trailing digits are kept and overflow
        assert normalize("12345678-99") == (None, False)

    @pytest.mark.parametrize("raw", ["12345678: X", "1.234.567-2", "123456", 7654321.0])
    def test_idempotent(self, raw):
        """Test normalize(normalize(x)) == normalize(x)."""
        key, ok = normalize(raw)
        assert ok
        assert normalize(key) == (key, True)


class TestCheckDigit:
    """Test suite for check-digit validation."""

    def test_check_digit(self):
        """Test the weighted modulo-10 check digit."""
        assert check_digit("1234567") == 2

    def test_check_digit_requires_seven_digits(self):
        """Test that the base must be exactly seven digits."""
        with pytest.raises(ValueError):
            check_digit("123")

    def test_valid_identifier(self):
        """Test an identifier whose check digit matches."""
        assert validate_check_digit("12345672") == (True, None)

    def test_wrong_check_digit(self):
        """Test an identifier whose check digit does not match."""
        valid, note = validate_check_digit("12345673")
        assert valid is False
        assert "does not match" in note

    def test_seven_digit_identifier_is_unverifiable(self):
        """Test that a seven-digit key reports the missing check digit."""
        valid, note = validate_check_digit("1234567")
        assert valid is False
        assert "expected 2" in note

    def test_short_identifier_is_truncated(self):
        """Test that a six-digit key is reported as truncated."""
        valid, note = validate_check_digit("123456")
        assert valid is False
        assert "truncated" in note
