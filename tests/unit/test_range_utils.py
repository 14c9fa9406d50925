"""
Unit tests for byte-range parsing.
"""

import pytest

from app.utils.range_utils import RangeParseError, parse_byte_range


class TestParseByteRange:

    def test_explicit_range(self):
        assert parse_byte_range("bytes=100-199", 1000) == (100, 199)

    def test_open_ended(self):
        assert parse_byte_range("bytes=500-", 1000) == (500, 999)

    def test_suffix(self):
        assert parse_byte_range("bytes=-100", 1000) == (900, 999)

    def test_suffix_longer_than_file(self):
        assert parse_byte_range("bytes=-5000", 1000) == (0, 999)

    def test_end_clamped(self):
        assert parse_byte_range("bytes=0-99999", 1000) == (0, 999)

    def test_single_byte(self):
        assert parse_byte_range("bytes=0-0", 1000) == (0, 0)

    @pytest.mark.parametrize("header", [
        "bytes=1000-",
        "bytes=2000-3000",
        "bytes=200-100",
        "bytes=0-1,5-9",
        "items=0-10",
        "bytes=abc-",
        "bytes=-0",
        "bytes=",
    ])
    def test_unsatisfiable_or_malformed(self, header):
        with pytest.raises(RangeParseError):
            parse_byte_range(header, 1000)

    def test_empty_file(self):
        with pytest.raises(RangeParseError):
            parse_byte_range("bytes=0-", 0)
