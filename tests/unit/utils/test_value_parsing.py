from datetime import date

import pytest

from caseflow.utils.value_parsing import normalize_text, parse_amount, parse_date


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("$137,500.00", 137500.0),
            ("250000 USD", 250000.0),
            ("12.5%", 12.5),
            ("-40", -40.0),
            ("€ 1 000", 1000.0),
        ],
    )
    def test_parses_numeric_prefix(self, raw, expected):
        assert parse_amount(raw) == expected

    def test_non_numeric(self):
        assert parse_amount("unknown") is None
        assert parse_amount(None) is None


class TestParseDate:
    @pytest.mark.parametrize(
        "raw",
        ["2025-03-14", "2025/03/14", "2025-03-14T09:30:00Z", "03/14/2025", "14 March 2025", "March 14, 2025", "Mar 14th 2025"],
    )
    def test_supported_formats(self, raw):
        assert parse_date(raw) == date(2025, 3, 14)

    def test_invalid_dates(self):
        assert parse_date("2025-02-30") is None
        assert parse_date("next Tuesday") is None
        assert parse_date("") is None


def test_normalize_text():
    assert normalize_text("  Acme   Corp., Inc. ") == "acme corp inc"
    assert normalize_text(None) == ""
