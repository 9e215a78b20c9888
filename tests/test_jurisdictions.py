"""
Tests for quarter and jurisdiction helpers
"""
import pytest
from datetime import date

from truck_command.services.jurisdictions import (
    get_state_name,
    is_valid_quarter,
    parse_quarter,
    quarter_date_range,
    quarter_for_date,
    previous_quarter,
    mid_quarter_date,
)


class TestQuarters:
    """Test quarter parsing and date ranges"""

    def test_quarter_date_range_first_quarter(self):
        assert quarter_date_range("2024-Q1") == (date(2024, 1, 1), date(2024, 3, 31))

    def test_quarter_date_range_second_quarter(self):
        assert quarter_date_range("2024-Q2") == (date(2024, 4, 1), date(2024, 6, 30))

    def test_quarter_date_range_fourth_quarter(self):
        assert quarter_date_range("2023-Q4") == (date(2023, 10, 1), date(2023, 12, 31))

    @pytest.mark.parametrize("quarter", [
        "2024-Q9", "2024-Q0", "24-Q1", "2024Q1", "", None,
        "2024-Q1\n", "\uff12\uff10\uff12\uff14-Q1",
    ])
    def test_invalid_quarters(self, quarter):
        assert not is_valid_quarter(quarter)

    def test_parse_quarter_rejects_bad_format(self):
        with pytest.raises(ValueError):
            parse_quarter("2024-Q9")

    def test_parse_quarter(self):
        assert parse_quarter("2025-Q3") == (2025, 3)

    def test_quarter_for_date(self):
        assert quarter_for_date(date(2024, 11, 2)) == "2024-Q4"
        assert quarter_for_date(date(2024, 4, 1)) == "2024-Q2"

    def test_previous_quarter_wraps_year(self):
        assert previous_quarter("2024-Q1") == "2023-Q4"
        assert previous_quarter("2024-Q3") == "2024-Q2"

    def test_mid_quarter_date(self):
        """Fuel-only trips are dated the 15th of the middle month"""
        assert mid_quarter_date("2024-Q3") == date(2024, 8, 15)
        assert mid_quarter_date("2024-Q1") == date(2024, 2, 15)


class TestStateNames:

    def test_known_state(self):
        assert get_state_name("TX") == "Texas"
        assert get_state_name("ok") == "Oklahoma"

    def test_unknown_code_passes_through(self):
        assert get_state_name("ZZ") == "ZZ"
