"""
IFTA jurisdictions and quarter helpers
"""
from datetime import date, timedelta
from typing import Optional, Tuple
import re

JURISDICTION_NAMES = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho",
    "IL": "Illinois", "IN": "Indiana", "IA": "Iowa", "KS": "Kansas",
    "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi",
    "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma",
    "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah",
    "VT": "Vermont", "VA": "Virginia", "WA": "Washington", "WV": "West Virginia",
    "WI": "Wisconsin", "WY": "Wyoming", "DC": "District of Columbia",
    # Canada
    "AB": "Alberta", "BC": "British Columbia", "MB": "Manitoba",
    "NB": "New Brunswick", "NL": "Newfoundland and Labrador", "NS": "Nova Scotia",
    "NT": "Northwest Territories", "NU": "Nunavut", "ON": "Ontario",
    "PE": "Prince Edward Island", "QC": "Quebec", "SK": "Saskatchewan", "YT": "Yukon",
    "MX": "Mexico",
}

QUARTER_PATTERN = re.compile(r"[0-9]{4}-Q[1-4]")


def get_state_name(code: Optional[str]) -> Optional[str]:
    if not code:
        return code
    return JURISDICTION_NAMES.get(code.upper(), code)


def is_valid_quarter(quarter: Optional[str]) -> bool:
    return bool(quarter and QUARTER_PATTERN.fullmatch(quarter))


def parse_quarter(quarter: str) -> Tuple[int, int]:
    """'2024-Q3' -> (2024, 3); ValueError on a malformed quarter"""
    if not is_valid_quarter(quarter):
        raise ValueError(f"Invalid quarter format: {quarter}")
    year, q = quarter.split("-Q")
    return int(year), int(q)


def quarter_date_range(quarter: str) -> Tuple[date, date]:
    """First and last day of the quarter"""
    year, q = parse_quarter(quarter)
    start = date(year, (q - 1) * 3 + 1, 1)
    if q == 4:
        end = date(year, 12, 31)
    else:
        end = date(year, q * 3 + 1, 1) - timedelta(days=1)
    return start, end


def quarter_for_date(value: date) -> str:
    return f"{value.year}-Q{(value.month - 1) // 3 + 1}"


def previous_quarter(quarter: str) -> str:
    year, q = parse_quarter(quarter)
    return f"{year - 1}-Q4" if q == 1 else f"{year}-Q{q - 1}"


def mid_quarter_date(quarter: str) -> date:
    """The 15th of the quarter's middle month"""
    year, q = parse_quarter(quarter)
    return date(year, (q - 1) * 3 + 2, 15)
