from typing import Dict, Optional

# 美国州、特区与常住领地代码表。
US_STATES: Dict[str, str] = {
    "AL": "Alabama",
    "AK": "Alaska",
    "AZ": "Arizona",
    "AR": "Arkansas",
    "CA": "California",
    "CO": "Colorado",
    "CT": "Connecticut",
    "DE": "Delaware",
    "FL": "Florida",
    "GA": "Georgia",
    "HI": "Hawaii",
    "ID": "Idaho",
    "IL": "Illinois",
    "IN": "Indiana",
    "IA": "Iowa",
    "KS": "Kansas",
    "KY": "Kentucky",
    "LA": "Louisiana",
    "ME": "Maine",
    "MD": "Maryland",
    "MA": "Massachusetts",
    "MI": "Michigan",
    "MN": "Minnesota",
    "MS": "Mississippi",
    "MO": "Missouri",
    "MT": "Montana",
    "NE": "Nebraska",
    "NV": "Nevada",
    "NH": "New Hampshire",
    "NJ": "New Jersey",
    "NM": "New Mexico",
    "NY": "New York",
    "NC": "North Carolina",
    "ND": "North Dakota",
    "OH": "Ohio",
    "OK": "Oklahoma",
    "OR": "Oregon",
    "PA": "Pennsylvania",
    "RI": "Rhode Island",
    "SC": "South Carolina",
    "SD": "South Dakota",
    "TN": "Tennessee",
    "TX": "Texas",
    "UT": "Utah",
    "VT": "Vermont",
    "VA": "Virginia",
    "WA": "Washington",
    "WV": "West Virginia",
    "WI": "Wisconsin",
    "WY": "Wyoming",
    "DC": "District of Columbia",
    "PR": "Puerto Rico",
    "GU": "Guam",
    "VI": "U.S. Virgin Islands",
    "AS": "American Samoa",
    "MP": "Northern Mariana Islands",
}

_STATE_CODES_BY_NAME: Dict[str, str] = {name.lower(): code for code, name in US_STATES.items()}

_REGIONAL_INDICATOR_A = 0x1F1E6


def normalize_country_code(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip().upper()
    if len(text) != 2 or not ("A" <= text[0] <= "Z" and "A" <= text[1] <= "Z"):
        return None
    return text


def normalize_state_code(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip().upper()
    if text.startswith("US-"):
        text = text[3:]
    return text if text in US_STATES else None


def state_code_for_name(value) -> Optional[str]:
    """州/领地全名 -> 代码（忽略大小写）。"""
    if not isinstance(value, str):
        return None
    return _STATE_CODES_BY_NAME.get(value.strip().lower())


def flag_emoji(country_code: str) -> str:
    """两位国家代码 -> 对应的区域指示符国旗符号。"""
    return "".join(chr(_REGIONAL_INDICATOR_A + ord(letter) - ord("A")) for letter in country_code.upper())
