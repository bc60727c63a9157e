"""Turn spreadsheet cell values into values Salesforce accepts for a given field type."""

import datetime
import math

TRUE_STRINGS = {'TRUE', '1', 'YES'}
FALSE_STRINGS = {'FALSE', '0', 'NO'}

BOOLEAN_TYPES = {'boolean', 'checkbox'}
DATE_TYPES = {'date', 'datetime', 'time'}


def is_empty(value):
    """Check for None, empty string, or NaN (pandas uses NaN for blank cells)."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ''
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def is_boolean_type(field_type):
    return (field_type or '').lower() in BOOLEAN_TYPES


def is_date_type(field_type):
    return (field_type or '').lower() in DATE_TYPES


def _parse_boolean_string(value):
    upper = value.strip().upper()
    if upper in TRUE_STRINGS:
        return True
    if upper in FALSE_STRINGS:
        return False
    return None


def normalize_value(value):
    """Type-independent first pass: blanks become None, yes/no style strings become booleans."""
    if is_empty(value):
        return None

    if isinstance(value, str):
        parsed = _parse_boolean_string(value)
        if parsed is not None:
            return parsed

    return value


def coerce_value(value, field_type):
    """Coerce a raw cell value for a field of the declared Salesforce type."""
    value = normalize_value(value)
    if value is None:
        return None

    if is_boolean_type(field_type):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            parsed = _parse_boolean_string(value)
            if parsed is not None:
                return parsed
        return bool(value)

    # pandas hands back Timestamp/date objects for date columns
    if isinstance(value, datetime.datetime):
        if (field_type or '').lower() == 'date':
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, datetime.date):
        return value.isoformat()

    return value
