"""Build SOQL SELECT statements from chosen fields and filter conditions."""

import math
import re

from sync_config import MAX_ROWS_DEFAULT, MAX_ROWS_LIMIT
from sync_errors import ValidationError
from sync_models import Connector, FilterOperator
from value_coercion import is_date_type

VALID_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
BARE_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
DATE_VALUE = re.compile(
    r'^(?:\d{4}-\d{2}-\d{2}'
    r'(?:T\d{2}:\d{2}:\d{2}(?:\.\d{1,3})?(?:Z|[+-]\d{2}:?\d{2}))?'
    r'|\d{2}:\d{2}:\d{2}(?:\.\d{1,3})?Z?)$'
)
DATE_KEYWORD = re.compile(
    r'^(?:YESTERDAY|TODAY|TOMORROW'
    r'|(?:LAST|THIS|NEXT)_(?:WEEK|MONTH|QUARTER|YEAR|FISCAL_QUARTER|FISCAL_YEAR)'
    r'|(?:LAST|NEXT)_90_DAYS'
    r'|(?:LAST|NEXT)_N_(?:DAYS|WEEKS|MONTHS|QUARTERS|YEARS|FISCAL_QUARTERS|FISCAL_YEARS):\d+'
    r'|N_(?:DAYS|WEEKS|MONTHS|QUARTERS|YEARS|FISCAL_QUARTERS|FISCAL_YEARS)_AGO:\d+)$',
    re.IGNORECASE,
)

COMPARISON_OPERATORS = {
    FilterOperator.EQUALS: '=',
    FilterOperator.NOT_EQUALS: '!=',
    FilterOperator.IS_NULL: '= null',
    FilterOperator.IS_NOT_NULL: '!= null',
    FilterOperator.GREATER_THAN: '>',
    FilterOperator.GREATER_OR_EQUAL: '>=',
    FilterOperator.LESS_THAN: '<',
    FilterOperator.LESS_OR_EQUAL: '<=',
}


def is_valid_identifier(name):
    return isinstance(name, str) and bool(VALID_IDENTIFIER.match(name))


def escape_soql(value):
    """Escape a string literal for use inside single quotes."""
    return (
        str(value)
        .replace('\\', '\\\\')
        .replace("'", "\\'")
        .replace('\n', '\\n')
        .replace('\r', '\\r')
    )


def format_date_literal(value, field_type):
    """Datetime fields need a full timestamp; expand a bare date to midnight UTC.

    Date values go into the query unquoted, so anything that is not an ISO
    date/time or a date keyword such as ``TODAY`` or ``LAST_N_DAYS:30`` is rejected.
    """
    value = value.strip()
    if not DATE_VALUE.match(value) and not DATE_KEYWORD.match(value):
        raise ValidationError('INVALID_DATE_VALUE', f"Not a valid date value: {value!r}")
    if (field_type or '').lower() == 'datetime' and BARE_DATE.match(value):
        return f"{value}T00:00:00Z"
    return value


def build_condition(field_name, operator, value, field_type):
    """Render one WHERE condition."""
    operator = FilterOperator.parse(operator)

    if operator.is_null_check:
        return f"{field_name} {COMPARISON_OPERATORS[operator]}"
    if operator is FilterOperator.CONTAINS:
        return f"{field_name} LIKE '%{escape_soql(value)}%'"
    if operator is FilterOperator.NOT_CONTAINS:
        return f"(NOT {field_name} LIKE '%{escape_soql(value)}%')"

    op = COMPARISON_OPERATORS[operator]
    if is_date_type(field_type):
        return f"{field_name} {op} {format_date_literal(str(value), field_type)}"
    return f"{field_name} {op} '{escape_soql(value)}'"


def clamp_max_rows(max_rows):
    """Clamp the requested row limit; zero, negative or non-numeric falls back to the default."""
    if isinstance(max_rows, bool):
        return MAX_ROWS_DEFAULT
    try:
        number = float(max_rows)
    except (TypeError, ValueError):
        return MAX_ROWS_DEFAULT
    if math.isnan(number) or math.isinf(number):
        return MAX_ROWS_DEFAULT

    number = math.floor(number)
    if number <= 0:
        return MAX_ROWS_DEFAULT
    return max(1, min(MAX_ROWS_LIMIT, number))


def select_filters(object_name, filters):
    """Filters that apply to this object and can actually be rendered."""
    selected = []
    for condition in filters or []:
        if condition.object_name != object_name:
            continue
        field_name = condition.field_name
        if not field_name or not is_valid_identifier(field_name):
            continue
        if not condition.operator.is_null_check and not condition.value:
            continue
        selected.append(condition)
    return selected


def build_query(object_name, field_names, filters=None, max_rows=None, field_types=None):
    """Compose ``SELECT ... FROM ... [WHERE ...] LIMIT n`` for one object.

    ``filters`` is a sequence of FilterCondition whose ``field`` is ``Object::Field``;
    filters for other objects are ignored. ``field_types`` maps field name to the
    Salesforce type from describe, used to decide date and quoting rules.
    """
    safe_fields = [name for name in field_names if is_valid_identifier(name)]
    if not safe_fields:
        raise ValidationError('NO_VALID_FIELDS', f"No valid fields for {object_name}")
    if not is_valid_identifier(object_name):
        raise ValidationError('INVALID_OBJECT', f"Invalid object: {object_name}")

    field_types = field_types or {}
    query = f"SELECT {', '.join(safe_fields)} FROM {object_name}"

    conditions = []
    for condition in select_filters(object_name, filters):
        field_name = condition.field_name
        rendered = build_condition(
            field_name,
            condition.operator,
            condition.value,
            field_types.get(field_name, ''),
        )
        if conditions:
            connector = 'OR' if condition.connector is Connector.OR else 'AND'
            rendered = f"{connector} {rendered}"
        conditions.append(rendered)

    if conditions:
        query += f" WHERE {' '.join(conditions)}"

    return f"{query} LIMIT {clamp_max_rows(max_rows)}"


def parse_select_fields(soql):
    """Column names from the SELECT clause of a hand-written query."""
    match = re.search(r'SELECT\s+(.+?)\s+FROM', soql, re.IGNORECASE | re.DOTALL)
    if not match:
        return []
    return [name.strip() for name in match.group(1).split(',') if name.strip()]
