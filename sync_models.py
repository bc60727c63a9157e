"""Data types shared by the query, pagination and batch write paths."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class FilterOperator(Enum):
    EQUALS = 'Equals'
    NOT_EQUALS = 'NotEquals'
    IS_NULL = 'IsNull'
    IS_NOT_NULL = 'IsNotNull'
    GREATER_THAN = 'GreaterThan'
    GREATER_OR_EQUAL = 'GreaterOrEqual'
    LESS_THAN = 'LessThan'
    LESS_OR_EQUAL = 'LessOrEqual'
    CONTAINS = 'Contains'
    NOT_CONTAINS = 'NotContains'

    @property
    def is_null_check(self):
        return self in (FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL)

    @classmethod
    def parse(cls, value):
        """Accept an operator member, its name, or one of the labels shown in the filter picker."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        try:
            return _OPERATOR_LABELS[text.lower()]
        except KeyError:
            raise ValueError(f"Unknown filter operator: {value!r}")


_OPERATOR_LABELS = {
    'equals': FilterOperator.EQUALS,
    'does not equal': FilterOperator.NOT_EQUALS,
    'not equals': FilterOperator.NOT_EQUALS,
    'is null': FilterOperator.IS_NULL,
    'is not null': FilterOperator.IS_NOT_NULL,
    'greater than': FilterOperator.GREATER_THAN,
    'greater than or equal': FilterOperator.GREATER_OR_EQUAL,
    'greater than or equal to': FilterOperator.GREATER_OR_EQUAL,
    'less than': FilterOperator.LESS_THAN,
    'less than or equal': FilterOperator.LESS_OR_EQUAL,
    'less than or equal to': FilterOperator.LESS_OR_EQUAL,
    'contains': FilterOperator.CONTAINS,
    'does not contain': FilterOperator.NOT_CONTAINS,
    'not contains': FilterOperator.NOT_CONTAINS,
}


class Connector(Enum):
    AND = 'And'
    OR = 'Or'

    @classmethod
    def parse(cls, value):
        if value is None or value == '':
            return cls.AND
        if isinstance(value, cls):
            return value
        return cls.OR if str(value).strip().lower() == 'or' else cls.AND


class WriteMode(Enum):
    CREATE = 'create'
    UPDATE = 'update'


@dataclass(frozen=True)
class RemoteField:
    name: str
    label: str
    type: str
    is_reference: bool = False
    reference_targets: Tuple[str, ...] = ()
    createable: bool = True
    updateable: bool = True

    @classmethod
    def from_describe(cls, raw):
        field_type = raw.get('type') or ''
        targets = tuple(raw.get('referenceTo') or ())
        return cls(
            name=raw['name'],
            label=raw.get('label') or raw['name'],
            type=field_type,
            is_reference=field_type == 'reference' or bool(targets),
            reference_targets=targets,
            createable=bool(raw.get('createable', True)),
            updateable=bool(raw.get('updateable', True)),
        )


@dataclass(frozen=True)
class RemoteObjectSchema:
    """Describe result for one sObject; fields keep the order Salesforce returned."""

    name: str
    fields: Tuple[RemoteField, ...]

    @classmethod
    def from_describe(cls, object_name, payload):
        return cls(
            name=object_name,
            fields=tuple(RemoteField.from_describe(f) for f in payload.get('fields', [])),
        )

    def get_field(self, name):
        for remote_field in self.fields:
            if remote_field.name == name:
                return remote_field
        return None

    def field_types(self):
        return {f.name: f.type for f in self.fields}

    def writable_fields(self, mode):
        mode = WriteMode(mode)
        if mode is WriteMode.CREATE:
            return [f for f in self.fields if f.createable]
        return [f for f in self.fields if f.updateable]


@dataclass(frozen=True)
class RemoteObjectSummary:
    name: str
    label: str
    label_plural: str = ''
    queryable: bool = True


@dataclass
class FilterCondition:
    field: str
    operator: FilterOperator
    value: Optional[str] = None
    connector: Connector = Connector.AND
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.operator = FilterOperator.parse(self.operator)
        self.connector = Connector.parse(self.connector)

    @property
    def object_name(self):
        return split_prefixed(self.field)[0]

    @property
    def field_name(self):
        return split_prefixed(self.field)[1]


def split_prefixed(name):
    """Split an ``Object::Field`` identifier into its two parts."""
    if '::' in name:
        object_name, field_name = name.split('::', 1)
        return object_name, field_name
    return '', name


def prefixed(object_name, field_name):
    return f"{object_name}::{field_name}"


@dataclass
class FieldMapping:
    source_column: str
    target_field: str = ''

    @property
    def is_mapped(self):
        return bool(self.target_field)


@dataclass(frozen=True)
class SheetSnapshot:
    headers: List[str]
    rows: List[List[Any]]
    row_count: int
    col_count: int


@dataclass(frozen=True)
class QueryPage:
    records: List[Dict[str, Any]]
    total_size: int
    done: bool
    continuation_token: Optional[str] = None


@dataclass
class RowError:
    row: int
    message: str


@dataclass
class BatchResult:
    success: bool = True
    success_count: int = 0
    error_count: int = 0
    errors: List[RowError] = field(default_factory=list)

    @property
    def total(self):
        return self.success_count + self.error_count


@dataclass
class UpdateRecord:
    id: str
    data: Dict[str, Any]
