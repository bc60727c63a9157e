"""Turn sheet rows into Salesforce record payloads using column -> field mappings."""

from sync_models import FieldMapping, UpdateRecord, WriteMode
from value_coercion import coerce_value, is_empty


def initialize_mappings(headers):
    """One unmapped entry per sheet column."""
    return [FieldMapping(source_column=header) for header in headers]


def update_mapping(mappings, source_column, target_field):
    return [
        FieldMapping(m.source_column, target_field) if m.source_column == source_column else m
        for m in mappings
    ]


def auto_map(mappings, fields):
    """Pre-fill targets whose column header matches a field name or label (case-insensitive)."""
    by_key = {}
    for remote_field in fields:
        by_key.setdefault(remote_field.name.lower(), remote_field.name)
        by_key.setdefault(remote_field.label.lower(), remote_field.name)
    return [
        m if m.target_field else FieldMapping(m.source_column, by_key.get(m.source_column.strip().lower(), ''))
        for m in mappings
    ]


def valid_mappings(mappings):
    return [m for m in mappings if m.is_mapped]


def build_record(row, headers, mappings, field_types):
    """Map one row to ``{field: coerced value}``; columns missing from the headers are skipped."""
    record = {}
    for mapping in mappings:
        if not mapping.is_mapped:
            continue
        try:
            col_index = headers.index(mapping.source_column)
        except ValueError:
            continue
        raw_value = row[col_index] if col_index < len(row) else None
        record[mapping.target_field] = coerce_value(raw_value, field_types.get(mapping.target_field, ''))
    return record


def build_create_records(snapshot, mappings, field_types):
    mappings = valid_mappings(mappings)
    return [build_record(row, snapshot.headers, mappings, field_types) for row in snapshot.rows]


def build_update_records(snapshot, mappings, id_column, field_types):
    """Rows become ``UpdateRecord(id, data)``; rows without an id are left out."""
    mappings = valid_mappings(mappings)
    try:
        id_index = snapshot.headers.index(id_column)
    except ValueError:
        id_index = -1

    records = []
    for row in snapshot.rows:
        data = build_record(row, snapshot.headers, mappings, field_types)
        data.pop('Id', None)
        raw_id = row[id_index] if 0 <= id_index < len(row) else None
        record_id = '' if is_empty(raw_id) else str(raw_id).strip()
        if record_id:
            records.append(UpdateRecord(id=record_id, data=data))
    return records


def build_records(snapshot, mappings, mode, field_types, id_column=''):
    if WriteMode(mode) is WriteMode.UPDATE:
        return build_update_records(snapshot, mappings, id_column, field_types)
    return build_create_records(snapshot, mappings, field_types)
