"""Step-by-step export, import and report flows.

Each orchestrator is a small state machine. A failed network call puts the flow
back on the step before it and re-raises; local validation errors are raised
without touching the step.
"""

import dataclasses
import logging
import weakref
from enum import Enum

from batch_writer import BatchWriter
from cancellation import CancelScope
from pagination import collect_records, execute_query
from query_builder import build_query, is_valid_identifier, parse_select_fields
from record_builder import (
    build_records,
    initialize_mappings,
    update_mapping,
    valid_mappings,
)
from reporter import LoggingReporter
from salesforce_reports import fetch_reports, parse_report, search_reports
from schema_registry import SchemaRegistry
from sheet_store import WRITE_TARGETS
from sync_config import DEFAULT_CHUNK_SIZE, MAX_OBJECTS
from sync_errors import AbortError, SyncError, ValidationError
from sync_models import FilterCondition, WriteMode, prefixed, split_prefixed

logger = logging.getLogger(__name__)


class SyncStep(Enum):
    SOURCE = 'source'
    OBJECT = 'object'
    MAPPING = 'mapping'
    FIELDS = 'fields'
    FILTERS = 'filters'
    SELECT = 'select'
    LOADING = 'loading'
    SUCCESS = 'success'


class SyncSession:
    """Everything that lives for one connected session: client, describe cache, sinks."""

    def __init__(self, client, sheet_store, registry=None, reporter=None, chunk_size=DEFAULT_CHUNK_SIZE):
        self.client = client
        self.sheet_store = sheet_store
        self.registry = registry or SchemaRegistry(client)
        self.reporter = reporter or LoggingReporter()
        self.chunk_size = chunk_size
        self._scopes = weakref.WeakSet()

    def cancel_scope(self):
        """A CancelScope that is also cancelled when the credentials change.

        The session holds scopes weakly, so a scope goes away with the flow that owns it.
        """
        scope = CancelScope()
        self._scopes.add(scope)
        return scope

    def set_connection(self, connection):
        """Switch credentials: in-flight reads are cancelled and cached describes dropped."""
        for scope in list(self._scopes):
            scope.cancel("Credentials changed")
        self.client.set_connection(connection)
        self.registry.invalidate()
        logger.info("Salesforce connection replaced; schema cache cleared")


class ExportOrchestrator:
    """Sheet -> Salesforce: source -> object -> mapping -> loading -> success."""

    def __init__(self, session):
        self.session = session
        self._describe_scope = session.cancel_scope()
        self.reset()

    def reset(self):
        self._describe_scope.cancel("Export was reset")
        self.step = SyncStep.SOURCE
        self.error = None
        self.snapshot = None
        self.objects = []
        self.object_name = None
        self.schema = None
        self.mode = WriteMode.CREATE
        self.mappings = []
        self.id_column = ''
        self.result = None

    def _fail(self, error, step):
        self.error = error.message
        self.step = step
        logger.error(f"Export failed at {step.value}: {error.message}")

    def load_sheet(self):
        """Read the current selection; on success mappings start out empty, one per column."""
        self.error = None
        try:
            snapshot = self.session.sheet_store.read_selection()
        except ValidationError as e:
            self._fail(e, SyncStep.SOURCE)
            raise

        self.snapshot = snapshot
        self.mappings = initialize_mappings(snapshot.headers)
        self.step = SyncStep.OBJECT
        logger.info(f"Loaded {len(snapshot.rows)} rows with columns {snapshot.headers}")
        return snapshot

    async def load_objects(self, cancel_token=None):
        try:
            self.objects = await self.session.client.list_objects(cancel_token=cancel_token)
        except SyncError as e:
            self.error = e.message
            raise
        return self.objects

    async def select_object(self, object_name):
        """Describe ``object_name``; a newer call supersedes one still in flight."""
        if self.snapshot is None:
            raise ValidationError('NO_SHEET_DATA', "Load sheet data before choosing an object")
        if not is_valid_identifier(object_name):
            raise ValidationError('INVALID_OBJECT', f"Invalid object: {object_name}")

        token = self._describe_scope.renew()
        self.error = None
        try:
            schema = await self.session.registry.describe(object_name, cancel_token=token)
        except AbortError:
            raise
        except SyncError as e:
            self._fail(e, SyncStep.OBJECT)
            raise

        self.object_name = object_name
        self.schema = schema
        self.step = SyncStep.MAPPING
        return schema

    @property
    def target_fields(self):
        """Fields a column can be mapped to for the current write mode."""
        if self.schema is None:
            return []
        return self.schema.writable_fields(self.mode)

    def set_mode(self, mode):
        self.mode = WriteMode(mode)

    def update_mapping(self, source_column, target_field):
        self.mappings = update_mapping(self.mappings, source_column, target_field)

    def set_id_column(self, column):
        self.id_column = column

    @property
    def has_valid_mappings(self):
        return bool(valid_mappings(self.mappings))

    async def submit(self, cancel_token=None):
        if self.snapshot is None or self.object_name is None:
            raise ValidationError('NO_OBJECT', "Choose a sheet selection and an object first")
        if not self.has_valid_mappings:
            self.error = "Map at least one column to a Salesforce field"
            raise ValidationError('NO_FIELD_MAPPINGS', self.error)
        if self.mode is WriteMode.UPDATE and self.id_column not in self.snapshot.headers:
            self.error = "Choose the column that holds the record Id"
            raise ValidationError('NO_ID_COLUMN', self.error)

        records = build_records(
            self.snapshot,
            self.mappings,
            self.mode,
            self.session.registry.field_types(self.object_name),
            id_column=self.id_column,
        )
        skipped = len(self.snapshot.rows) - len(records)
        if skipped:
            self.session.reporter.warning(
                f"Skipped {skipped} rows without a record id", object=self.object_name, column=self.id_column
            )

        self.step = SyncStep.LOADING
        self.error = None
        writer = BatchWriter(self.session.client, self.session.reporter, self.session.chunk_size)
        try:
            result = await writer.run(self.object_name, records, self.mode, cancel_token=cancel_token)
        except SyncError as e:
            self._fail(e, SyncStep.MAPPING)
            raise

        if result.errors:
            logger.warning(f"Export completed with {result.error_count} errors")
        self.result = result
        self.step = SyncStep.SUCCESS
        return result


class ImportOrchestrator:
    """Salesforce -> sheet: object -> fields -> filters -> loading -> success."""

    def __init__(self, session):
        self.session = session
        self._describe_scope = session.cancel_scope()
        self.objects = []
        self.reset()

    def reset(self):
        self._describe_scope.cancel("Import was reset")
        self.step = SyncStep.OBJECT
        self.error = None
        self.validation_error = None
        self.selected_objects = []
        self.schemas = {}
        self.selected_fields = []
        self.filters = []
        self.max_rows = None
        self.query = ''
        self.result_count = 0

    def _fail(self, message, step):
        self.error = message
        self.step = step
        logger.error(f"Import failed: {message}")

    async def load_objects(self, cancel_token=None):
        try:
            self.objects = await self.session.client.list_objects(cancel_token=cancel_token)
        except SyncError as e:
            self.error = e.message
            raise
        return self.objects

    # ------------------------------------------------------------------
    # Objects and fields
    # ------------------------------------------------------------------
    def _check_object_selection(self, object_names):
        if not object_names:
            return ValidationError('NO_OBJECTS_SELECTED', "Select at least one object")
        if len(object_names) > MAX_OBJECTS:
            return ValidationError('TOO_MANY_OBJECTS', f"You can select up to {MAX_OBJECTS} objects")
        invalid = [name for name in object_names if not is_valid_identifier(name)]
        if invalid:
            return ValidationError('INVALID_OBJECT', f"Invalid object: {', '.join(invalid)}")
        return None

    async def select_objects(self, object_names):
        """Describe the chosen objects concurrently and move on to field selection.

        Changing the selection cancels describes still running for the previous one.
        """
        object_names = list(dict.fromkeys(object_names))
        error = self._check_object_selection(object_names)
        self.validation_error = error.message if error else None
        if error is not None:
            raise error

        token = self._describe_scope.renew()
        self.selected_objects = object_names
        self.selected_fields = []
        self.error = None

        schemas, errors = await self.session.registry.describe_many(object_names, cancel_token=token)
        self.schemas = schemas
        if errors:
            message = '; '.join(errors)
            self._fail(message, SyncStep.OBJECT)
            raise SyncError(message, code='DESCRIBE_FAILED')

        self.step = SyncStep.FIELDS
        return schemas

    @property
    def fields(self):
        """``(prefixed_name, RemoteField)`` pairs for every selected object, in selection order."""
        pairs = []
        for object_name in self.selected_objects:
            schema = self.schemas.get(object_name)
            if schema is None:
                continue
            pairs.extend((prefixed(object_name, f.name), f) for f in schema.fields)
        return pairs

    def get_field(self, prefixed_name):
        object_name, field_name = split_prefixed(prefixed_name)
        schema = self.schemas.get(object_name)
        return schema.get_field(field_name) if schema else None

    def header_for(self, prefixed_name):
        remote_field = self.get_field(prefixed_name)
        return remote_field.label if remote_field else prefixed_name

    def toggle_field(self, prefixed_name):
        if prefixed_name in self.selected_fields:
            self.selected_fields = [f for f in self.selected_fields if f != prefixed_name]
        else:
            self.selected_fields = self.selected_fields + [prefixed_name]

    def select_fields(self, prefixed_names):
        self.selected_fields = list(prefixed_names)

    def select_all_fields(self):
        self.selected_fields = [name for name, _ in self.fields]

    def clear_fields(self):
        self.selected_fields = []

    def go_to_filters(self):
        if not self.selected_fields:
            raise ValidationError('NO_FIELDS_SELECTED', "Select at least one field")
        self.step = SyncStep.FILTERS

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------
    def add_filter(self, field_name, operator, value=None, connector=None):
        condition = FilterCondition(field=field_name, operator=operator, value=value, connector=connector)
        self.filters.append(condition)
        return condition

    def update_filter(self, filter_id, **changes):
        for index, condition in enumerate(self.filters):
            if condition.id == filter_id:
                self.filters[index] = dataclasses.replace(condition, **changes)
                return self.filters[index]
        raise KeyError(filter_id)

    def remove_filter(self, filter_id):
        self.filters = [f for f in self.filters if f.id != filter_id]

    def clear_filters(self):
        self.filters = []
        self.max_rows = None

    def set_max_rows(self, max_rows):
        self.max_rows = max_rows

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def fields_by_object(self):
        grouped = {}
        for name in self.selected_fields:
            object_name, field_name = split_prefixed(name)
            grouped.setdefault(object_name, []).append(field_name)
        return grouped

    def build_queries(self):
        """SOQL per selected object; objects whose query cannot be built map to the ValidationError."""
        queries = {}
        for object_name, field_names in self.fields_by_object().items():
            try:
                queries[object_name] = build_query(
                    object_name,
                    field_names,
                    self.filters,
                    self.max_rows,
                    self.session.registry.field_types(object_name),
                )
            except ValidationError as e:
                queries[object_name] = e
        return queries

    async def _fetch(self, soql, cancel_token):
        cursor = await execute_query(self.session.client, soql, cancel_token=cancel_token)
        return await collect_records(cursor)

    async def submit(self, target='active', cancel_token=None):
        """Run one query per selected object and write each result set to the sheet.

        The first object goes to ``target``; every further object gets a new sheet
        so results never overwrite one another. Returns the number of records written.
        """
        grouped = self.fields_by_object()
        if not grouped:
            self.error = "Select at least one field"
            raise ValidationError('NO_FIELDS_SELECTED', self.error)
        if target not in WRITE_TARGETS:
            raise ValidationError('INVALID_TARGET', f"Unknown write target: {target!r}")

        self.step = SyncStep.LOADING
        self.error = None
        total = 0
        errors = []

        for position, (object_name, soql) in enumerate(self.build_queries().items()):
            if isinstance(soql, ValidationError):
                errors.append(soql.message)
                continue

            try:
                records = await self._fetch(soql, cancel_token)
            except AbortError as e:
                self._fail(e.message, SyncStep.FIELDS)
                raise
            except SyncError as e:
                errors.append(f"{object_name}: {e.message}")
                continue

            total += len(records)
            field_names = grouped[object_name]
            headers = [self.header_for(prefixed(object_name, name)) for name in field_names]
            try:
                self.session.sheet_store.write_records(
                    headers,
                    records,
                    field_names,
                    target=target if position == 0 else 'new',
                    sheet_prefix=object_name,
                )
            except (SyncError, OSError) as e:
                errors.append(f"{object_name}: Failed to insert data - {e}")

        self.result_count = total
        if errors:
            message = '; '.join(errors)
            self.selected_fields = []
            self.clear_filters()
            self._fail(message, SyncStep.FIELDS)
            raise SyncError(message, code='IMPORT_FAILED')

        logger.info(f"Imported {total} records from {', '.join(grouped)}")
        self.step = SyncStep.SUCCESS
        return total

    async def reload(self, target='active', cancel_token=None):
        return await self.submit(target=target, cancel_token=cancel_token)

    async def execute_soql(self, soql, target='active', cancel_token=None):
        """Run a hand-written query; columns come from its SELECT clause."""
        field_names = parse_select_fields(soql)
        if not field_names:
            raise ValidationError('NO_VALID_FIELDS', "Query has no SELECT fields")

        self.query = soql
        self.step = SyncStep.LOADING
        self.error = None
        try:
            records = await self._fetch(soql, cancel_token)
        except SyncError as e:
            self.selected_fields = []
            self.clear_filters()
            self._fail(e.message, SyncStep.FIELDS)
            raise

        try:
            self.session.sheet_store.write_records(
                field_names, records, field_names, target=target, sheet_prefix='SOQL'
            )
        except SyncError as e:
            self._fail(f"Failed to insert data: {e.message}", SyncStep.OBJECT)
            raise

        self.result_count = len(records)
        self.query = ''
        self.step = SyncStep.SUCCESS
        return len(records)


class ReportOrchestrator:
    """Report -> sheet: select -> loading -> success."""

    def __init__(self, session, user_id=None):
        self.session = session
        self.user_id = user_id
        self._list_scope = session.cancel_scope()
        self.reports = []
        self.reset()

    def reset(self):
        self.step = SyncStep.SELECT
        self.error = None
        self.selected = None
        self.search_text = ''
        self.result_count = 0
        self.source = 'all'
        self.my_reports_only = False
        self.private_only = False

    async def load_reports(self, source=None, my_reports_only=None, private_only=None):
        """Fetch the report list; changing the filters cancels a listing still in flight."""
        if source is not None:
            self.source = source
        if my_reports_only is not None:
            self.my_reports_only = my_reports_only
        if private_only is not None:
            self.private_only = private_only

        token = self._list_scope.renew()
        self.error = None
        try:
            self.reports = await fetch_reports(
                self.session.client,
                source=self.source,
                my_reports_only=self.my_reports_only,
                private_only=self.private_only,
                user_id=self.user_id,
                cancel_token=token,
            )
        except AbortError:
            raise
        except SyncError as e:
            self.error = e.message
            raise
        return self.reports

    def search(self, text):
        self.search_text = text
        self.selected = None
        return search_reports(self.reports, text)

    def select(self, report_id):
        for report in self.reports:
            if report.get('id') == report_id:
                self.selected = report
                self.search_text = report.get('name') or ''
                return report
        raise ValidationError('UNKNOWN_REPORT', f"No report with id {report_id}")

    async def submit(self, target='new', cancel_token=None):
        if self.selected is None:
            raise ValidationError('NO_REPORT_SELECTED', "Select a report first")
        if target not in WRITE_TARGETS:
            raise ValidationError('INVALID_TARGET', f"Unknown write target: {target!r}")

        self.step = SyncStep.LOADING
        self.error = None
        try:
            results = await self.session.client.run_report(self.selected['id'], cancel_token=cancel_token)
            headers, rows = parse_report(results)
        except SyncError as e:
            self.error = e.message
            self.step = SyncStep.SELECT
            raise

        try:
            self.session.sheet_store.write_rows(headers, rows, target=target, sheet_prefix='Report')
        except SyncError as e:
            self.error = f"Failed to insert report: {e.message}"
            self.step = SyncStep.SELECT
            raise

        self.result_count = len(rows)
        self.step = SyncStep.SUCCESS
        logger.info(f"Inserted {len(rows)} rows from report {self.selected.get('name')}")
        return len(rows)
