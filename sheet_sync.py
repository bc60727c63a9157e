"""Command line entry point: move data between a CSV workbook and Salesforce."""

import argparse
import asyncio
import logging
import sys

from record_builder import auto_map
from reporter import setup_logging, summarize_result
from salesforce_client import SalesforceClient, connect
from sheet_store import WRITE_TARGETS, CsvWorkbookStore
from sync_config import load_settings
from sync_errors import SyncError, ValidationError
from sync_models import Connector, FilterCondition, prefixed, split_prefixed
from sync_orchestrator import (
    ExportOrchestrator,
    ImportOrchestrator,
    ReportOrchestrator,
    SyncSession,
)

logger = logging.getLogger(__name__)


def parse_filter(values, connector=Connector.AND):
    """``[field, operator]`` or ``[field, operator, value]`` from the command line -> FilterCondition."""
    if len(values) not in (2, 3):
        raise ValidationError('INVALID_FILTER', f"Expected FIELD OPERATOR [VALUE], got {' '.join(values)}")
    field_name, operator = values[0], values[1]
    value = values[2] if len(values) == 3 else None
    try:
        return FilterCondition(field=field_name, operator=operator, value=value, connector=connector)
    except ValueError as e:
        raise ValidationError('INVALID_FILTER', str(e))


def parse_mapping(text):
    """``Column=Field`` -> ``(column, field)``."""
    column, sep, target = text.partition('=')
    if not sep or not column.strip() or not target.strip():
        raise ValidationError('INVALID_MAPPING', f"Expected COLUMN=FIELD, got {text!r}")
    return column.strip(), target.strip()


def qualify_fields(object_names, field_names):
    """Bare field names are only allowed when exactly one object is imported."""
    qualified = []
    for name in field_names:
        if split_prefixed(name)[0]:
            qualified.append(name)
        elif len(object_names) == 1:
            qualified.append(prefixed(object_names[0], name))
        else:
            raise ValidationError('AMBIGUOUS_FIELD', f"Prefix {name!r} with its object, e.g. Account::{name}")
    return qualified


class AppendFilter(argparse.Action):
    """Collect ``--filter`` and ``--or-filter`` into one list of ``(connector, values)``.

    A connector joins a condition to the one before it, so command-line order matters.
    """

    def __call__(self, parser, namespace, values, option_string=None):
        filters = list(getattr(namespace, self.dest, None) or [])
        filters.append((self.const, values))
        setattr(namespace, self.dest, filters)


def collect_filters(args, object_names):
    conditions = [parse_filter(values, connector) for connector, values in args.filters or []]
    for condition in conditions:
        if not condition.object_name and len(object_names) == 1:
            condition.field = prefixed(object_names[0], condition.field)
    return conditions


async def cmd_objects(session, args):
    for obj in await session.client.list_objects():
        print(f"{obj.name:40} {obj.label}")


async def cmd_describe(session, args):
    schema = await session.registry.describe(args.object)
    for remote_field in schema.fields:
        flags = []
        if remote_field.createable:
            flags.append('create')
        if remote_field.updateable:
            flags.append('update')
        print(f"{remote_field.name:40} {remote_field.type:15} {remote_field.label} [{', '.join(flags)}]")


async def cmd_import(session, args):
    flow = ImportOrchestrator(session)
    await flow.select_objects(args.objects)

    if args.fields:
        flow.select_fields(qualify_fields(flow.selected_objects, args.fields))
    else:
        flow.select_all_fields()
    flow.go_to_filters()

    for condition in collect_filters(args, flow.selected_objects):
        flow.filters.append(condition)
    flow.set_max_rows(args.max_rows)

    for object_name, soql in flow.build_queries().items():
        logger.info(f"{object_name}: {soql}")

    total = await flow.submit(target=args.target)
    print(f"Imported {total} records into {session.sheet_store.active_sheet}")


async def cmd_soql(session, args):
    flow = ImportOrchestrator(session)
    total = await flow.execute_soql(args.query, target=args.target)
    print(f"Imported {total} records into {session.sheet_store.active_sheet}")


async def cmd_export(session, args):
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    flow.set_mode(args.mode)
    await flow.select_object(args.object)

    if args.map:
        for text in args.map:
            column, target = parse_mapping(text)
            flow.update_mapping(column, target)
    else:
        flow.mappings = auto_map(flow.mappings, flow.target_fields)
        mapped = [f"{m.source_column}->{m.target_field}" for m in flow.mappings if m.is_mapped]
        logger.info(f"Automatic mappings: {', '.join(mapped) or 'none'}")

    if args.id_column:
        flow.set_id_column(args.id_column)

    result = await flow.submit()
    action = 'created' if args.mode == 'create' else 'updated'
    print(summarize_result(result, action))
    for error in result.errors:
        print(f"  Row {error.row}: {error.message}")


async def cmd_reports(session, args):
    flow = ReportOrchestrator(session, user_id=args.user_id)
    await flow.load_reports(
        source='recent' if args.recent else 'all',
        my_reports_only=args.mine,
        private_only=args.private,
    )
    reports = flow.search(args.search) if args.search else flow.reports
    for report in reports:
        print(f"{report.get('id'):20} {report.get('name')}")


async def cmd_report(session, args):
    flow = ReportOrchestrator(session)
    flow.reports = [{'id': args.report_id, 'name': args.report_id}]
    flow.select(args.report_id)
    count = await flow.submit(target=args.target)
    print(f"Inserted {count} report rows into {session.sheet_store.active_sheet}")


COMMANDS = {
    'objects': cmd_objects,
    'describe': cmd_describe,
    'import': cmd_import,
    'soql': cmd_soql,
    'export': cmd_export,
    'reports': cmd_reports,
    'report': cmd_report,
}


def build_parser():
    parser = argparse.ArgumentParser(description='Sync data between a CSV workbook and Salesforce.')
    parser.add_argument('--workbook', default='workbook', help='Directory holding one CSV file per sheet.')
    parser.add_argument('--sheet', default='Sheet1', help='Active sheet name (CSV file name without extension).')
    parser.add_argument('--selection', help='A1 range to read from or write at, e.g. A1:D20.')
    parser.add_argument('--env-file', help='Path to a .env file with Salesforce credentials.')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('objects', help='List queryable objects.')

    describe = sub.add_parser('describe', help='List the fields of an object.')
    describe.add_argument('object')

    import_cmd = sub.add_parser('import', help='Query objects into the workbook.')
    import_cmd.add_argument('objects', nargs='+', help='Up to 5 object names.')
    import_cmd.add_argument('--fields', nargs='+', help='Fields as Object::Field (bare names for a single object).')
    import_cmd.add_argument('--filter', nargs='+', action=AppendFilter, dest='filters',
                            const=Connector.AND, metavar='ARG',
                            help='FIELD OPERATOR [VALUE], joined to the previous filter with AND.')
    import_cmd.add_argument('--or-filter', nargs='+', action=AppendFilter, dest='filters',
                            const=Connector.OR, metavar='ARG',
                            help='FIELD OPERATOR [VALUE], joined to the previous filter with OR.')
    import_cmd.add_argument('--max-rows', help='Row limit (1-50000, default 10000).')
    import_cmd.add_argument('--target', choices=WRITE_TARGETS, default='active')

    soql = sub.add_parser('soql', help='Run a SOQL query into the workbook.')
    soql.add_argument('query')
    soql.add_argument('--target', choices=WRITE_TARGETS, default='active')

    export = sub.add_parser('export', help='Create or update records from the selected rows.')
    export.add_argument('object')
    export.add_argument('--mode', choices=['create', 'update'], default='create')
    export.add_argument('--map', action='append', help='COLUMN=FIELD; columns are matched automatically if omitted.')
    export.add_argument('--id-column', help='Column holding record ids (update mode).')

    reports = sub.add_parser('reports', help='List reports.')
    reports.add_argument('--recent', action='store_true', help='Only recently viewed reports.')
    reports.add_argument('--mine', action='store_true', help='Only reports owned by --user-id.')
    reports.add_argument('--user-id')
    reports.add_argument('--private', action='store_true', help='Only reports in private folders.')
    reports.add_argument('--search')

    report = sub.add_parser('report', help='Run a report into the workbook.')
    report.add_argument('report_id')
    report.add_argument('--target', choices=WRITE_TARGETS, default='new')

    return parser


def main(argv=None):
    """Main function to handle a sync command."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except SyncError as e:
        print(f"Configuration error: {e.message}")
        return 1

    setup_logging(settings.log_dir)

    try:
        connection = connect(settings)
        logger.info("Successfully connected to Salesforce.")
        client = SalesforceClient(connection, timeout=settings.timeout, api_version=settings.api_version)
        store = CsvWorkbookStore(args.workbook, active_sheet=args.sheet, selection=args.selection)
        session = SyncSession(client, store, chunk_size=settings.chunk_size)
        asyncio.run(COMMANDS[args.command](session, args))
    except SyncError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(f"Error: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
