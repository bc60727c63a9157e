import asyncio
import gc
from unittest.mock import MagicMock

import pandas as pd
import pytest

from cancellation import CancelToken
from conftest import make_page, make_schema
from sheet_store import CsvWorkbookStore
from sync_errors import AbortError, RemoteError, SyncError, ValidationError
from sync_models import RowError, WriteMode
from sync_orchestrator import (
    ExportOrchestrator,
    ImportOrchestrator,
    ReportOrchestrator,
    SyncSession,
    SyncStep,
)

CONTACT = make_schema('Contact', [
    {'name': 'Id', 'label': 'Contact ID', 'type': 'id', 'createable': False, 'updateable': False},
    {'name': 'LastName', 'label': 'Last Name', 'type': 'string'},
    {'name': 'Email', 'label': 'Email', 'type': 'email'},
    {'name': 'DoNotCall', 'label': 'Do Not Call', 'type': 'boolean'},
])
ACCOUNT = make_schema('Account', [
    {'name': 'Id', 'label': 'Account ID', 'type': 'id'},
    {'name': 'Name', 'label': 'Account Name', 'type': 'string'},
    {'name': 'CreatedDate', 'label': 'Created Date', 'type': 'datetime'},
])


def write_sheet(directory, name, rows):
    pd.DataFrame(rows).to_csv(directory / f"{name}.csv", header=False, index=False)


def read_sheet(directory, name):
    return pd.read_csv(directory / f"{name}.csv", header=None, dtype=str, keep_default_na=False).values.tolist()


@pytest.fixture
def store(tmp_path):
    return CsvWorkbookStore(str(tmp_path), 'Sheet1')


@pytest.fixture
def session(client, store):
    schemas = {'Contact': CONTACT, 'Account': ACCOUNT}

    async def describe(object_name, cancel_token=None):
        if object_name not in schemas:
            raise RemoteError(f"sObject type '{object_name}' is not supported.", status=404)
        return schemas[object_name]

    client.describe.side_effect = describe
    return SyncSession(client, store, reporter=MagicMock())


def ok_composite(sub_requests, cancel_token=None):
    return [{'httpStatusCode': 201, 'referenceId': r['referenceId'], 'body': {}} for r in sub_requests]


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_export_happy_path(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last', 'Mail', 'DNC'], ['Smith', 'a@x.com', 'yes'], ['Jones', '', '0']])
    client.composite.side_effect = ok_composite
    flow = ExportOrchestrator(session)

    flow.load_sheet()
    assert flow.step is SyncStep.OBJECT
    assert [m.source_column for m in flow.mappings] == ['Last', 'Mail', 'DNC']

    await flow.select_object('Contact')
    assert flow.step is SyncStep.MAPPING
    assert [f.name for f in flow.target_fields] == ['LastName', 'Email', 'DoNotCall']

    flow.update_mapping('Last', 'LastName')
    flow.update_mapping('DNC', 'DoNotCall')
    result = await flow.submit()

    assert flow.step is SyncStep.SUCCESS
    assert result.success_count == 2
    bodies = [r['body'] for r in client.composite.await_args.args[0]]
    assert bodies == [{'LastName': 'Smith', 'DoNotCall': True}, {'LastName': 'Jones', 'DoNotCall': False}]


@pytest.mark.asyncio
async def test_export_empty_rows_stays_on_source(session, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['A', ''], ['', '']])
    flow = ExportOrchestrator(session)

    with pytest.raises(ValidationError) as exc:
        flow.load_sheet()

    assert exc.value.code == 'EMPTY_ROWS'
    assert flow.step is SyncStep.SOURCE


def test_export_unreadable_sheet_stays_on_source(session, tmp_path):
    (tmp_path / 'Sheet1.csv').write_text("Name,Phone\nAcme,1\nBeta,2,extra\n")
    flow = ExportOrchestrator(session)

    with pytest.raises(ValidationError) as exc:
        flow.load_sheet()

    assert exc.value.code == 'INVALID_SHEET'
    assert flow.step is SyncStep.SOURCE
    assert flow.error


@pytest.mark.asyncio
async def test_export_submit_without_mappings_keeps_step(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last'], ['Smith']])
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    await flow.select_object('Contact')

    with pytest.raises(ValidationError) as exc:
        await flow.submit()

    assert exc.value.code == 'NO_FIELD_MAPPINGS'
    assert flow.step is SyncStep.MAPPING
    client.composite.assert_not_awaited()


@pytest.mark.asyncio
async def test_export_describe_failure_stays_on_object(session, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last'], ['Smith']])
    flow = ExportOrchestrator(session)
    flow.load_sheet()

    with pytest.raises(RemoteError):
        await flow.select_object('Nope__c')

    assert flow.step is SyncStep.OBJECT
    assert "not supported" in flow.error


@pytest.mark.asyncio
async def test_export_update_mode(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Id', 'Last'], ['003A', 'Smith'], ['', 'Orphan']])
    client.composite.side_effect = ok_composite
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    await flow.select_object('Contact')
    flow.set_mode('update')
    flow.update_mapping('Id', 'Id')
    flow.update_mapping('Last', 'LastName')

    with pytest.raises(ValidationError):
        await flow.submit()

    flow.set_id_column('Id')
    result = await flow.submit()

    sub_requests = client.composite.await_args.args[0]
    assert len(sub_requests) == 1
    assert sub_requests[0]['method'] == 'PATCH'
    assert sub_requests[0]['body'] == {'LastName': 'Smith'}
    assert result.success_count == 1


@pytest.mark.asyncio
async def test_export_partial_failure_is_success(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last', 'Mail'], ['Smith', 'a@x.com'], ['', 'b@x.com']])

    def respond(sub_requests, cancel_token=None):
        return [
            {'httpStatusCode': 201, 'referenceId': 'ref0', 'body': {}},
            {'httpStatusCode': 400, 'referenceId': 'ref1',
             'body': [{'message': 'Required fields are missing: [LastName]', 'errorCode': 'REQUIRED_FIELD_MISSING'}]},
        ]

    client.composite.side_effect = respond
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    await flow.select_object('Contact')
    flow.update_mapping('Last', 'LastName')

    result = await flow.submit()

    assert flow.step is SyncStep.SUCCESS
    assert not result.success
    assert result.errors == [RowError(row=2, message='Required fields are missing: [LastName]')]
    session.reporter.error.assert_called_once()


@pytest.mark.asyncio
async def test_cancelled_export_keeps_written_rows(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last'], ['Smith'], ['Jones'], ['Brown']])
    token = CancelToken()

    def respond(sub_requests, cancel_token=None):
        token.cancel("Export was cancelled")
        return ok_composite(sub_requests)

    client.composite.side_effect = respond
    session.chunk_size = 2
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    await flow.select_object('Contact')
    flow.update_mapping('Last', 'LastName')

    result = await flow.submit(cancel_token=token)

    assert flow.step is SyncStep.SUCCESS
    assert result.success_count == 2
    assert result.error_count == 1
    assert result.errors == [RowError(row=2, message="Export was cancelled")]


def test_session_releases_scopes_of_discarded_flows(session):
    flows = [ImportOrchestrator(session) for _ in range(3)]
    assert len(session._scopes) == 3

    del flows
    gc.collect()

    assert len(session._scopes) == 0


@pytest.mark.asyncio
async def test_superseded_object_selection_is_discarded(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last'], ['Smith']])
    gate = asyncio.Event()

    async def describe(object_name, cancel_token=None):
        if object_name == 'Account':
            await gate.wait()
        return {'Account': ACCOUNT, 'Contact': CONTACT}[object_name]

    client.describe.side_effect = describe
    flow = ExportOrchestrator(session)
    flow.load_sheet()

    stale = asyncio.ensure_future(flow.select_object('Account'))
    await asyncio.sleep(0)
    await flow.select_object('Contact')
    gate.set()

    with pytest.raises(AbortError):
        await stale
    assert flow.object_name == 'Contact'
    assert session.registry.get('Account') is None


@pytest.mark.asyncio
async def test_export_reset(session, client, tmp_path):
    write_sheet(tmp_path, 'Sheet1', [['Last'], ['Smith']])
    flow = ExportOrchestrator(session)
    flow.load_sheet()
    await flow.select_object('Contact')
    flow.set_mode(WriteMode.UPDATE)

    flow.reset()

    assert flow.step is SyncStep.SOURCE
    assert flow.snapshot is None
    assert flow.mappings == []
    assert flow.mode is WriteMode.CREATE


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_import_too_many_objects(session):
    flow = ImportOrchestrator(session)

    with pytest.raises(ValidationError) as exc:
        await flow.select_objects(['A', 'B', 'C', 'D', 'E', 'F'])

    assert exc.value.code == 'TOO_MANY_OBJECTS'
    assert flow.validation_error
    assert flow.step is SyncStep.OBJECT


@pytest.mark.asyncio
async def test_import_describe_errors_are_joined(session):
    flow = ImportOrchestrator(session)

    with pytest.raises(SyncError) as exc:
        await flow.select_objects(['Account', 'Bad__c'])

    assert exc.value.message == "Bad__c: sObject type 'Bad__c' is not supported."
    assert flow.step is SyncStep.OBJECT


@pytest.mark.asyncio
async def test_import_fields_require_selection(session):
    flow = ImportOrchestrator(session)
    await flow.select_objects(['Account'])
    assert flow.step is SyncStep.FIELDS

    with pytest.raises(ValidationError):
        flow.go_to_filters()
    with pytest.raises(ValidationError):
        await flow.submit()
    assert flow.step is SyncStep.FIELDS


@pytest.mark.asyncio
async def test_import_writes_each_object(session, client, store, tmp_path):
    queries = []

    async def query(soql, cancel_token=None):
        queries.append(soql)
        if 'FROM Account' in soql:
            return make_page([{'attributes': {}, 'Id': '001A', 'Name': 'Acme'}], total_size=2, next_url='/q/2')
        return make_page([{'attributes': {}, 'LastName': 'Smith', 'Email': None}])

    client.query.side_effect = query
    client.query_more.return_value = make_page([{'attributes': {}, 'Id': '001B', 'Name': 'Beta'}], total_size=2)

    flow = ImportOrchestrator(session)
    await flow.select_objects(['Account', 'Contact'])
    flow.select_fields(['Account::Id', 'Account::Name', 'Contact::LastName', 'Contact::Email'])
    flow.go_to_filters()
    flow.add_filter('Account::CreatedDate', 'GreaterThan', '2024-01-01')
    flow.set_max_rows(100)

    total = await flow.submit(target='active')

    assert total == 3
    assert flow.step is SyncStep.SUCCESS
    assert queries[0] == "SELECT Id, Name FROM Account WHERE CreatedDate > 2024-01-01T00:00:00Z LIMIT 100"
    assert queries[1] == "SELECT LastName, Email FROM Contact LIMIT 100"
    assert read_sheet(tmp_path, 'Sheet1') == [['Account ID', 'Account Name'], ['001A', 'Acme'], ['001B', 'Beta']]
    assert read_sheet(tmp_path, 'Contact 2') == [['Last Name', 'Email'], ['Smith', '']]


@pytest.mark.asyncio
async def test_import_query_error_rewinds_to_fields(session, client):
    client.query.side_effect = RemoteError("No such column 'Foo' on entity 'Account'", status=400)
    flow = ImportOrchestrator(session)
    await flow.select_objects(['Account'])
    flow.select_fields(['Account::Name'])
    flow.add_filter('Account::Name', 'Equals', 'Acme')

    with pytest.raises(SyncError) as exc:
        await flow.submit()

    assert exc.value.message == "Account: No such column 'Foo' on entity 'Account'"
    assert flow.step is SyncStep.FIELDS
    assert flow.selected_fields == []
    assert flow.filters == []


@pytest.mark.asyncio
async def test_update_and_remove_filters(session):
    flow = ImportOrchestrator(session)
    condition = flow.add_filter('Account::Name', 'Equals', 'Acme')

    updated = flow.update_filter(condition.id, operator='Contains', connector='Or')
    assert updated.id == condition.id
    assert updated.operator.value == 'Contains'
    assert updated.connector.value == 'Or'

    flow.remove_filter(condition.id)
    assert flow.filters == []


@pytest.mark.asyncio
async def test_execute_soql(session, client, tmp_path):
    client.query.return_value = make_page([
        {'attributes': {}, 'Id': '003A', 'Account': {'attributes': {}, 'Name': 'Acme'}},
    ])
    flow = ImportOrchestrator(session)

    count = await flow.execute_soql("SELECT Id, Account.Name FROM Contact")

    assert count == 1
    assert flow.step is SyncStep.SUCCESS
    assert read_sheet(tmp_path, 'Sheet1') == [['Id', 'Account.Name'], ['003A', 'Acme']]


@pytest.mark.asyncio
async def test_execute_soql_failure(session, client):
    client.query.side_effect = RemoteError("unexpected token: FORM", status=400)
    flow = ImportOrchestrator(session)

    with pytest.raises(RemoteError):
        await flow.execute_soql("SELECT Id FORM Contact FROM Contact")

    assert flow.step is SyncStep.FIELDS
    assert flow.error == "unexpected token: FORM"


@pytest.mark.asyncio
async def test_credentials_change_cancels_describes(session, client):
    started = asyncio.Event()

    async def describe(object_name, cancel_token=None):
        started.set()
        await cancel_token.wait()
        return ACCOUNT

    client.describe.side_effect = describe
    flow = ImportOrchestrator(session)

    task = asyncio.ensure_future(flow.select_objects(['Account']))
    await started.wait()
    session.set_connection(MagicMock())

    with pytest.raises(AbortError):
        await task
    assert session.registry.get('Account') is None


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_report_flow(session, client, tmp_path):
    client.list_reports.return_value = [{'id': '00O1', 'name': 'Pipeline', 'ownerId': '005A', 'isPrivate': False}]
    client.run_report.return_value = {
        'reportMetadata': {'detailColumns': ['NAME']},
        'reportExtendedMetadata': {'detailColumnInfo': {'NAME': {'label': 'Name'}}},
        'factMap': {'T!T': {'rows': [{'dataCells': [{'label': 'Acme', 'value': 'Acme'}]}]}},
    }
    flow = ReportOrchestrator(session, user_id='005A')

    await flow.load_reports(my_reports_only=True)
    with pytest.raises(ValidationError):
        await flow.submit()
    flow.select('00O1')
    count = await flow.submit(target='new')

    assert count == 1
    assert flow.step is SyncStep.SUCCESS
    assert read_sheet(tmp_path, 'Report 1') == [['Name'], ['Acme']]


@pytest.mark.asyncio
async def test_report_run_failure_returns_to_select(session, client):
    client.list_reports.return_value = [{'id': '00O1', 'name': 'Pipeline'}]
    client.run_report.side_effect = RemoteError("You don't have sufficient privileges", status=403)
    flow = ReportOrchestrator(session)
    await flow.load_reports()
    flow.select('00O1')

    with pytest.raises(RemoteError):
        await flow.submit()

    assert flow.step is SyncStep.SELECT
    assert flow.error == "You don't have sufficient privileges"
