from unittest.mock import AsyncMock, MagicMock

import pytest

from salesforce_client import SalesforceClient
from sync_models import QueryPage, RemoteObjectSchema


def make_schema(object_name, fields):
    """Build a RemoteObjectSchema from ``(name, type)`` pairs or raw describe dicts."""
    raw_fields = []
    for item in fields:
        if isinstance(item, dict):
            raw_fields.append(item)
        else:
            name, field_type = item
            raw_fields.append({'name': name, 'label': name.replace('_', ' '), 'type': field_type})
    return RemoteObjectSchema.from_describe(object_name, {'fields': raw_fields})


def make_page(records, total_size=None, next_url=None):
    return QueryPage(
        records=records,
        total_size=len(records) if total_size is None else total_size,
        done=next_url is None,
        continuation_token=next_url,
    )


@pytest.fixture
def mock_connection():
    """A stand-in for simple_salesforce.Salesforce."""
    return MagicMock()


@pytest.fixture
def client(mock_connection):
    """SalesforceClient with its network calls replaced by AsyncMocks."""
    sf_client = SalesforceClient(mock_connection, timeout=5, api_version='59.0')
    sf_client.list_objects = AsyncMock(return_value=[])
    sf_client.describe = AsyncMock()
    sf_client.query = AsyncMock()
    sf_client.query_more = AsyncMock()
    sf_client.composite = AsyncMock(return_value=[])
    sf_client.list_reports = AsyncMock(return_value=[])
    sf_client.run_report = AsyncMock()
    return sf_client
