"""Async wrapper around simple_salesforce used by the sync engine.

simple_salesforce is blocking, so every call runs on a worker thread and is raced
against the caller's cancel token and a deadline. Failures come back as the
exceptions in sync_errors instead of simple_salesforce/requests types.
"""

import asyncio
import functools
import logging
from urllib.parse import quote

import requests
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import (
    SalesforceAuthenticationFailed,
    SalesforceError,
    SalesforceExpiredSession,
)

from sync_config import API_VERSION, DEFAULT_TIMEOUT
from sync_errors import (
    AbortError,
    AuthenticationError,
    ProtocolError,
    RemoteError,
    RequestTimeoutError,
)
from sync_models import QueryPage, RemoteObjectSchema, RemoteObjectSummary

logger = logging.getLogger(__name__)


def connect(settings):
    """Establishes and returns a Salesforce connection from Settings."""
    try:
        if settings.uses_session_token:
            logger.info(f"Connecting to Salesforce instance {settings.instance_url}")
            return Salesforce(
                instance_url=settings.instance_url,
                session_id=settings.access_token,
                version=settings.api_version,
            )

        logger.info(f"Connecting to Salesforce as {settings.username} ({settings.domain})")
        return Salesforce(
            username=settings.username,
            password=settings.password,
            consumer_key=settings.consumer_key,
            consumer_secret=settings.consumer_secret,
            domain=settings.domain,
            version=settings.api_version,
        )
    except SalesforceAuthenticationFailed as e:
        raise AuthenticationError(f"Salesforce login failed: {e.message}", code=str(e.code))


def error_from_salesforce(exc):
    """Map a simple_salesforce exception onto RemoteError/AuthenticationError."""
    content = getattr(exc, 'content', None)
    status = getattr(exc, 'status', None)
    message = None
    code = None

    # Salesforce error bodies are usually [{"message": ..., "errorCode": ...}]
    if isinstance(content, list) and content and isinstance(content[0], dict):
        message = content[0].get('message')
        code = content[0].get('errorCode')
    elif isinstance(content, dict):
        message = content.get('message')
        code = content.get('errorCode')

    if not message:
        message = f"Request failed with status {status}" if status else str(exc)

    error_cls = AuthenticationError if isinstance(exc, SalesforceExpiredSession) else RemoteError
    return error_cls(message, status=status, code=code)


def parse_query_page(payload):
    """Validate a /query or /query/<locator> response and wrap it as a QueryPage."""
    if not payload:
        raise ProtocolError("No data received")

    records = [dict(record) for record in (payload.get('records') or [])]
    done = bool(payload.get('done', True))
    token = payload.get('nextRecordsUrl')

    if not done and not token:
        raise ProtocolError("Query result is incomplete but has no nextRecordsUrl")

    return QueryPage(
        records=records,
        total_size=int(payload.get('totalSize', len(records))),
        done=done,
        continuation_token=None if done else token,
    )


class SalesforceClient:
    """The remote API surface the engine depends on."""

    def __init__(self, connection, timeout=DEFAULT_TIMEOUT, api_version=None):
        self._connection = connection
        self.timeout = timeout
        self.api_version = api_version or getattr(connection, 'sf_version', None) or API_VERSION

    @property
    def connection(self):
        return self._connection

    def set_connection(self, connection):
        """Swap credentials; calls already in flight keep the connection they started with."""
        self._connection = connection

    def sobject_url(self, object_name, record_id=None):
        url = f"/services/data/v{self.api_version}/sobjects/{object_name}"
        if record_id is not None:
            url += f"/{quote(str(record_id), safe='')}"
        return url

    async def _call(self, func, cancel_token=None, timeout=None):
        """Run a blocking zero-argument simple_salesforce call, honouring cancellation and the deadline."""
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        deadline = self.timeout if timeout is None else timeout
        call = asyncio.ensure_future(asyncio.to_thread(func))
        waiters = {call}
        cancel_wait = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=deadline, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if call not in done:
            # The worker thread cannot be interrupted; its result is dropped when it lands
            call.cancel()
            if cancel_token is not None and cancel_token.cancelled:
                raise AbortError(cancel_token.reason)
            raise RequestTimeoutError()

        if cancel_token is not None and cancel_token.cancelled:
            raise AbortError(cancel_token.reason)

        try:
            return call.result()
        except SalesforceError as e:
            raise error_from_salesforce(e)
        except requests.exceptions.Timeout:
            raise RequestTimeoutError()
        except requests.exceptions.RequestException as e:
            raise RemoteError(str(e) or "Network error occurred")
        except ValueError as e:
            raise ProtocolError(f"Unreadable response from Salesforce: {e}")

    async def _restful(self, path, cancel_token=None, timeout=None, **kwargs):
        deadline = self.timeout if timeout is None else timeout
        call = functools.partial(self._connection.restful, path, timeout=deadline, **kwargs)
        return await self._call(call, cancel_token=cancel_token, timeout=deadline)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    async def list_objects(self, cancel_token=None, timeout=None):
        """Queryable sObjects sorted by label."""
        payload = await self._restful('sobjects/', cancel_token=cancel_token, timeout=timeout)
        if not payload or 'sobjects' not in payload:
            raise ProtocolError("No data received")

        objects = [
            RemoteObjectSummary(
                name=obj['name'],
                label=obj.get('label') or obj['name'],
                label_plural=obj.get('labelPlural') or '',
                queryable=bool(obj.get('queryable')),
            )
            for obj in payload['sobjects']
        ]
        return sorted((o for o in objects if o.queryable), key=lambda o: o.label.lower())

    async def describe(self, object_name, cancel_token=None, timeout=None):
        payload = await self._restful(
            f'sobjects/{object_name}/describe', cancel_token=cancel_token, timeout=timeout
        )
        if not payload:
            raise ProtocolError(f"No describe data received for {object_name}")
        return RemoteObjectSchema.from_describe(object_name, payload)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def query(self, soql, cancel_token=None, timeout=None):
        deadline = self.timeout if timeout is None else timeout
        logger.info(f"Executing query: {soql}")
        call = functools.partial(self._connection.query, soql, timeout=deadline)
        payload = await self._call(call, cancel_token=cancel_token, timeout=deadline)
        return parse_query_page(payload)

    async def query_more(self, token, cancel_token=None, timeout=None):
        """Fetch the page behind a nextRecordsUrl (or a bare query locator)."""
        deadline = self.timeout if timeout is None else timeout
        call = functools.partial(
            self._connection.query_more,
            token,
            identifier_is_url=token.startswith('/'),
            timeout=deadline,
        )
        payload = await self._call(call, cancel_token=cancel_token, timeout=deadline)
        return parse_query_page(payload)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def composite(self, requests_list, cancel_token=None, timeout=None):
        """POST a composite request; returns the list of sub-responses."""
        body = {'allOrNone': False, 'compositeRequest': requests_list}
        payload = await self._restful(
            'composite', method='POST', json=body, cancel_token=cancel_token, timeout=timeout
        )
        if not payload or 'compositeResponse' not in payload:
            raise ProtocolError("Composite response is missing compositeResponse")
        return list(payload['compositeResponse'])

    async def create_record(self, object_name, data, cancel_token=None, timeout=None):
        payload = await self._restful(
            f'sobjects/{object_name}/', method='POST', json=data,
            cancel_token=cancel_token, timeout=timeout,
        )
        if not payload:
            raise ProtocolError(f"No create result received for {object_name}")
        return dict(payload)

    async def update_record(self, object_name, record_id, data, cancel_token=None, timeout=None):
        """PATCH one record; returns the HTTP status (204 on success)."""
        sobject = getattr(self._connection, object_name)
        call = functools.partial(sobject.update, record_id, data)
        return await self._call(call, cancel_token=cancel_token, timeout=timeout)

    async def upsert_record(self, object_name, external_id_field, external_id, data,
                            cancel_token=None, timeout=None):
        sobject = getattr(self._connection, object_name)
        call = functools.partial(sobject.upsert, f"{external_id_field}/{external_id}", data)
        return await self._call(call, cancel_token=cancel_token, timeout=timeout)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    async def list_reports(self, recent_only=False, cancel_token=None, timeout=None):
        params = {'recentlyViewed': 'true'} if recent_only else None
        payload = await self._restful(
            'analytics/reports', params=params, cancel_token=cancel_token, timeout=timeout
        )
        # restful() turns an empty JSON list into None
        return list(payload or [])

    async def run_report(self, report_id, cancel_token=None, timeout=None):
        payload = await self._restful(
            f'analytics/reports/{report_id}', cancel_token=cancel_token, timeout=timeout
        )
        if not payload:
            raise ProtocolError(f"No results received for report {report_id}")
        return payload
