"""Per-session cache of sObject describe results."""

import asyncio
import logging

from sync_errors import AbortError, SyncError

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """Field name -> type lookup per object, fetched on first need and kept for the session."""

    def __init__(self, client):
        self._client = client
        self._schemas = {}

    def get(self, object_name):
        return self._schemas.get(object_name)

    def field_types(self, object_name):
        schema = self._schemas.get(object_name)
        return schema.field_types() if schema else {}

    def field_type(self, object_name, field_name):
        return self.field_types(object_name).get(field_name, '')

    def invalidate(self, object_name=None):
        """Drop one cached describe, or all of them (e.g. after connecting to another org)."""
        if object_name is None:
            self._schemas.clear()
        else:
            self._schemas.pop(object_name, None)

    async def describe(self, object_name, cancel_token=None, refresh=False):
        if not refresh and object_name in self._schemas:
            return self._schemas[object_name]

        schema = await self._client.describe(object_name, cancel_token=cancel_token)
        # A superseded describe must not overwrite the cache
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self._schemas[object_name] = schema
        logger.info(f"Described {object_name}: {len(schema.fields)} fields")
        return schema

    async def describe_many(self, object_names, cancel_token=None):
        """Describe several objects concurrently.

        Returns ``(schemas, errors)``: schemas keyed by object name for the ones that
        succeeded and ``"Object: message"`` strings for the ones that failed. Raises
        AbortError if the token was cancelled while the calls were in flight.
        """
        async def describe_one(object_name):
            try:
                return object_name, await self.describe(object_name, cancel_token=cancel_token), None
            except AbortError:
                raise
            except SyncError as e:
                return object_name, None, e

        results = await asyncio.gather(
            *(describe_one(name) for name in object_names), return_exceptions=True
        )
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        schemas = {}
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            object_name, schema, error = result
            if error is not None:
                errors.append(f"{object_name}: {error.message}")
            else:
                schemas[object_name] = schema
        return schemas, errors
