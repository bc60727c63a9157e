"""Chunked create/update of records through the composite endpoint."""

import logging

from query_builder import is_valid_identifier
from reporter import LoggingReporter
from sync_config import DEFAULT_CHUNK_SIZE
from sync_errors import AbortError, SyncError, ValidationError
from sync_models import BatchResult, RowError, UpdateRecord, WriteMode

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 25


def chunked(items, size):
    """Yield ``(start_index, chunk)`` pairs."""
    for start in range(0, len(items), size):
        yield start, items[start:start + size]


def _sub_response_messages(body):
    """Pull error messages out of a failed sub-response body."""
    if isinstance(body, list):
        messages = [item.get('message') for item in body if isinstance(item, dict) and item.get('message')]
    elif isinstance(body, dict) and body.get('message'):
        messages = [body['message']]
    else:
        messages = []
    return ', '.join(messages) or 'Unknown error'


class BatchWriter:
    """Write records in fixed-size composite chunks and tally what happened.

    Chunks run one after another. A chunk that fails as a whole counts every one
    of its records as failed and processing moves on to the next chunk. A
    cancellation stops the run: records not yet sent count as failed and the
    result so far is returned.
    """

    def __init__(self, client, reporter=None, chunk_size=DEFAULT_CHUNK_SIZE):
        self.client = client
        self.reporter = reporter or LoggingReporter()
        self.chunk_size = chunk_size

    def _sub_request(self, object_name, record, index, mode):
        if mode is WriteMode.UPDATE:
            if not isinstance(record, UpdateRecord):
                record = UpdateRecord(id=record['id'], data=record['data'])
            return {
                'method': 'PATCH',
                'url': self.client.sobject_url(object_name, record.id),
                'referenceId': f'ref{index}',
                'body': record.data,
            }
        return {
            'method': 'POST',
            'url': self.client.sobject_url(object_name),
            'referenceId': f'ref{index}',
            'body': record,
        }

    def _record_failure(self, result, row, message, object_name, **context):
        result.errors.append(RowError(row=row, message=message))
        self.reporter.error(message, object=object_name, row=row, **context)

    def _abandon(self, result, total, start, reason, object_name):
        unsent = total - start
        result.error_count += unsent
        self._record_failure(result, start, reason, object_name, unsent=unsent)
        logger.warning(f"Stopped writing {object_name} at record {start}: {reason}")

    async def run(self, object_name, records, mode, chunk_size=None, cancel_token=None):
        if not is_valid_identifier(object_name):
            raise ValidationError('INVALID_OBJECT', f"Invalid object name: {object_name!r}")
        try:
            mode = WriteMode(mode)
        except ValueError:
            raise ValidationError('INVALID_MODE', f"Invalid write mode: {mode!r}")
        size = self.chunk_size if chunk_size is None else chunk_size
        if not isinstance(size, int) or isinstance(size, bool) or not 1 <= size <= MAX_CHUNK_SIZE:
            raise ValidationError(
                'INVALID_CHUNK_SIZE', f"Chunk size must be between 1 and {MAX_CHUNK_SIZE}, got {size!r}"
            )

        result = BatchResult()
        records = list(records)
        if not records:
            return result

        logger.info(f"Writing {len(records)} {object_name} records ({mode.value}) in chunks of {size}")

        for start, chunk in chunked(records, size):
            if cancel_token is not None and cancel_token.cancelled:
                self._abandon(result, len(records), start, cancel_token.reason, object_name)
                break

            sub_requests = [
                self._sub_request(object_name, record, start + offset, mode)
                for offset, record in enumerate(chunk)
            ]

            try:
                responses = await self.client.composite(sub_requests, cancel_token=cancel_token)
            except AbortError as e:
                self._abandon(result, len(records), start, e.message, object_name)
                break
            except SyncError as e:
                result.error_count += len(chunk)
                self._record_failure(result, start, e.message, object_name, chunk_size=len(chunk))
                logger.error(f"Chunk starting at record {start} failed: {e.message}")
                continue

            by_ref = {resp.get('referenceId'): resp for resp in responses if isinstance(resp, dict)}
            for offset in range(len(chunk)):
                index = start + offset
                response = by_ref.get(f'ref{index}')
                if response is None:
                    result.error_count += 1
                    self._record_failure(result, index + 1, "No response received for record", object_name)
                    continue

                status = response.get('httpStatusCode') or 0
                if 200 <= status < 300:
                    result.success_count += 1
                else:
                    result.error_count += 1
                    message = _sub_response_messages(response.get('body'))
                    self._record_failure(result, index + 1, message, object_name, status=status)

            logger.info(
                f"Chunk {start // size + 1}: {result.success_count} succeeded, "
                f"{result.error_count} failed so far"
            )

        result.success = result.error_count == 0
        logger.info(
            f"Finished writing {object_name}: {result.success_count} succeeded, {result.error_count} failed"
        )
        return result
