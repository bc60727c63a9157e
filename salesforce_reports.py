"""Report listing and flattening of Analytics API report results into rows."""

import logging

from sync_errors import ProtocolError, ValidationError

logger = logging.getLogger(__name__)

REPORT_SOURCES = ('all', 'recent')


async def fetch_reports(client, source='all', my_reports_only=False, private_only=False,
                        user_id=None, cancel_token=None):
    """List reports, optionally narrowed to the user's own or to private ones, sorted by name."""
    if source not in REPORT_SOURCES:
        raise ValidationError('INVALID_SOURCE', f"Unknown report source: {source!r}")

    reports = await client.list_reports(recent_only=source == 'recent', cancel_token=cancel_token)

    if my_reports_only and user_id:
        reports = [r for r in reports if r.get('ownerId') == user_id]
    if private_only:
        reports = [r for r in reports if r.get('isPrivate') is True]

    logger.info(f"Found {len(reports)} reports (source={source})")
    return sorted(reports, key=lambda r: (r.get('name') or '').lower())


def search_reports(reports, text):
    if not text:
        return list(reports)
    needle = text.lower()
    return [r for r in reports if needle in (r.get('name') or '').lower()]


def _cell_value(cell):
    value = cell.get('value')
    if value is None:
        return cell.get('label') or ''
    # Lookups and currency amounts come back as objects; the label is what users see
    if isinstance(value, (dict, list)):
        return cell.get('label')
    return value


def parse_report(results):
    """Return ``(headers, rows)`` for a report run: detail columns as headers, one row per detail row."""
    try:
        detail_columns = results['reportMetadata']['detailColumns']
        column_info = results['reportExtendedMetadata']['detailColumnInfo']
    except (KeyError, TypeError):
        raise ProtocolError("Report results are missing column metadata")

    headers = [(column_info.get(col) or {}).get('label') or col for col in detail_columns]

    rows = []
    for section in (results.get('factMap') or {}).values():
        for row in section.get('rows') or []:
            rows.append([_cell_value(cell) for cell in row.get('dataCells', [])])

    return headers, rows
