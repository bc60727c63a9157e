import os
import logging
from datetime import datetime

from sync_config import DEFAULT_LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_dir=DEFAULT_LOG_DIR, prefix='sync_log', level=logging.INFO):
    """Set up logging to a timestamped file and the console."""
    os.makedirs(log_dir, exist_ok=True)

    # Generate timestamp for log filename (YYYYMMDD_HHMM format)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M")
    log_filename = os.path.join(log_dir, f'{prefix}_{timestamp}.log')

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_filename),
            logging.StreamHandler()
        ],
        force=True,
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Sync session started - Log file: {log_filename}")
    return logger


class Reporter:
    """Receives batch and row failures for diagnostics. The default drops them."""

    def error(self, message, **context):
        pass

    def warning(self, message, **context):
        pass


class LoggingReporter(Reporter):
    """Forwards failures to a logger, context appended as key=value pairs."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('sync.reporter')

    @staticmethod
    def _format(message, context):
        if not context:
            return message
        details = ', '.join(f"{key}={value}" for key, value in context.items())
        return f"{message} ({details})"

    def error(self, message, **context):
        self.logger.error(self._format(message, context))

    def warning(self, message, **context):
        self.logger.warning(self._format(message, context))


def summarize_result(result, action='exported'):
    """One-line outcome that separates all failed / some failed / all succeeded."""
    if result.total == 0:
        return f"No records were {action}."
    if result.error_count == 0:
        return f"All {result.success_count} records {action} successfully."
    if result.success_count == 0:
        return f"All {result.error_count} records failed."
    return (
        f"{result.success_count} of {result.total} records {action}; "
        f"{result.error_count} failed."
    )
