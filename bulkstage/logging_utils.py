# bulkstage/logging_utils.py
"""
Logging utilities for pipeline scripts.

Provides logging setup that creates timestamped log files like
script_name_YYYYMMDD_HHMMSS.log and counts ERROR messages, so a pipeline can
ask afterwards whether anything went wrong during the run.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional, Tuple

from .defaults import settings

logger = logging.getLogger(__name__)

# Module-level state for error tracking
_error_handler: Optional['ErrorCountHandler'] = None
_main_log_path: Optional[str] = None
_error_log_path: Optional[str] = None
_split_errors: bool = False


class ErrorCountHandler(logging.Handler):
    """Handler that counts ERROR and CRITICAL level messages and lazily creates an error log."""

    def __init__(self, error_log_path: Optional[str] = None, formatter: Optional[logging.Formatter] = None):
        super().__init__(level=logging.ERROR)
        self.error_count = 0
        self.error_log_path = error_log_path
        self.formatter = formatter
        self._error_file_handler = None

    def emit(self, record):
        """Count errors and lazily create error log file on first error."""
        if record.levelno < logging.ERROR:
            return
        self.error_count += 1

        if self.error_log_path and self._error_file_handler is None:
            try:
                self._error_file_handler = logging.FileHandler(self.error_log_path, encoding='utf-8')
                self._error_file_handler.setLevel(logging.ERROR)
                if self.formatter:
                    self._error_file_handler.setFormatter(self.formatter)
                logging.getLogger().addHandler(self._error_file_handler)
                # The triggering record was dispatched before the file handler existed
                self._error_file_handler.handle(record)
            except OSError as e:
                logger.warning(f"Failed to create error log file: {e}")

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def reset(self) -> None:
        self.error_count = 0


def get_error_handler() -> Optional[ErrorCountHandler]:
    """The ErrorCountHandler installed by setup_logging(), if any."""
    return _error_handler


def setup_logging(
    script_name: Optional[str] = None,
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    split_errors: Optional[bool] = None,
    console: Optional[bool] = None
) -> Tuple[str, Optional[str]]:
    """
    Configure logging for pipeline scripts.

    Creates log files with pattern: {script_name}_{datetime}.log
    Optionally creates separate error log: {script_name}_{datetime}_error.log

    Args:
        script_name: Base name for log files (defaults to script filename without extension)
        log_dir: Directory for log files (defaults to settings or './logs')
        level: Logging level string - DEBUG, INFO, WARNING, ERROR (defaults to settings or 'INFO')
        split_errors: Create separate error log file (defaults to settings or True)
        console: Also log to console/stdout (defaults to settings or True)

    Returns:
        Tuple of (log_file_path, error_log_path or None)

    Example
    -------
    ::
        import bulkstage

        bulkstage.setup_logging('nightly_load')
        bulkstage.setup_logging('nightly_load', log_dir='/var/log/etl', level='DEBUG')
    """
    if script_name is None:
        script_name = Path(sys.argv[0]).stem or 'bulkstage'

    logging_config = settings.get('logging', {})

    log_dir = log_dir or logging_config.get('directory', './logs')
    level = level or logging_config.get('level', 'INFO')
    split_errors = split_errors if split_errors is not None else logging_config.get('split_errors', True)
    console = console if console is not None else logging_config.get('console', True)

    log_format = logging_config.get('format', '%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    timestamp_format = logging_config.get('timestamp_format', '%Y-%m-%d %H:%M:%S')
    filename_format = logging_config.get('filename_format', '%Y%m%d_%H%M%S')

    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)

    if filename_format:
        timestamp = datetime.now().strftime(filename_format)
        log_file = log_dir_path / f"{script_name}_{timestamp}.log"
        error_file = log_dir_path / f"{script_name}_{timestamp}_error.log" if split_errors else None
    else:
        # No timestamp - single rolling log file
        log_file = log_dir_path / f"{script_name}.log"
        error_file = log_dir_path / f"{script_name}_error.log" if split_errors else None

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers to avoid duplicates
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format, datefmt=timestamp_format)

    global _error_handler
    _error_handler = ErrorCountHandler(
        error_log_path=str(error_file) if error_file else None,
        formatter=formatter
    )
    root_logger.addHandler(_error_handler)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level.upper()))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logging.info(f"Logging initialized: {log_file}")
    if error_file:
        logging.info(f"Error log will be created at: {error_file} (if errors occur)")

    global _main_log_path, _error_log_path, _split_errors
    _main_log_path = str(log_file)
    _error_log_path = str(error_file) if error_file else None
    _split_errors = split_errors

    return (str(log_file), str(error_file) if error_file else None)


def errors_logged() -> Optional[str]:
    """
    Check if any ERROR or CRITICAL messages were logged during this run.

    Returns
    -------
    str or None
        Path to error log (if split_errors=True) or main log (if split_errors=False)
        when errors were logged. None if no errors were logged or
        setup_logging() was not called.
    """
    if _error_handler is None:
        logger.warning("errors_logged() called but setup_logging() was not called")
        return None

    if _error_handler.error_count == 0:
        return None

    if _split_errors and _error_log_path:
        return _error_log_path
    return _main_log_path
