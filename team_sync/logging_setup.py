"""
Logging setup and configuration for Team Sync.

Diagnostic logs go to stderr and, optionally, to a daily rotated file. Tokens
and authorization headers are scrubbed from every record. Progress lines meant
for operators are not logged here, see ``team_sync.notifications``.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub tokens and credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'token', 'secret', 'password', 'authorization', 'api_key',
        'access_token', 'github_token',
    ]

    _AUTH_HEADER = re.compile(r'(Authorization:\s*(?:Bearer|token|Basic)\s+)[^\s,}\]\'"]+', re.IGNORECASE)
    _BEARER = re.compile(r'(\bBearer\s+)[A-Za-z0-9_\-\.=]{20,}')
    _GITHUB_TOKEN = re.compile(r'\b(gh[pousr]_|github_pat_)[A-Za-z0-9_]+')

    def filter(self, record):
        """Scrub sensitive data from the formatted message of the record."""
        msg = record.getMessage()
        msg = self._AUTH_HEADER.sub(r'\1****', msg)
        msg = self._BEARER.sub(r'\1****', msg)
        msg = self._GITHUB_TOKEN.sub(r'\1****', msg)

        for keyword in self.SENSITIVE_KEYWORDS:
            msg = re.sub(rf'({keyword}\s*[=:]\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            msg = re.sub(rf'("{keyword}"\s*:\s*")[^"]*(")', r'\1****\2', msg, flags=re.IGNORECASE)
            msg = re.sub(rf"('{keyword}'\s*:\s*')[^']*(')", r'\1****\2', msg, flags=re.IGNORECASE)

        record.msg = msg
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for the Team Sync application.

    Provides console output, optional file logging with rotation and
    retention, and sensitive data scrubbing.
    """

    LOG_FILE_NAME = 'team-sync.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary (``level``, ``debug``,
                ``log_dir``, ``retention_days``)
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        logging_config = config if config else {}

        debug = bool(logging_config.get('debug', False))
        log_level = 'DEBUG' if debug else str(logging_config.get('level', 'INFO')).upper()
        console_level = 'DEBUG' if debug else str(logging_config.get('console_level', 'WARNING')).upper()
        self.log_dir = logging_config.get('log_dir')
        self.retention_days = logging_config.get('retention_days', 7)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        sensitive_filter = SensitiveDataFilter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
        # Timestamps and levels only add noise in CI output
        console_handler.setFormatter(logging.Formatter('%(name)s: %(message)s'))
        console_handler.addFilter(sensitive_filter)
        root_logger.addHandler(console_handler)

        if self.log_dir:
            if self._ensure_log_directory():
                file_handler = self._create_file_handler()
                file_handler.setLevel(getattr(logging, log_level, logging.INFO))
                file_handler.setFormatter(logging.Formatter(
                    '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                    datefmt='%Y-%m-%d %H:%M:%S'
                ))
                file_handler.addFilter(sensitive_filter)
                root_logger.addHandler(file_handler)
                self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, console={console_level}, dir={self.log_dir}")

    def _ensure_log_directory(self) -> bool:
        """Ensure the log directory exists. Returns False if it cannot be created."""
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            logging.getLogger(__name__).warning(
                f"Could not create log directory {self.log_dir}, file logging disabled: {e}")
            return False
        return True

    def _create_file_handler(self) -> logging.Handler:
        handler = logging.handlers.TimedRotatingFileHandler(
            filename=os.path.join(self.log_dir, self.LOG_FILE_NAME),
            when='midnight',
            interval=1,
            backupCount=self.retention_days,
            encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, self.LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], force: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)
