"""
Logging setup and configuration for Phonebook Sync.

This module provides the process-wide logging configuration (file rotation,
retention, console output, secret scrubbing) and the scoped per-run log file
written for every sync pass.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Callable, List, Optional

from phonebook_sync.normalize import format_timestamp

LOGGER_NAMESPACE = 'phonebook_sync'
APP_LOG_NAME = 'app.log'
SYNC_LOG_PREFIX = 'sync-'
SYNC_LOG_SUFFIX = '.log'

DETAILED_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'bind_pw', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'jwt_secret'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            self.patterns.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
            self.patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
            self.patterns.append((re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if isinstance(record.msg, str) and not record.args:
            msg = record.msg
            for pattern, replacement in self.patterns:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


class LoggingManager:
    """
    Manages the process-wide logging configuration.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'INFO')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                # Fallback to current directory if log directory creation fails
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, APP_LOG_NAME)

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def reset(self) -> None:
        """Detach and close the handlers installed by setup_logging."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class SyncRunLog:
    """
    Scoped log file for a single sync pass.

    On entry a ``sync-<timestamp>.log`` file is created and a handler is
    attached to the package logger; on exit, whatever the outcome, the
    handler is flushed, detached and closed, and old run logs are pruned.

    Example:
        with SyncRunLog('data/sync-logs') as run_log:
            DeltaSync(store, client, base_dn, log=run_log.logger).run()
    """

    def __init__(self, sync_logs_dir: str, level: str = 'INFO', retention: int = 30,
                 namespace: str = LOGGER_NAMESPACE,
                 clock: Optional[Callable[[], datetime]] = None):
        self.sync_logs_dir = sync_logs_dir
        self.level = getattr(logging, str(level).upper(), logging.INFO)
        self.retention = retention
        self.namespace = namespace
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.path = None
        self.handler = None
        self.logger = logging.getLogger(f"{namespace}.sync")
        self._namespace_logger = logging.getLogger(namespace)
        self._previous_level = None

    def __enter__(self) -> 'SyncRunLog':
        os.makedirs(self.sync_logs_dir, exist_ok=True)
        stamp = format_timestamp(self.clock()).replace(':', '-').replace('.', '-')
        self.path = os.path.join(self.sync_logs_dir, f"{SYNC_LOG_PREFIX}{stamp}{SYNC_LOG_SUFFIX}")

        self.handler = logging.FileHandler(self.path, encoding='utf-8')
        self.handler.setLevel(self.level)
        self.handler.setFormatter(logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        self.handler.addFilter(SensitiveDataFilter())

        # The package logger must pass run records down to the file handler
        self._previous_level = self._namespace_logger.level
        effective = self._namespace_logger.getEffectiveLevel()
        if effective > self.level:
            self._namespace_logger.setLevel(self.level)

        self._namespace_logger.addHandler(self.handler)
        self.logger.debug(f"Sync run log opened: {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        if self.handler is None:
            return
        try:
            self.handler.flush()
        finally:
            self._namespace_logger.removeHandler(self.handler)
            self.handler.close()
            self.handler = None
            self._namespace_logger.setLevel(self._previous_level)
        prune_sync_logs(self.sync_logs_dir, self.retention)


def list_sync_logs(sync_logs_dir: str) -> List[str]:
    """Return run log paths, newest first."""
    pattern = os.path.join(sync_logs_dir, f"{SYNC_LOG_PREFIX}*{SYNC_LOG_SUFFIX}")
    return sorted(glob.glob(pattern), reverse=True)


def prune_sync_logs(sync_logs_dir: str, retention: int) -> List[str]:
    """
    Remove run logs beyond the newest ``retention`` files.

    Run log names embed a UTC timestamp, so name order is age order.

    Returns:
        Paths that were removed
    """
    if retention is None or retention <= 0:
        return []

    removed = []
    for path in list_sync_logs(sync_logs_dir)[retention:]:
        try:
            os.remove(path)
            removed.append(path)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not remove old sync log {path}: {e}")
    return removed


def cleanup_app_logs(log_dir: str, retention_days: int, now: Optional[datetime] = None) -> List[str]:
    """Remove rotated application logs older than the retention period."""
    if not log_dir or retention_days <= 0:
        return []

    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    removed = []
    for log_file in glob.glob(os.path.join(log_dir, f"{APP_LOG_NAME}.*")):
        try:
            if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff:
                os.remove(log_file)
                removed.append(log_file)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")
    return removed
