"""
Progress notifications for Team Sync.

Operators watching a sync see one line per change as it happens. These lines
are written to stdout independently of the logging configuration, so they are
shown even when diagnostic logging is quiet.
"""

import sys
import logging
import threading
from typing import Dict, Optional, TextIO

from team_sync.membership import Operation, OperationKind

logger = logging.getLogger(__name__)

_OPERATION_ICONS = {
    OperationKind.ADD: '✅',
    OperationKind.UPDATE: '♻️',
    OperationKind.REMOVE: '❌',
}


class ProgressNotifier:
    """Writes human-readable progress lines to a stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream
        self._lock = threading.Lock()

    def _write(self, line: str):
        # Resolve stdout lazily so redirected/captured stdout is honoured
        stream = self.stream or sys.stdout
        with self._lock:
            stream.write(line + '\n')
            stream.flush()

    def dry_run_started(self):
        self._write("⚠️ Operating in dry-run mode, changes will not be applied")

    def family_started(self, name: str):
        self._write(f"🔄 Synchronizing {name}...")

    def operation(self, operation: Operation):
        """Report an add/update/remove attempt."""
        icon = _OPERATION_ICONS[operation.kind]
        if operation.kind == OperationKind.ADD:
            line = (f"{icon} adding {operation.identity} to {operation.org}/{operation.team} "
                    f"as {operation.role}")
        elif operation.kind == OperationKind.UPDATE:
            line = (f"{icon} updating {operation.identity} role in {operation.org}/{operation.team} "
                    f"from {operation.previous_role} to {operation.role}")
        else:
            line = f"{icon} removing {operation.identity} from {operation.org}/{operation.team}"
        self._write(line)

    def operation_failed(self, operation: Operation, error: Exception):
        self._write(f"⛔ failed to {operation.kind} {operation.identity} in "
                    f"{operation.org}/{operation.team}: {error}")

    def group_failed(self, org: str, team: str, error: Exception):
        self._write(f"⛔ failed to sync {org}/{team}: {error}")

    def summary(self, counts: Dict[str, int], error_count: int, dry_run: bool = False):
        prefix = "Planned" if dry_run else "Applied"
        self._write(
            f"{prefix} {counts.get('add', 0)} additions, {counts.get('update', 0)} updates, "
            f"{counts.get('remove', 0)} removals with {error_count} errors"
        )


class NullNotifier(ProgressNotifier):
    """Notifier that discards everything (library use and tests)."""

    def _write(self, line: str):
        logger.debug(line)
