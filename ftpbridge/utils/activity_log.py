"""
Activity logging for transfers.

Entries go to daily JSON files under <log_base>/activity, each file capped
at a maximum number of entries (oldest dropped first).
"""

import os
import json
import logging
import threading
from datetime import datetime
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = ('upload', 'download', 'error', 'info', 'success')


class ActivityLog:
    """User-facing record of completed and failed transfers."""

    def __init__(self, log_base: str, max_entries: int = 1000):
        self.log_base = log_base
        self.log_dir = os.path.join(log_base, 'activity')
        self.max_entries = max_entries
        self._lock = threading.Lock()

    def _ensure_log_dir(self) -> bool:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            return True
        except OSError as e:
            logger.error(f"Failed to create activity log directory {self.log_dir}: {e}")
            return False

    def _log_path(self, date: Optional[datetime] = None) -> str:
        date_str = (date or datetime.now()).strftime('%Y%m%d')
        return os.path.join(self.log_dir, f"activity_log_{date_str}.json")

    def _read(self, log_filepath: str) -> List[Dict[str, Any]]:
        if not os.path.exists(log_filepath):
            return []
        try:
            with open(log_filepath, 'r') as f:
                entries = json.load(f)
            return entries if isinstance(entries, list) else []
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load activity log {log_filepath}: {e}")
            return []

    def add(self, event_type: str, message: str, details: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        """
        Append an entry to today's activity log.

        Args:
            event_type: One of upload, download, error, info, success
            message: Human-readable message
            details: Additional entry details (file, size, duration, speed, path)

        Returns:
            The stored entry, or None if it could not be written
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown activity event type: {event_type}")
        if not self._ensure_log_dir():
            return None

        timestamp = datetime.now()
        log_entry = {
            "timestamp": timestamp.isoformat(),
            "event_type": event_type,
            "message": message,
            "details": details or {},
        }

        log_filepath = self._log_path(timestamp)
        with self._lock:
            log_entries = self._read(log_filepath)
            log_entries.append(log_entry)
            if len(log_entries) > self.max_entries:
                log_entries = log_entries[-self.max_entries:]
            try:
                with open(log_filepath, 'w') as f:
                    json.dump(log_entries, f, indent=2)
            except OSError as e:
                logger.error(f"Failed to write activity log: {e}")
                return None

        logger.debug(f"Activity logged to: {log_filepath}")
        return log_entry

    def get_entries(self, event_type: Optional[str] = None, date: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Entries of one day (default today), oldest first, optionally filtered by type."""
        with self._lock:
            entries = self._read(self._log_path(date))
        if event_type and event_type != 'all':
            entries = [e for e in entries if e.get('event_type') == event_type]
        return entries

    def clear(self, date: Optional[datetime] = None):
        log_filepath = self._log_path(date)
        with self._lock:
            if os.path.exists(log_filepath):
                os.remove(log_filepath)
                logger.info(f"Cleared activity log {log_filepath}")

    def export_text(self, date: Optional[datetime] = None) -> str:
        """Plain-text rendering, one line per entry."""
        lines = []
        for entry in self.get_entries(date=date):
            details = ', '.join(f"{key}: {value}" for key, value in (entry.get('details') or {}).items())
            line = f"[{entry['timestamp']}] {entry['event_type'].upper()}: {entry['message']}"
            lines.append(f"{line} ({details})" if details else line)
        return '\n'.join(lines)
