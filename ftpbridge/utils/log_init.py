"""
Log directory initialization utilities
"""

import os
import logging

logger = logging.getLogger(__name__)

LOG_SUBDIRS = ['activity']


def ensure_all_log_directories(log_base: str) -> bool:
    """Ensure all log directories exist with proper structure"""
    try:
        os.makedirs(log_base, exist_ok=True)
        for subdir in LOG_SUBDIRS:
            os.makedirs(os.path.join(log_base, subdir), exist_ok=True)

        logger.info(f"Log directories initialized at {log_base}")
        return True

    except OSError as e:
        logger.error(f"Failed to initialize log directories: {e}")
        return False


def get_log_directory_info(log_base: str) -> dict:
    """Get information about log directory structure"""
    info = {
        "log_base": log_base,
        "directories": {},
        "exists": os.path.exists(log_base)
    }

    if info["exists"]:
        for subdir in LOG_SUBDIRS:
            full_path = os.path.join(log_base, subdir)
            info["directories"][subdir] = {
                "path": full_path,
                "exists": os.path.exists(full_path),
                "writable": os.access(full_path, os.W_OK) if os.path.exists(full_path) else False
            }

    return info
