"""Append-only request/response history, one JSON file per record."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)

SECRET_HEADERS = {"authorization", "x-api-key", "cookie"}


def history_timestamp(now: Optional[datetime] = None) -> str:
    """Millisecond timestamp used as the record key, e.g. 20240131-154501.123."""
    now = now or datetime.now()
    return now.strftime("%Y%m%d-%H%M%S.") + f"{now.microsecond // 1000:03d}"


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy headers for a history record with credential values masked."""
    return {
        k: (mask_secret(v) if k.lower() in SECRET_HEADERS else v)
        for k, v in headers.items()
    }


class HistoryStore:
    """Durable JSON records written via temp file + rename.

    A reader never sees a half-written record: the final name only appears
    once the complete file is on disk. Every write gets its own file, so
    recording the same payload twice yields two records.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def save(self, kind: str, record: Any, stamp: Optional[str] = None) -> Path:
        """Write one record and return its path. Raises OSError/TypeError on failure."""
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = stamp or history_timestamp()
        path = self.directory / f"{stamp}-{kind}-{uuid4().hex[:8]}.json"

        fd, temp_name = tempfile.mkstemp(prefix="temp-", suffix=".json", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise
        return path

    def save_quietly(self, kind: str, record: Any, stamp: Optional[str] = None) -> Optional[Path]:
        """Best-effort variant for the relay path: failures are logged, never raised."""
        try:
            return self.save(kind, record, stamp)
        except (OSError, TypeError, ValueError) as e:
            log.warning("Failed to save %s history record stamp=%s: %s", kind, stamp, e)
            return None
