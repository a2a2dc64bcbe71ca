"""Daily markdown log of compaction summaries.

One file per local day, <directory>/<YYYY-MM-DD>.md. Each compaction
appends a timestamped section; earlier sections are never rewritten.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"


class DailyLog:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def path_for(self, day: date) -> Path:
        return self.directory / f"{day.strftime('%Y-%m-%d')}.md"

    async def append(self, summary: str, now: datetime | None = None) -> Path:
        """Append a summary section to today's log and return its path."""
        now = now or datetime.now()
        return await asyncio.to_thread(self._append_sync, summary, now)

    def _append_sync(self, summary: str, now: datetime) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(now.date())

        section = (
            f"## Auto-Compaction Summary ({now.strftime('%Y-%m-%d %H:%M:%S')})"
            f"\n\n{summary}\n"
        )
        with path.open("a", encoding="utf-8") as f:
            # No separator ahead of the first section
            if f.tell() > 0:
                f.write(SECTION_SEPARATOR)
            f.write(section)

        logger.info("Saved compaction summary to %s", path)
        return path
