"""Wall-clock source for the trust pipeline."""

from __future__ import annotations

import datetime as dt


class SystemClock:
    """Return timezone-aware UTC timestamps."""

    def now(self) -> dt.datetime:
        return dt.datetime.now(tz=dt.timezone.utc)


__all__ = ["SystemClock"]
