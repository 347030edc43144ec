"""Change detection between two observations of a remote directory tree."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pcloud_sync.fs.models import DeltaResult, FileStat

logger = logging.getLogger(__name__)

CONTEXT_TIMESTAMP = "timestamp"
CONTEXT_STATS = "stats"

DirStatsLister = Callable[[str], list[FileStat]]


def basic_delta(
    path: str,
    get_dir_stats: DirStatsLister,
    context: dict[str, Any] | None = None,
) -> DeltaResult:
    """Compute the changes under ``path`` since the observation stored in ``context``.

    The previous observation is a mapping of item path to its last known
    ``updated_time``. An item is reported as changed when it is new or its
    timestamp differs; a path present in the previous observation but
    missing now is reported as a deleted FileStat. With no context, every
    current item is reported.

    Args:
        path: Remote directory to observe.
        get_dir_stats: Callable returning the current stats under ``path``.
        context: Context returned by the previous call, or None on first run.

    Returns:
        DeltaResult with the changed items and the context for the next call.
    """
    previous: dict[str, int | None] = dict((context or {}).get(CONTEXT_STATS, {}))
    stats = get_dir_stats(path)

    current: dict[str, int | None] = {}
    changed: list[FileStat] = []
    for stat in stats:
        if stat.is_deleted:
            if stat.path in previous:
                changed.append(stat)
            continue
        current[stat.path] = stat.updated_time
        if stat.path not in previous or previous[stat.path] != stat.updated_time:
            changed.append(stat)

    deleted = [
        FileStat(path=p, is_dir=False, is_deleted=True)
        for p in sorted(previous)
        if p not in current and all(s.path != p for s in changed)
    ]

    logger.info(
        "[basic_delta] computed delta; path:%s;changed:%d;deleted:%d",
        path,
        len(changed),
        len(deleted),
    )
    return DeltaResult(
        items=changed + deleted,
        has_more=False,
        context={CONTEXT_TIMESTAMP: int(time.time() * 1000), CONTEXT_STATS: current},
    )
