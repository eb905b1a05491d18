from __future__ import annotations

import logging

from coursegen.domain.contracts import TraceRecorder
from coursegen.domain.dto import TraceEntry

logger = logging.getLogger("coursegen.trace")


async def record_trace(trace: TraceRecorder, entry: TraceEntry) -> None:
    """Appends to the trace log; recorder failures never reach the caller."""
    try:
        await trace.append(entry)
    except Exception:
        logger.exception(
            "trace append failed",
            extra={"course_id": entry.course_id, "stage": entry.stage, "step": entry.step_name},
        )
