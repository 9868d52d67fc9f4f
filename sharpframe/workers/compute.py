"""Entry point executed inside an isolated scoring process.

Mirrors a message protocol: the pool sends ``{task_id, pixels, width,
height}`` and receives either ``{"task_id", "score"}`` or
``{"task_id", "error"}``.  Application-level failures are reported in the
reply rather than raised so that only a dying process counts as an
instance fault.
"""

import logging

from sharpframe.video.sharpness import compute_sharpness

logger = logging.getLogger(__name__)


def score_task(task_id: int, pixels, width: int, height: int) -> dict:
    try:
        score = compute_sharpness(pixels, width, height)
    except Exception as exc:
        logger.warning("Scoring task %d failed: %s", task_id, exc)
        return {"task_id": task_id, "error": str(exc) or type(exc).__name__}
    return {"task_id": task_id, "score": score}
