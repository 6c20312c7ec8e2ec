from __future__ import annotations

import logging

from app.celery_app import enqueue

logger = logging.getLogger(__name__)


def fire_and_forget(task, *args, **kwargs) -> bool:
    """
    Enqueue a best-effort task. Failures are logged and swallowed: a notification
    must never undo or block the state change that triggered it.
    """
    try:
        enqueue(task, *args, **kwargs)
        return True
    except Exception:  # pylint: disable=broad-except
        logger.exception("Unable to enqueue %s", getattr(task, "name", task))
        return False
