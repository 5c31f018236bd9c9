"""
Unit-of-work helper: the single place workflow services commit.

    from matterflow.services.transaction import run_in_transaction

    task = run_in_transaction(lambda: _update_task_status(task_id, ...))

Rules:
  - Commit on success; rollback and re-raise on any exception, so a task
    status change, its stage recomputation and any exception record land
    together or not at all.
  - Nested calls join the outer unit of work (no inner commit).
  - ``StaleDataError`` (the optimistic version check on MatterStage) reruns
    the whole unit of work up to ``WORKFLOW_EVALUATION_RETRIES`` times, then
    surfaces ``ConcurrentUpdateError``.  ``work`` must therefore load its
    rows by id, not close over ORM instances from a previous attempt.
  - A unique-index violation on ``matter_workflows.matter_id`` becomes
    ``DuplicateWorkflowError`` for the losing activation.
  - Events emitted inside the unit of work are published after the commit.
"""

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from matterflow.core.exceptions import ConcurrentUpdateError, DuplicateWorkflowError
from matterflow.integrations.collaborators import get_collaborators
from matterflow.models import db
from matterflow.services.workflow_events import discard_pending, drain_pending, publish_all

logger = logging.getLogger(__name__)

_DEPTH_KEY = "matterflow.uow_active"

_MATTER_WORKFLOW_UNIQUE_MARKERS = ("uq_matter_workflows_matter", "matter_workflows.matter_id")


def in_transaction() -> bool:
    return bool(db.session.info.get(_DEPTH_KEY))


def is_duplicate_workflow(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc))
    return any(marker in message for marker in _MATTER_WORKFLOW_UNIQUE_MARKERS)


def run_in_transaction(work, *, retries=None, matter_id=None, label="workflow update"):
    """Run ``work()`` as one atomic unit and return its result.

    Args:
        work:      zero-argument callable doing the writes (no commits).
        retries:   stale-data retries; defaults to WORKFLOW_EVALUATION_RETRIES.
        matter_id: matter the unit concerns, used to build DuplicateWorkflowError.
        label:     short description for log lines.
    """
    session = db.session
    if session.info.get(_DEPTH_KEY):
        return work()

    if retries is None:
        retries = int(current_app.config.get("WORKFLOW_EVALUATION_RETRIES", 1))

    attempt = 0
    while True:
        discard_pending()
        session.info[_DEPTH_KEY] = True
        try:
            result = work()
            session.commit()
        except StaleDataError as exc:
            session.rollback()
            discard_pending()
            if attempt < retries:
                attempt += 1
                logger.warning(
                    "Concurrent update during %s; retrying (%d/%d)", label, attempt, retries,
                    extra={"matter_id": matter_id},
                )
                continue
            logger.warning("Concurrent update during %s; giving up", label, extra={"matter_id": matter_id})
            raise ConcurrentUpdateError(
                f"{label} conflicted with a concurrent update; reload and try again",
                details={"matter_id": matter_id, "attempts": attempt + 1},
            ) from exc
        except IntegrityError as exc:
            session.rollback()
            discard_pending()
            if is_duplicate_workflow(exc):
                raise DuplicateWorkflowError(matter_id) from exc
            raise
        except Exception:
            session.rollback()
            discard_pending()
            raise
        finally:
            session.info.pop(_DEPTH_KEY, None)

        events = drain_pending()
        break

    if events:
        publish_all(get_collaborators().events, events)
    return result
