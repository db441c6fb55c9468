"""
Per-decision serialisation.

Mutations touching a decision's health, lifecycle, version or governance
state run under ``decision_lock(ids)``:

  - an in-process re-entrant lock per decision id, acquired in sorted id
    order so two operations on overlapping sets cannot deadlock
  - on PostgreSQL, ``SELECT ... FOR UPDATE`` on the decision rows, which
    extends the serialisation across worker processes

Rows loaded before the lock may have been changed by the previous holder.
Whenever the calling thread takes a lock it did not already hold, the
session is flushed and every loaded instance is expired, so attributes read
inside the block come from the database as of lock acquisition. State
preconditions (pending, retired, locked, resolved) therefore belong inside
the block.

Operations on disjoint decision sets proceed in parallel.

Usage:
    with decision_lock([conflict.decision_a_id, conflict.decision_b_id]):
        ...
"""

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable

from decision_governance.models import db
from decision_governance.models.decision import Decision

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_locks: dict[int, threading.RLock] = {}
_held = threading.local()


def _lock_for(decision_id: int) -> threading.RLock:
    with _registry_guard:
        lock = _locks.get(decision_id)
        if lock is None:
            lock = threading.RLock()
            _locks[decision_id] = lock
        return lock


def _held_ids() -> dict:
    counts = getattr(_held, "counts", None)
    if counts is None:
        counts = _held.counts = {}
    return counts


def _supports_row_locks() -> bool:
    return db.engine.dialect.name == "postgresql"


def _reload(ids):
    q = (
        db.session.query(Decision)
        .filter(Decision.id.in_(ids))
        .order_by(Decision.id)
        .populate_existing()
    )
    if _supports_row_locks():
        q = q.with_for_update()
    return q.all()


def _release(ids):
    counts = _held_ids()
    for decision_id in ids:
        counts[decision_id] -= 1
        if not counts[decision_id]:
            del counts[decision_id]


@contextmanager
def decision_lock(decision_ids: Iterable[int]):
    """Serialise work on the given decisions for the duration of the block."""
    ids = sorted({int(i) for i in decision_ids if i is not None})
    counts = _held_ids()
    fresh = [i for i in ids if i not in counts]
    with ExitStack() as stack:
        for decision_id in ids:
            stack.enter_context(_lock_for(decision_id))
            counts[decision_id] = counts.get(decision_id, 0) + 1
        stack.callback(_release, ids)
        if fresh:
            db.session.flush()
            db.session.expire_all()
            logger.debug("Acquired decision locks %s", fresh)
        if ids and (fresh or _supports_row_locks()):
            _reload(ids)
        yield ids
