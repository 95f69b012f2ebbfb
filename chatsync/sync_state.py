"""
Sync state tracking and per-session sync locks.

SyncState rows are upserted: counters are incremented with SQL expressions
so concurrent writers add rather than overwrite, while status, timestamps and
error_message are last-write-wins. The lock table serializes sync runs for a
session; a lock is a row whose primary key is the session id.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.models import SyncLock, SyncState

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncType(str, Enum):
    INITIAL = "initial"
    GAP_FILL = "gap_fill"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_sync_state(db: Session, session_id: str) -> Optional[SyncState]:
    """Current sync state of a session, or None if it never synced."""
    return db.get(SyncState, session_id)


def _upsert(db: Session, session_id: str, messages: int = 0, chats: int = 0, **fields) -> SyncState:
    state = db.get(SyncState, session_id)
    if state is None:
        db.add(SyncState(session_id=session_id, messages_synced=messages, chats_synced=chats, **fields))
        try:
            db.commit()
            return db.get(SyncState, session_id)
        except IntegrityError:
            db.rollback()
            state = db.get(SyncState, session_id)

    for name, value in fields.items():
        setattr(state, name, value)
    if messages:
        state.messages_synced = SyncState.messages_synced + messages
    if chats:
        state.chats_synced = SyncState.chats_synced + chats
    db.commit()
    db.refresh(state)
    return state


def mark_syncing(db: Session, session_id: str, sync_type: str) -> SyncState:
    logger.info(f"Sync state -> SYNCING: session={session_id}, type={sync_type}")
    return _upsert(
        db,
        session_id,
        status=SyncStatus.SYNCING.value,
        sync_type=sync_type,
        started_at=_now(),
        completed_at=None,
        error_message=None,
    )


def mark_completed(db: Session, session_id: str, messages: int, chats: int) -> SyncState:
    logger.info(f"Sync state -> COMPLETED: session={session_id}, messages={messages}, chats={chats}")
    return _upsert(
        db,
        session_id,
        messages=messages,
        chats=chats,
        status=SyncStatus.COMPLETED.value,
        completed_at=_now(),
        error_message=None,
    )


def mark_failed(db: Session, session_id: str, error: str, messages: int = 0, chats: int = 0) -> SyncState:
    logger.warning(f"Sync state -> FAILED: session={session_id}, error={error}")
    return _upsert(
        db,
        session_id,
        messages=messages,
        chats=chats,
        status=SyncStatus.FAILED.value,
        completed_at=_now(),
        error_message=error,
    )


# =============================================================================
# Sync Locks
# =============================================================================

def acquire_sync_lock(db: Session, session_id: str, sync_type: str) -> bool:
    """Take the session's sync lock. Returns False if another run holds it."""
    db.add(SyncLock(session_id=session_id, sync_type=sync_type, acquired_at=_now()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Sync lock already held: session={session_id}")
        return False
    return True


def release_sync_lock(db: Session, session_id: str) -> None:
    db.query(SyncLock).filter(SyncLock.session_id == session_id).delete()
    db.commit()


def reset_interrupted_syncs(db: Session) -> int:
    """
    Clear locks and SYNCING states left behind by a previous process.

    Sync tasks live in-process, so at startup nothing can be running.

    Returns:
        Number of sync states marked FAILED
    """
    db.query(SyncLock).delete()
    interrupted = db.query(SyncState).filter(SyncState.status == SyncStatus.SYNCING.value).all()
    for state in interrupted:
        state.status = SyncStatus.FAILED.value
        state.error_message = "Sync interrupted by restart"
        state.completed_at = _now()
    db.commit()
    if interrupted:
        logger.warning(f"Marked {len(interrupted)} interrupted syncs as FAILED")
    return len(interrupted)
