import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, desc, func, select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import game, models
from .cache import invalidate_leaderboard_cache

logger = logging.getLogger(__name__)

engine = None

ALL_REVEALED = "All pieces already revealed"
ALREADY_ON_LEADERBOARD = "Already in leaderboard"
QR_ALREADY_USED = "QR code already used"

GAME_STARTED_KEY = "game_started"
GAME_START_TIME_KEY = "game_start_time"

# Row-level serialization inside this process; SELECT ... FOR UPDATE covers
# multi-process deployments on databases that honour it. Entries vanish once no
# request holds the lock.
_locks_guard = threading.Lock()
_key_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


def _key_lock(key: str) -> threading.Lock:
    with _locks_guard:
        lock = _key_locks.get(key)
        if lock is None:
            lock = _key_locks[key] = threading.Lock()
        return lock


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass
class SessionConfig:
    game_started: bool = False
    game_start_time: Optional[int] = None  # epoch ms

    def to_dict(self) -> dict:
        return {"started": self.game_started, "gameStartTime": self.game_start_time}


@dataclass
class GameStateView:
    company_id: str
    revealed_pieces: List[int] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_completed: bool = False

    @classmethod
    def from_row(cls, row: models.GameState) -> "GameStateView":
        return cls(
            company_id=row.company_id,
            revealed_pieces=game.pieces_from_mask(row.revealed_mask or 0),
            start_time=row.start_time,
            end_time=row.end_time,
            is_completed=bool(row.is_completed),
        )

    def to_dict(self) -> dict:
        return {
            "companyId": self.company_id,
            "revealedPieces": self.revealed_pieces,
            "startTime": _isoformat(self.start_time),
            "endTime": _isoformat(self.end_time),
            "isCompleted": self.is_completed,
        }


@dataclass
class RevealResult:
    success: bool
    revealed_pieces: List[int]
    is_completed: bool
    new_piece_index: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.success:
            return {
                "success": False,
                "message": self.message,
                "revealedPieces": self.revealed_pieces,
                "isCompleted": self.is_completed,
            }
        return {
            "success": True,
            "newPieceIndex": self.new_piece_index,
            "revealedPieces": self.revealed_pieces,
            "isCompleted": self.is_completed,
        }


@dataclass
class RecordResult:
    success: bool
    completion_time: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "message": self.message}
        return {"success": True, "completionTime": self.completion_time}


# ---------------------------------------------------------------- game state

def get_game_state(session: Session, company_id: str) -> GameStateView:
    """Current state for a company; unknown companies read as an empty puzzle."""
    row = session.get(models.GameState, company_id)
    if row is None:
        return GameStateView(company_id=company_id)
    return GameStateView.from_row(row)


def list_game_states(session: Session) -> List[GameStateView]:
    rows = session.exec(select(models.GameState).order_by(models.GameState.company_id)).all()
    return [GameStateView.from_row(r) for r in rows]


def reveal_piece(session: Session, company_id: str, requested_index: int, grid_size: int,
                 now: Optional[datetime] = None, qr_id: Optional[str] = None) -> RevealResult:
    """Reveal one piece of a company's puzzle.

    A requested piece that is already revealed (or out of range) is swapped for the lowest
    hidden index. Once every piece is revealed the call is a no-op reporting
    success=False. The read-modify-write runs under a per-company lock so concurrent
    requests can neither duplicate a piece nor complete the puzzle twice.

    When qr_id is given the code is marked used in the same commit as the piece, so a
    reveal that changes nothing (or fails) leaves the code unused. A code that is
    already used rejects the reveal with message QR_ALREADY_USED.
    """
    total = game.total_pieces(grid_size)
    with _key_lock(f"game:{company_id}"):
        state = session.exec(
            select(models.GameState)
            .where(models.GameState.company_id == company_id)
            .with_for_update()
        ).first()
        if state is None:
            state = models.GameState(company_id=company_id, revealed_mask=0)

        mask = state.revealed_mask or 0
        chosen = None
        if game.count_pieces(mask) < total:
            chosen = game.choose_piece(mask, requested_index, total)
        if chosen is None:
            # nothing to write; release the row lock
            session.rollback()
            logger.info("reveal_noop_completed", extra={"company_id": company_id, "grid_size": grid_size})
            return RevealResult(
                success=False,
                revealed_pieces=game.pieces_from_mask(mask),
                is_completed=True,
                message=ALL_REVEALED,
            )

        if qr_id is not None and is_qr_used(session, qr_id):
            session.rollback()
            return _qr_rejection(mask, total)

        ts = now or _utcnow()
        prior = mask
        mask = game.add_piece(mask, chosen)
        completed = game.count_pieces(mask) >= total
        state.revealed_mask = mask
        if state.start_time is None:
            state.start_time = ts
        state.is_completed = completed
        state.end_time = ts if completed else None
        session.add(state)
        if qr_id is not None:
            session.add(models.UsedQR(qr_id=qr_id, used_at=ts))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if qr_id is not None and is_qr_used(session, qr_id):
                # another request consumed the code first
                return _qr_rejection(prior, total)
            raise
        except Exception:
            session.rollback()
            raise

    logger.info(
        "piece_revealed",
        extra={"company_id": company_id, "requested_index": requested_index, "piece_index": chosen, "qr_id": qr_id},
    )
    if completed:
        logger.info("puzzle_completed", extra={"company_id": company_id})
    return RevealResult(
        success=True,
        new_piece_index=chosen,
        revealed_pieces=game.pieces_from_mask(mask),
        is_completed=completed,
    )


def _qr_rejection(mask: int, total: int) -> RevealResult:
    return RevealResult(
        success=False,
        revealed_pieces=game.pieces_from_mask(mask),
        is_completed=game.count_pieces(mask) >= total,
        message=QR_ALREADY_USED,
    )


def reset_game_states(session: Session) -> None:
    session.execute(delete(models.GameState))
    session.commit()


# --------------------------------------------------------------- leaderboard

def record_completion(session: Session, company_id: str, company_name: str,
                      completed_at_label: Optional[str] = None,
                      config: Optional[SessionConfig] = None,
                      now_ms: Optional[int] = None) -> RecordResult:
    """Append a leaderboard entry for a company, at most once.

    completion_time is measured from the session's game start. A session that was never
    started counts as elapsed time 0.
    """
    with _key_lock(f"leaderboard:{company_id}"):
        existing = session.exec(
            select(models.LeaderboardEntry).where(models.LeaderboardEntry.company_id == company_id)
        ).first()
        if existing is not None:
            return RecordResult(success=False, message=ALREADY_ON_LEADERBOARD)

        cfg = config or get_session_config(session)
        now = now_ms if now_ms is not None else _now_ms()
        start = cfg.game_start_time if cfg.game_start_time is not None else now
        completion_time = max(0, now - start)

        entry = models.LeaderboardEntry(
            company_id=company_id,
            company_name=company_name,
            completed_at=completed_at_label or _utcnow().isoformat(),
            timestamp=now,
            completion_time=completion_time,
        )
        session.add(entry)
        try:
            session.commit()
        except IntegrityError:
            # another process won the race on the unique company_id
            session.rollback()
            return RecordResult(success=False, message=ALREADY_ON_LEADERBOARD)
        except Exception:
            session.rollback()
            raise

    invalidate_leaderboard_cache()
    logger.info("completion_recorded", extra={"company_id": company_id, "completion_time": completion_time})
    return RecordResult(success=True, completion_time=completion_time)


def get_leaderboard(session: Session) -> List[dict]:
    """All entries, earliest completion first."""
    rows = session.exec(
        select(models.LeaderboardEntry).order_by(models.LeaderboardEntry.timestamp, models.LeaderboardEntry.id)
    ).all()
    leaders = []
    for rank, r in enumerate(rows, start=1):
        leaders.append({
            'id': r.id,
            'rank': rank,
            'company_id': r.company_id,
            'company_name': r.company_name,
            'completed_at': r.completed_at,
            'timestamp': r.timestamp,
            'completion_time': r.completion_time,
            'completion_time_label': game.format_duration(r.completion_time),
        })
    return leaders


def reset_leaderboard(session: Session) -> None:
    session.execute(delete(models.LeaderboardEntry))
    session.commit()
    invalidate_leaderboard_cache()


# ----------------------------------------------------------- session control

def _get_config_value(session: Session, key: str) -> Optional[str]:
    row = session.get(models.ConfigEntry, key)
    return row.value if row else None


def _set_config_value(session: Session, key: str, value: str) -> None:
    row = session.get(models.ConfigEntry, key)
    if row is None:
        row = models.ConfigEntry(key=key, value=value)
    else:
        row.value = value
    session.add(row)


def get_session_config(session: Session) -> SessionConfig:
    started = _get_config_value(session, GAME_STARTED_KEY) == "true"
    raw_start = _get_config_value(session, GAME_START_TIME_KEY)
    start_time = None
    if raw_start:
        try:
            start_time = int(raw_start)
        except ValueError:
            logger.warning("bad_game_start_time", extra={"error": raw_start})
    return SessionConfig(game_started=started, game_start_time=start_time)


def start_game(session: Session, now_ms: Optional[int] = None) -> SessionConfig:
    """Open the session. Starting again re-stamps the completion-time baseline."""
    start = now_ms if now_ms is not None else _now_ms()
    _set_config_value(session, GAME_STARTED_KEY, "true")
    _set_config_value(session, GAME_START_TIME_KEY, str(start))
    session.commit()
    logger.info("game_started", extra={"started": True})
    return SessionConfig(game_started=True, game_start_time=start)


def stop_game(session: Session) -> SessionConfig:
    _set_config_value(session, GAME_STARTED_KEY, "false")
    session.commit()
    logger.info("game_stopped", extra={"started": False})
    return get_session_config(session)


def reset_game(session: Session) -> None:
    """Clear all per-session data; the started/stopped flag is left alone."""
    for model in (models.UsedQR, models.GameState, models.LeaderboardEntry, models.AnswerHistory):
        session.execute(delete(model))
    session.commit()
    invalidate_leaderboard_cache()
    logger.info("game_reset")


def reset_all(session: Session) -> None:
    """Admin wipe of QR usage, puzzle progress and the leaderboard."""
    for model in (models.UsedQR, models.GameState, models.LeaderboardEntry):
        session.execute(delete(model))
    session.commit()
    invalidate_leaderboard_cache()
    logger.info("all_data_reset")


# ----------------------------------------------------------------- QR ledger

def is_qr_used(session: Session, qr_id: str) -> bool:
    return session.get(models.UsedQR, qr_id) is not None


def claim_qr(session: Session, qr_id: str) -> bool:
    """Mark a code used; True only for the call that actually consumed it."""
    if session.get(models.UsedQR, qr_id) is not None:
        return False
    session.add(models.UsedQR(qr_id=qr_id, used_at=_utcnow()))
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return False
    logger.info("qr_used", extra={"qr_id": qr_id})
    return True


def mark_qr_used(session: Session, qr_id: str) -> bool:
    """Insert-if-absent; marking an already used code again is harmless."""
    claim_qr(session, qr_id)
    return True


def list_used_qr(session: Session) -> List[str]:
    return list(session.exec(select(models.UsedQR.qr_id).order_by(models.UsedQR.qr_id)).all())


def count_used_qr(session: Session) -> int:
    return session.execute(sa_select(func.count()).select_from(models.UsedQR)).scalar() or 0


def reset_used_qr(session: Session) -> None:
    session.execute(delete(models.UsedQR))
    session.commit()


# ------------------------------------------------------------ answer history

def add_answer(session: Session, qr_id: Optional[str], question: Optional[str],
               correct_answer: Optional[str], company_id: Optional[str],
               company_name: Optional[str], piece_index: Optional[int],
               now_ms: Optional[int] = None) -> models.AnswerHistory:
    rec = models.AnswerHistory(
        qr_id=qr_id,
        question=question,
        correct_answer=correct_answer,
        company_id=company_id,
        company_name=company_name,
        piece_index=piece_index,
        answered_at=_utcnow(),
        timestamp=now_ms if now_ms is not None else _now_ms(),
    )
    session.add(rec)
    session.commit()
    session.refresh(rec)
    return rec


def get_answer_history(session: Session, limit: int = 50) -> List[dict]:
    """Most recent answers first."""
    rows = session.exec(
        select(models.AnswerHistory)
        .order_by(desc(models.AnswerHistory.timestamp), desc(models.AnswerHistory.id))
        .limit(limit)
    ).all()
    return [r.model_dump() for r in rows]


# ------------------------------------------------------------------ overview

def _state_summaries(session: Session) -> List[dict]:
    return [
        {"companyId": s.company_id, "revealedPieces": s.revealed_pieces, "isCompleted": s.is_completed}
        for s in list_game_states(session)
    ]


def get_stats(session: Session) -> dict:
    return {
        "usedQRCount": count_used_qr(session),
        "gameStarted": get_session_config(session).game_started,
        "gameStates": _state_summaries(session),
        "leaderboard": get_leaderboard(session),
    }


def get_live_dashboard(session: Session) -> dict:
    cfg = get_session_config(session)
    return {
        "answerHistory": get_answer_history(session, limit=20),
        "gameStates": _state_summaries(session),
        "leaderboard": get_leaderboard(session),
        "gameStarted": cfg.game_started,
        "gameStartTime": cfg.game_start_time,
    }
