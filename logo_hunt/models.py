from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime


class GameState(SQLModel, table=True):
    __tablename__ = "game_state"

    company_id: str = Field(primary_key=True)
    # bitset of revealed piece indices, see game.pieces_from_mask
    revealed_mask: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_completed: bool = False


class LeaderboardEntry(SQLModel, table=True):
    __tablename__ = "leaderboard"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True, unique=True)
    company_name: str = ""
    completed_at: str = ""  # label supplied by the client
    timestamp: int  # epoch ms
    completion_time: int  # ms since game start


class UsedQR(SQLModel, table=True):
    __tablename__ = "used_qr"

    qr_id: str = Field(primary_key=True)
    used_at: Optional[datetime] = None


class ConfigEntry(SQLModel, table=True):
    __tablename__ = "config"

    key: str = Field(primary_key=True)
    value: str = ""


class AnswerHistory(SQLModel, table=True):
    __tablename__ = "answer_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    qr_id: Optional[str] = None
    question: Optional[str] = None
    correct_answer: Optional[str] = None
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    piece_index: Optional[int] = None
    answered_at: Optional[datetime] = None
    timestamp: int = 0
