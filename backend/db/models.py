import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, Integer, Text, Float, ForeignKey, Index,
    DateTime, Enum, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


class ExerciseType(str, enum.Enum):
    SQUAT = "squat"
    SITUP = "situp"
    PUSHUP = "pushup"


class MealChoice(str, enum.Enum):
    ATE = "ate"
    SKIPPED = "skipped"


class ObligationStatus(str, enum.Enum):
    """open -> completed | unmet. Both terminal."""
    OPEN = "open"
    COMPLETED = "completed"
    UNMET = "unmet"


class LedgerStatus(str, enum.Enum):
    """open -> closed | reset. Both terminal."""
    OPEN = "open"
    CLOSED = "closed"
    RESET = "reset"


class SessionEventType(str, enum.Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    END = "end"


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, **kwargs) -> Column:
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [m.value for m in members],
            length=16,
        ),
        **kwargs,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    username_normalized = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    settings = relationship("UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan")
    meal_records = relationship("MealRecord", back_populates="user", cascade="all, delete-orphan")
    exercise_records = relationship("ExerciseRecord", back_populates="user", cascade="all, delete-orphan")
    obligations = relationship("ExerciseObligation", back_populates="user", cascade="all, delete-orphan")
    session_events = relationship("ExerciseSessionEvent", back_populates="user", cascade="all, delete-orphan")
    ledger_entries = relationship("RecoveryLedgerEntry", back_populates="user", cascade="all, delete-orphan")


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    timezone = Column(Text, default="UTC")
    default_exercise_type = _enum_column(ExerciseType, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="settings")


class MealRecord(Base):
    __tablename__ = "meal_records"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    food_name = Column(Text, nullable=False)
    estimated_calories = Column(Float, nullable=False, default=0.0)
    confidence = Column(Integer, nullable=False, default=0)  # 0-100
    photo_uri = Column(Text)
    choice = _enum_column(MealChoice, nullable=False)

    user = relationship("User", back_populates="meal_records")

    __table_args__ = (
        Index("ix_meal_records_user_timestamp", "user_id", "timestamp"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "food_name": self.food_name,
            "estimated_calories": self.estimated_calories,
            "confidence": self.confidence,
            "photo_uri": self.photo_uri,
            "choice": self.choice.value,
        }


class ExerciseRecord(Base):
    __tablename__ = "exercise_records"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    meal_record_id = Column(Text, nullable=True)  # back-reference, not an ownership edge
    timestamp = Column(DateTime, nullable=False)
    exercise_type = _enum_column(ExerciseType, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    target_count = Column(Integer, nullable=False, default=0)
    calories_burned = Column(Float, nullable=False, default=0.0)

    user = relationship("User", back_populates="exercise_records")

    __table_args__ = (
        Index("ix_exercise_records_user_timestamp", "user_id", "timestamp"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meal_record_id": self.meal_record_id,
            "timestamp": _iso(self.timestamp),
            "exercise_type": self.exercise_type.value,
            "count": self.count,
            "target_count": self.target_count,
            "calories_burned": self.calories_burned,
        }


class ExerciseObligation(Base):
    __tablename__ = "exercise_obligations"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    meal_record_id = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)  # end of local day, stored as UTC
    due_local_date = Column(Text, nullable=False)  # YYYY-MM-DD
    week_start_local = Column(Text, nullable=False)  # YYYY-MM-DD (Monday)
    timezone = Column(Text, nullable=False)
    exercise_type = _enum_column(ExerciseType, nullable=False)
    target_count = Column(Integer, nullable=False, default=1)
    completed_count = Column(Integer, nullable=False, default=0)
    status = _enum_column(ObligationStatus, nullable=False, default=ObligationStatus.OPEN)
    finalized_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="obligations")

    __table_args__ = (
        Index("ix_exercise_obligations_user_status", "user_id", "status"),
        Index("ix_exercise_obligations_user_due_date", "user_id", "due_local_date"),
    )

    @property
    def remaining_count(self) -> int:
        return max(0, int(self.target_count or 0) - int(self.completed_count or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meal_record_id": self.meal_record_id,
            "created_at": _iso(self.created_at),
            "due_at": _iso(self.due_at),
            "due_local_date": self.due_local_date,
            "week_start_local": self.week_start_local,
            "timezone": self.timezone,
            "exercise_type": self.exercise_type.value,
            "target_count": self.target_count,
            "completed_count": self.completed_count,
            "remaining_count": self.remaining_count,
            "status": self.status.value,
            "finalized_at": _iso(self.finalized_at),
        }


class ExerciseSessionEvent(Base):
    __tablename__ = "exercise_session_events"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    obligation_id = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    event_type = _enum_column(SessionEventType, nullable=False)
    count_snapshot = Column(Integer, nullable=False, default=0)
    sequence = Column(Integer, nullable=False, default=0)  # per-obligation append order

    user = relationship("User", back_populates="session_events")

    __table_args__ = (
        Index("ix_exercise_session_events_obligation", "user_id", "obligation_id", "timestamp"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "obligation_id": self.obligation_id,
            "timestamp": _iso(self.timestamp),
            "event_type": self.event_type.value,
            "count_snapshot": self.count_snapshot,
            "sequence": self.sequence,
        }


class RecoveryLedgerEntry(Base):
    __tablename__ = "recovery_ledger"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    obligation_id = Column(Text, nullable=False)
    week_start_local = Column(Text, nullable=False)
    generated_at = Column(DateTime, nullable=False)
    initial_unmet_count = Column(Integer, nullable=False)
    recovered_count = Column(Integer, nullable=False, default=0)
    remaining_count = Column(Integer, nullable=False)
    status = _enum_column(LedgerStatus, nullable=False, default=LedgerStatus.OPEN)
    reset_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="ledger_entries")

    __table_args__ = (
        Index("ix_recovery_ledger_user_week", "user_id", "week_start_local", "status"),
        Index("ix_recovery_ledger_obligation", "obligation_id"),
        # At most one live (non-reset) entry per obligation, even across concurrent sweeps.
        Index(
            "uq_recovery_ledger_live_obligation",
            "obligation_id",
            unique=True,
            sqlite_where=text("status != 'reset'"),
            postgresql_where=text("status != 'reset'"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "obligation_id": self.obligation_id,
            "week_start_local": self.week_start_local,
            "generated_at": _iso(self.generated_at),
            "initial_unmet_count": self.initial_unmet_count,
            "recovered_count": self.recovered_count,
            "remaining_count": self.remaining_count,
            "status": self.status.value,
            "reset_at": _iso(self.reset_at),
        }
