"""
Database models for the Edge Feedback loop
SQLAlchemy ORM (PostgreSQL in production, SQLite for local runs and tests)
"""

import os
import uuid
from datetime import datetime

from dotenv import load_dotenv
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./edge_feedback.db")

engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _new_run_id() -> str:
    return uuid.uuid4().hex


class ExperimentAssignment(Base):
    """Sticky arm for one subject in one experiment. Written once, never updated."""

    __tablename__ = "experiment_assignments"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    experiment_name = Column(String, nullable=False, index=True)
    variant = Column(String(16), nullable=False)  # "control" | "treatment"
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subject_id", "experiment_name", name="_subject_experiment_uc"),
    )


class ExperimentOutcome(Base):
    """Append-only result row counted toward an experiment arm."""

    __tablename__ = "experiment_outcomes"

    id = Column(Integer, primary_key=True, index=True)
    experiment_name = Column(String, nullable=False, index=True)
    subject_id = Column(String, nullable=False)
    variant = Column(String(16), nullable=False, index=True)
    result = Column(String(8))  # "win" | "loss" | "push" | NULL
    net_units = Column(Float)
    prediction_ref = Column(String)
    recorded_at = Column(DateTime, default=datetime.utcnow, index=True)


class RecalibrationModel(Base):
    """One version of the Platt coefficients. New fits append; nothing is overwritten."""

    __tablename__ = "recalibration_models"

    id = Column(Integer, primary_key=True, index=True)
    version = Column(Integer, nullable=False, unique=True, index=True)
    a = Column(Float, nullable=False)
    b = Column(Float, nullable=False)
    sample_count = Column(Integer, nullable=False)
    trained_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Diagnostics for the audit trail
    brier_before = Column(Float)
    brier_after = Column(Float)
    changed_by = Column(String)


class DecisionRun(Base):
    """A slate selected by the decision engine, later reconciled against results."""

    __tablename__ = "decision_runs"

    id = Column(String(32), primary_key=True, default=_new_run_id)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Run inputs
    subject_id = Column(String, nullable=False, index=True)
    bankroll = Column(Float, nullable=False)
    domain_tag = Column(String, index=True)  # e.g. sport
    config_version = Column(Integer, nullable=False, index=True)
    candidate_count = Column(Integer, nullable=False, default=0)

    # [{candidate_id, stake, expected_value, group_tag}, ...]
    selected_slate = Column(JSON, nullable=False)
    selected_count = Column(Integer, nullable=False, default=0)
    alternatives = Column(JSON)  # audit only
    constraints = Column(JSON)  # audit only, not enforced

    # Filled by validation
    validated = Column(Boolean, default=False, nullable=False, index=True)
    validated_at = Column(DateTime)
    actual_win_rate = Column(Float)
    actual_net_units = Column(Float)
    max_drawdown = Column(Float)

    outcomes = relationship(
        "DecisionOutcome",
        back_populates="run",
        order_by="DecisionOutcome.position_index",
    )


class DecisionOutcome(Base):
    """Realized result for one position of a decision run."""

    __tablename__ = "decision_outcomes"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(32), ForeignKey("decision_runs.id"), nullable=False, index=True)
    position_index = Column(Integer, nullable=False)

    # Copied from the slate at validation time
    candidate_id = Column(String)
    stake = Column(Float)
    expected_value = Column(Float)

    external_ref = Column(String)
    result = Column(Integer, nullable=False)  # 1 = win, -1 = loss, 0 = push
    net_units = Column(Float, nullable=False)

    run = relationship("DecisionRun", back_populates="outcomes")

    __table_args__ = (
        UniqueConstraint("run_id", "position_index", name="_run_position_uc"),
    )


# Create all tables
def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)


if __name__ == "__main__":
    init_db()
    print("Database tables created")
