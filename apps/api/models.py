from sqlalchemy import Column, Integer, DateTime, Text, String, Index, JSON
from sqlalchemy.sql import func
from core.database import Base


class MetricRecordRow(Base):
    """
    One stored fitness observation.

    Rows are written by the ingestion side (device sync, manual logging) and
    are immutable once stored; the coach only queries them.
    """
    __tablename__ = "metric_record"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    # 'workout' | 'strength' | 'health' | 'training'
    domain = Column(String(16), nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    unit = Column(Text, nullable=True)
    # Domain-specific numeric fields, e.g. {"duration_min": 45, "distance_km": 9.8}
    fields = Column(JSON, nullable=False, default=dict)
    # Which key of `fields` to aggregate; NULL means the domain default.
    primary_field = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_metric_record_user_domain_time", "user_id", "domain", "recorded_at"),
    )


class CoachMessageRow(Base):
    """
    One message of a coach conversation.

    `history_token` groups messages of one conversation thread; clients pass
    it back as `historyToken` to continue the thread.
    """
    __tablename__ = "coach_message"

    id = Column(Integer, primary_key=True, autoincrement=True)
    history_token = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    role = Column(String(16), nullable=False)  # 'user' | 'assistant'
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_coach_message_thread_time", "history_token", "created_at"),
    )
