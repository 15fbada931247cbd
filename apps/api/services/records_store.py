"""
Records Store

Access to a user's stored fitness records and coach conversation history.
Metric rows are owned by the ingestion side and only queried here; coach
messages are appended as each exchange happens.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from models import CoachMessageRow, MetricRecordRow
from services.coach_modules.context import ChatMessage
from services.metrics_aggregator import MetricDomain, MetricRecord

logger = logging.getLogger(__name__)

CHAT_ROLES = ("user", "assistant")


def row_to_record(row: MetricRecordRow) -> Optional[MetricRecord]:
    try:
        domain = MetricDomain(row.domain)
    except ValueError:
        logger.warning(f"Skipping metric record {row.id} with unknown domain {row.domain!r}")
        return None
    return MetricRecord(
        domain=domain,
        timestamp=row.recorded_at,
        fields=dict(row.fields or {}),
        unit=row.unit,
        field=row.primary_field,
    )


class SqlRecordsStore:
    """Queries metric records and conversation history through SQLAlchemy."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_records(
        self,
        user_id: str,
        domains: Iterable[MetricDomain],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[MetricRecord]:
        """Records for `user_id` in `domains` within [since, until], oldest first."""
        domain_values = [MetricDomain(d).value for d in domains]
        if not domain_values:
            return []

        query = self.db.query(MetricRecordRow).filter(
            MetricRecordRow.user_id == user_id,
            MetricRecordRow.domain.in_(domain_values),
        )
        if since is not None:
            query = query.filter(MetricRecordRow.recorded_at >= since)
        if until is not None:
            query = query.filter(MetricRecordRow.recorded_at <= until)

        rows = query.order_by(MetricRecordRow.recorded_at.asc(), MetricRecordRow.id.asc()).all()
        records = [row_to_record(row) for row in rows]
        return [r for r in records if r is not None]

    def fetch_history(self, user_id: str, history_token: Optional[str], limit: int) -> List[ChatMessage]:
        """Last `limit` messages of a conversation thread, oldest -> newest."""
        if not history_token or limit <= 0:
            return []

        rows = (
            self.db.query(CoachMessageRow)
            .filter(
                CoachMessageRow.history_token == history_token,
                CoachMessageRow.user_id == user_id,
                CoachMessageRow.role.in_(CHAT_ROLES),
            )
            .order_by(CoachMessageRow.created_at.desc(), CoachMessageRow.id.desc())
            .limit(limit)
            .all()
        )
        return [ChatMessage(role=row.role, text=row.content) for row in reversed(rows)]

    def append_message(self, user_id: str, history_token: str, role: str, content: str) -> CoachMessageRow:
        """Store one message at the end of a conversation thread."""
        if role not in CHAT_ROLES:
            raise ValueError(f"unsupported chat role: {role!r}")
        row = CoachMessageRow(
            history_token=history_token,
            user_id=user_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        self.db.commit()
        return row
