"""
Offline review log for queries that ended in the failed state.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import DB_CONFIG

logger = logging.getLogger(__name__)

class ReviewLog:
    """Records sanitized query text and fallback history for later review."""

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize the review log.

        Args:
            connection_string: SQLAlchemy URL; defaults to DB_CONFIG
        """
        self.connection_string = connection_string or DB_CONFIG["connection_string"]
        self._init_db_connection()

    def _init_db_connection(self):
        """Initialize database connection and tables."""
        if self.connection_string in ("sqlite://", "sqlite:///:memory:"):
            # Single shared connection so worker threads see the same in-memory database
            self.engine = sa.create_engine(self.connection_string,
                                           connect_args={"check_same_thread": False},
                                           poolclass=StaticPool)
        else:
            self.engine = sa.create_engine(self.connection_string)

        metadata = sa.MetaData()
        self.reviews_table = sa.Table(
            'failed_queries', metadata,
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('query_text', sa.Text, nullable=False),
            sa.Column('reason', sa.String(64), nullable=False),
            sa.Column('history', sa.JSON, nullable=False),
            sa.Column('created_at', sa.Float, nullable=False)
        )

        metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)
        logger.info("Review log database initialized")

    async def record(self, query_text: str, reason: str, history: List[str]) -> int:
        """
        Record a failed query.

        Args:
            query_text: Sanitized query text (never the raw input)
            reason: Fallback reason that led to the failure
            history: Fallback states visited

        Returns:
            Row id of the new record
        """
        # Blocking driver calls run in a worker thread, off the event loop
        row_id = await asyncio.to_thread(self._insert, query_text, reason, history)
        logger.info(f"Recorded failed query for review (id={row_id}, reason={reason})")
        return row_id

    def _insert(self, query_text: str, reason: str, history: List[str]) -> int:
        with self.Session() as session:
            result = session.execute(
                self.reviews_table.insert().values(
                    query_text=query_text,
                    reason=reason or "none",
                    history=list(history),
                    created_at=time.time()
                )
            )
            session.commit()
            return result.inserted_primary_key[0]

    def get_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Get the most recent failed queries.

        Args:
            limit: Maximum number of records to return

        Returns:
            List of records, newest first
        """
        with self.Session() as session:
            rows = session.execute(
                sa.select(self.reviews_table)
                .order_by(self.reviews_table.c.id.desc())
                .limit(limit)
            ).mappings().all()
        return [dict(row) for row in rows]

    def count(self) -> int:
        with self.Session() as session:
            return session.execute(
                sa.select(sa.func.count()).select_from(self.reviews_table)
            ).scalar_one()

    def close(self):
        self.engine.dispose()
