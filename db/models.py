"""
SQLAlchemy models for the local status backend.

Tables:
- SearchStatusRecord: one row per request, updated in place
- MatchRecord: append-only matches
"""

from sqlalchemy import Column, Float, Integer, JSON, String, Text

from db.database import Base


class SearchStatusRecord(Base):
    """
    Durable status of one visual match request.
    """
    __tablename__ = "search_status"

    request_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default="processing")
    progress = Column(Integer, nullable=False, default=0)
    matches = Column(JSON, nullable=False, default=list)  # List of match entries, append-only while processing
    total_processed = Column(Integer, nullable=False, default=0)
    total_available = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    timestamp = Column(String(40), nullable=False)  # ISO 8601 of the last write

    def __repr__(self) -> str:
        return f"<SearchStatusRecord(request_id='{self.request_id}', status='{self.status}', progress={self.progress})>"


class MatchRecord(Base):
    """
    A candidate confirmed above the similarity threshold.
    """
    __tablename__ = "search_results"

    result_id = Column(String(64), primary_key=True)
    request_id = Column(String(64), nullable=False, index=True)
    candidate_id = Column(String(64), nullable=False)
    host_page_url = Column(String(2048), nullable=True)
    target_url = Column(String(2048), nullable=False)
    thumbnail_url = Column(String(2048), nullable=True)
    similarity = Column(Float, nullable=False)
    timestamp = Column(String(40), nullable=False)

    def __repr__(self) -> str:
        return f"<MatchRecord(result_id='{self.result_id}', similarity={self.similarity})>"
