"""
Durable status records and append-only match records.

Two backends share the same contract:
- DynamoDBStatusStore: conditional partial updates on a DynamoDB table
- SqlStatusStore: SQLAlchemy tables (SQLite by default) for local runs

Both reject writes that would move a record backward (see
pipeline.transitions) by raising StatusTransitionError.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import ClientError
from sqlalchemy.orm import sessionmaker

from db.database import init_db, make_engine, make_session_factory
from db.models import MatchRecord, SearchStatusRecord
from pipeline.errors import StatusTransitionError
from pipeline.models import Match, SearchState, SearchStatus, StatusUpdate, utc_now_iso
from pipeline.transitions import apply_update, check_transition

logger = structlog.get_logger()


class StatusStore(ABC):
    """Atomic key-value record store for request status."""

    @abstractmethod
    async def create(self, status: SearchStatus) -> bool:
        """Create the record if absent. Returns False when it already existed."""

    @abstractmethod
    async def get(self, request_id: str) -> Optional[SearchStatus]:
        """Read a record, or None for an unknown request."""

    @abstractmethod
    async def update(self, request_id: str, update: StatusUpdate) -> SearchStatus:
        """
        Apply a partial update atomically and return the stored record.

        Raises:
            StatusTransitionError: If the write would move the record backward
        """

    @abstractmethod
    async def put_match(self, match: Match) -> None:
        """Append a match record."""


# ============================================================================
# SQL backend
# ============================================================================

class SqlStatusStore(StatusStore):
    """
    SQLAlchemy status store.

    Each operation runs in its own session in a worker thread; updates read,
    validate and write the row inside one transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStatusStore":
        engine = make_engine(database_url)
        init_db(engine, database_url)
        return cls(make_session_factory(engine))

    @staticmethod
    def _to_status(row: SearchStatusRecord) -> SearchStatus:
        return SearchStatus(
            request_id=row.request_id,
            status=SearchState(row.status or SearchState.PROCESSING.value),
            progress=row.progress or 0,
            matches=list(row.matches or []),
            total_processed=row.total_processed or 0,
            total_available=row.total_available or 0,
            failure_reason=row.failure_reason,
            version=row.version or 0,
            timestamp=row.timestamp or "",
        )

    @staticmethod
    def _write(row: SearchStatusRecord, status: SearchStatus) -> None:
        row.status = status.status.value
        row.progress = status.progress
        row.matches = list(status.matches)
        row.total_processed = status.total_processed
        row.total_available = status.total_available
        row.failure_reason = status.failure_reason
        row.version = status.version
        row.timestamp = status.timestamp

    def _create_sync(self, status: SearchStatus) -> bool:
        db = self.session_factory()
        try:
            if db.get(SearchStatusRecord, status.request_id) is not None:
                return False
            row = SearchStatusRecord(request_id=status.request_id)
            self._write(row, status)
            db.add(row)
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_sync(self, request_id: str) -> Optional[SearchStatus]:
        db = self.session_factory()
        try:
            row = db.get(SearchStatusRecord, request_id)
            return self._to_status(row) if row is not None else None
        finally:
            db.close()

    def _update_sync(self, request_id: str, update: StatusUpdate) -> SearchStatus:
        db = self.session_factory()
        try:
            row = (
                db.query(SearchStatusRecord)
                .filter(SearchStatusRecord.request_id == request_id)
                .with_for_update()
                .first()
            )
            current = self._to_status(row) if row is not None else None
            new_status = apply_update(current, request_id, update)

            if row is None:
                row = SearchStatusRecord(request_id=request_id)
                db.add(row)
            self._write(row, new_status)
            db.commit()
            return new_status
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _put_match_sync(self, match: Match) -> None:
        db = self.session_factory()
        try:
            db.add(MatchRecord(
                result_id=match.match_id,
                request_id=match.request_id,
                candidate_id=match.candidate_id,
                host_page_url=match.host_page_url,
                target_url=match.target_url,
                thumbnail_url=match.thumbnail_url,
                similarity=match.similarity,
                timestamp=match.created_at,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_matches(self, request_id: str) -> list[MatchRecord]:
        """Stored match rows for a request (synchronous, for CLI and tests)."""
        db = self.session_factory()
        try:
            return db.query(MatchRecord).filter(MatchRecord.request_id == request_id).all()
        finally:
            db.close()

    async def create(self, status: SearchStatus) -> bool:
        return await asyncio.to_thread(self._create_sync, status)

    async def get(self, request_id: str) -> Optional[SearchStatus]:
        return await asyncio.to_thread(self._get_sync, request_id)

    async def update(self, request_id: str, update: StatusUpdate) -> SearchStatus:
        return await asyncio.to_thread(self._update_sync, request_id, update)

    async def put_match(self, match: Match) -> None:
        await asyncio.to_thread(self._put_match_sync, match)


# ============================================================================
# DynamoDB backend
# ============================================================================

def to_dynamo(value: Any) -> Any:
    """Convert floats (recursively) to Decimal, which DynamoDB requires."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Convert Decimals back to int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class DynamoDBStatusStore(StatusStore):
    """
    DynamoDB status store.

    Updates are single UpdateItem calls: changed fields are SET, matches are
    appended with list_append, version is incremented, and a condition
    expression enforces the transition rules server-side.
    """

    def __init__(
        self,
        status_table: str,
        matches_table: str,
        aws_client_kwargs: Optional[dict] = None,
        timeout: float = 10.0,
        resource=None
    ):
        """
        Initialize DynamoDB status store.

        Args:
            status_table: Table keyed by requestId
            matches_table: Append-only table keyed by resultId
            aws_client_kwargs: Region and optional explicit credentials
            timeout: Connect and read timeout
            resource: Preconfigured boto3 DynamoDB resource (tests)
        """
        self.status_table_name = status_table
        self.matches_table_name = matches_table
        self._resource = resource
        self._client_kwargs = aws_client_kwargs or {}
        self._config = Config(connect_timeout=timeout, read_timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "DynamoDBStatusStore":
        return cls(
            status_table=settings.status_table,
            matches_table=settings.matches_table,
            aws_client_kwargs=settings.aws_client_kwargs(),
            timeout=settings.request_timeout,
        )

    @property
    def resource(self):
        if self._resource is None:
            self._resource = boto3.resource("dynamodb", config=self._config, **self._client_kwargs)
            logger.info("DynamoDB resource initialized", table=self.status_table_name)
        return self._resource

    @property
    def status_table(self):
        return self.resource.Table(self.status_table_name)

    @property
    def matches_table(self):
        return self.resource.Table(self.matches_table_name)

    @staticmethod
    def _is_conditional_failure(error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _create_sync(self, status: SearchStatus) -> bool:
        try:
            self.status_table.put_item(
                Item=to_dynamo(status.to_record()),
                ConditionExpression="attribute_not_exists(requestId)"
            )
            return True
        except ClientError as e:
            if self._is_conditional_failure(e):
                return False
            raise

    def _get_sync(self, request_id: str) -> Optional[SearchStatus]:
        response = self.status_table.get_item(Key={"requestId": request_id}, ConsistentRead=True)
        item = response.get("Item")
        if item is None:
            return None
        return SearchStatus.from_record(request_id, from_dynamo(item))

    def build_update_expression(self, update: StatusUpdate) -> dict:
        """Translate a StatusUpdate into UpdateItem keyword arguments."""
        names = {"#status": "status", "#version": "version", "#timestamp": "timestamp"}
        values: dict[str, Any] = {
            ":processing": SearchState.PROCESSING.value,
            ":one": 1,
            ":zero": 0,
            ":timestamp": utc_now_iso(),
        }
        sets = [
            "#version = if_not_exists(#version, :zero) + :one",
            "#timestamp = :timestamp",
        ]
        conditions = ["(attribute_not_exists(#status) OR #status = :processing)"]

        if update.status is not None:
            sets.append("#status = :status")
            values[":status"] = update.status.value

        if update.progress is not None:
            names["#progress"] = "progress"
            sets.append("#progress = :progress")
            values[":progress"] = update.progress
            if update.status in (None, SearchState.PROCESSING):
                conditions.append("(attribute_not_exists(#progress) OR #progress <= :progress)")

        for attr, value in (
            ("totalProcessed", update.total_processed),
            ("totalAvailable", update.total_available),
            ("failureReason", update.failure_reason),
        ):
            if value is not None:
                names[f"#{attr}"] = attr
                sets.append(f"#{attr} = :{attr}")
                values[f":{attr}"] = value

        if (update.append_matches and update.total_processed is not None
                and update.status in (None, SearchState.PROCESSING)):
            conditions.append("(attribute_not_exists(#totalProcessed) OR #totalProcessed < :totalProcessed)")

        if update.replace_matches is not None or update.append_matches:
            names["#matches"] = "matches"
            if update.replace_matches is not None:
                values[":matches"] = to_dynamo(list(update.replace_matches) + list(update.append_matches))
                sets.append("#matches = :matches")
            else:
                values[":matches"] = to_dynamo(list(update.append_matches))
                values[":empty"] = []
                sets.append("#matches = list_append(if_not_exists(#matches, :empty), :matches)")

        return {
            "UpdateExpression": "SET " + ", ".join(sets),
            "ConditionExpression": " AND ".join(conditions),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ReturnValues": "ALL_NEW",
        }

    def _update_sync(self, request_id: str, update: StatusUpdate) -> SearchStatus:
        if update.progress is not None and not 0 <= update.progress <= 100:
            raise StatusTransitionError(f"progress out of range: {update.progress}")

        try:
            response = self.status_table.update_item(
                Key={"requestId": request_id},
                **self.build_update_expression(update)
            )
        except ClientError as e:
            if not self._is_conditional_failure(e):
                raise
            current = self._get_sync(request_id)
            if current is not None:
                # Raises with a precise reason
                check_transition(current, update)
            raise StatusTransitionError(f"conditional update rejected for {request_id}") from e

        return SearchStatus.from_record(request_id, from_dynamo(response.get("Attributes") or {}))

    def _put_match_sync(self, match: Match) -> None:
        self.matches_table.put_item(Item=to_dynamo(match.to_record()))

    async def create(self, status: SearchStatus) -> bool:
        return await asyncio.to_thread(self._create_sync, status)

    async def get(self, request_id: str) -> Optional[SearchStatus]:
        return await asyncio.to_thread(self._get_sync, request_id)

    async def update(self, request_id: str, update: StatusUpdate) -> SearchStatus:
        return await asyncio.to_thread(self._update_sync, request_id, update)

    async def put_match(self, match: Match) -> None:
        await asyncio.to_thread(self._put_match_sync, match)


def build_status_store(settings) -> StatusStore:
    """Status store for the configured backend."""
    if settings.status_backend == "dynamodb":
        return DynamoDBStatusStore.from_settings(settings)
    return SqlStatusStore.from_url(settings.database_url)
