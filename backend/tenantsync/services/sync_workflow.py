"""
Fan-out of local directory/billing state to the analytical store.

A sync is fire-and-forget from the caller's side. Each attempt runs as a
Celery task whose arguments carry the retry count, so a rescheduled attempt
is self-describing and survives worker restarts. When the retry budget runs
out (or the failure is permanent) a single dead letter is written per
workflow id and nothing is retried automatically again.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenantsync.analytics.sink import get_analytics_sink
from tenantsync.celery_app import enqueue
from tenantsync.core.clock import as_utc, utcnow
from tenantsync.core.config import settings
from tenantsync.core.errors import SyncDependencyNotReady, SyncPermanentError
from tenantsync.models.directory import Organization, User
from tenantsync.models.sync import DeadLetterEntry, SyncEntityType, SyncRunStatus, SyncStatus
from tenantsync.services.ledger import is_unique_violation

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


# ----------------------------------------------------------------------
# Retry policy
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    initial_delay: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.SYNC_MAX_RETRIES,
            initial_delay=settings.SYNC_INITIAL_DELAY_SECONDS,
            max_delay=settings.SYNC_MAX_DELAY_SECONDS,
        )

    def delay_for(self, retry_count: int) -> float:
        return compute_backoff_delay(retry_count, self.initial_delay, self.max_delay)

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries


def compute_backoff_delay(retry_count: int, initial_delay: float, max_delay: float) -> float:
    return min(initial_delay * (2 ** retry_count), max_delay)


@dataclass(frozen=True)
class SyncJob:
    workflow_id: str
    entity_type: str
    entity_id: str
    operation: str
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    webhook_event: str | None = None

    def as_task_kwargs(self) -> dict[str, Any]:
        return asdict(self)

    def next_attempt(self) -> "SyncJob":
        return replace(self, retry_count=self.retry_count + 1)


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------
SyncOperation = Callable[[Session, dict[str, Any]], None]

_OPERATIONS: dict[tuple[str, str], SyncOperation] = {}


def sync_operation(entity_type: SyncEntityType, operation: str):
    def decorator(fn: SyncOperation) -> SyncOperation:
        _OPERATIONS[(entity_type.value, operation)] = fn
        return fn

    return decorator


@sync_operation(SyncEntityType.USER, "upsert")
def _upsert_user(db: Session, payload: dict[str, Any]) -> None:
    get_analytics_sink().upsert_user(
        payload["workos_id"],
        local_id=payload.get("local_id"),
        email=payload.get("email"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
    )


@sync_operation(SyncEntityType.USER, "delete")
def _delete_user(db: Session, payload: dict[str, Any]) -> None:
    # Already gone downstream counts as done.
    get_analytics_sink().delete_user(payload["workos_id"])


@sync_operation(SyncEntityType.ORGANIZATION, "upsert")
def _upsert_organization(db: Session, payload: dict[str, Any]) -> None:
    get_analytics_sink().upsert_organization(
        payload["workos_id"],
        local_id=payload.get("local_id"),
        name=payload.get("name"),
    )


@sync_operation(SyncEntityType.ORGANIZATION, "delete")
def _delete_organization(db: Session, payload: dict[str, Any]) -> None:
    get_analytics_sink().delete_organization(payload["workos_id"])


@sync_operation(SyncEntityType.SUBSCRIPTION, "update")
def _update_subscription(db: Session, payload: dict[str, Any]) -> None:
    get_analytics_sink().update_organization_subscription(
        payload["organization_workos_id"],
        tier=payload.get("tier"),
        status=payload.get("status"),
    )


def get_operation(entity_type: str, operation: str) -> SyncOperation:
    try:
        return _OPERATIONS[(entity_type, operation)]
    except KeyError as exc:
        raise SyncPermanentError(f"Unknown sync operation {entity_type}.{operation}") from exc


# ----------------------------------------------------------------------
# Kickoff
# ----------------------------------------------------------------------
def sync_entity(
    db: Session,
    entity_type: SyncEntityType | str,
    entity_id: str,
    operation: str,
    payload: dict[str, Any],
    *,
    webhook_event: str | None = None,
) -> str:
    """
    Start a sync workflow and return its id. Never raises: the caller's
    primary write already succeeded and must not be undone by the mirror.
    """
    entity_type = SyncEntityType(entity_type).value
    job = SyncJob(
        workflow_id=uuid.uuid4().hex,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload,
        webhook_event=webhook_event,
    )
    try:
        db.add(
            SyncStatus(
                entity_type=entity_type,
                entity_id=entity_id,
                status=SyncRunStatus.PENDING.value,
                webhook_event=webhook_event,
                workflow_id=job.workflow_id,
                started_at=utcnow(),
            )
        )
        db.commit()
        _schedule(job, countdown=None)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.exception("Failed to start %s sync for %s %s", operation, entity_type, entity_id)
        try:
            SyncWorkflow(db).dead_letter(job, exc, retryable=True)
        except Exception:  # pylint: disable=broad-except
            db.rollback()
            logger.exception("Could not dead-letter workflow %s", job.workflow_id)
    return job.workflow_id


def sync_user(db: Session, user: User, *, webhook_event: str | None = None) -> str:
    return sync_entity(
        db,
        SyncEntityType.USER,
        user.external_id,
        "upsert",
        {
            "workos_id": user.external_id,
            "local_id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
        },
        webhook_event=webhook_event,
    )


def sync_user_deleted(db: Session, external_id: str, *, webhook_event: str | None = None) -> str:
    return sync_entity(
        db, SyncEntityType.USER, external_id, "delete", {"workos_id": external_id}, webhook_event=webhook_event
    )


def sync_organization(db: Session, org: Organization, *, webhook_event: str | None = None) -> str:
    return sync_entity(
        db,
        SyncEntityType.ORGANIZATION,
        org.external_id,
        "upsert",
        {"workos_id": org.external_id, "local_id": org.id, "name": org.name},
        webhook_event=webhook_event,
    )


def sync_organization_deleted(db: Session, external_id: str, *, webhook_event: str | None = None) -> str:
    return sync_entity(
        db,
        SyncEntityType.ORGANIZATION,
        external_id,
        "delete",
        {"workos_id": external_id},
        webhook_event=webhook_event,
    )


def sync_organization_subscription(
    db: Session,
    org_external_id: str,
    *,
    tier: str | None,
    status: str | None,
    webhook_event: str | None = None,
) -> str:
    return sync_entity(
        db,
        SyncEntityType.SUBSCRIPTION,
        org_external_id,
        "update",
        {"organization_workos_id": org_external_id, "tier": tier, "status": status},
        webhook_event=webhook_event,
    )


def _schedule(job: SyncJob, countdown: float | None) -> None:
    from tenantsync.tasks import sync as sync_tasks

    enqueue(sync_tasks.run_entity_sync, countdown=countdown, **job.as_task_kwargs())


# ----------------------------------------------------------------------
# Attempt execution
# ----------------------------------------------------------------------
class SyncWorkflow:
    def __init__(self, db: Session, policy: RetryPolicy | None = None) -> None:
        self.db = db
        self.policy = policy or RetryPolicy.from_settings()

    def run_attempt(self, job: SyncJob) -> str:
        """
        Execute one attempt. Returns "success", "rescheduled" or "dead_lettered".
        Errors are converted here and never raised to the task runner.
        """
        try:
            operation = get_operation(job.entity_type, job.operation)
            operation(self.db, job.payload)
        except SyncPermanentError as exc:
            self.db.rollback()
            logger.warning("Sync %s (%s %s) failed permanently: %s", job.workflow_id, job.entity_type, job.entity_id, exc)
            self.dead_letter(job, exc, retryable=False)
            return "dead_lettered"
        except Exception as exc:  # pylint: disable=broad-except
            self.db.rollback()
            if self.policy.exhausted(job.retry_count):
                logger.warning(
                    "Sync %s (%s %s) exhausted %s retries: %s",
                    job.workflow_id,
                    job.entity_type,
                    job.entity_id,
                    job.retry_count,
                    exc,
                )
                self.dead_letter(job, exc, retryable=True)
                return "dead_lettered"

            delay = self.policy.delay_for(job.retry_count)
            level = logging.INFO if isinstance(exc, SyncDependencyNotReady) else logging.WARNING
            logger.log(
                level,
                "Sync %s (%s %s) attempt %s failed, retrying in %ss: %s",
                job.workflow_id,
                job.entity_type,
                job.entity_id,
                job.retry_count + 1,
                delay,
                exc,
            )
            _schedule(job.next_attempt(), countdown=delay)
            return "rescheduled"

        self._finish(job.workflow_id, SyncRunStatus.SUCCESS, error=None)
        return "success"

    def dead_letter(self, job: SyncJob, exc: Exception, *, retryable: bool) -> DeadLetterEntry | None:
        message = str(exc)[:MAX_ERROR_MESSAGE_LENGTH] or exc.__class__.__name__
        entry = DeadLetterEntry(
            workflow_id=job.workflow_id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            error=message,
            context={
                "operation": job.operation,
                "payload": job.payload,
                "retry_count": job.retry_count,
                "webhook_event": job.webhook_event,
                "error_type": exc.__class__.__name__,
            },
            retryable=retryable,
            retry_count=0,
            created_at=utcnow(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except IntegrityError as exc_:
            self.db.rollback()
            if not is_unique_violation(exc_):
                raise
            logger.info("Dead letter for workflow %s already recorded", job.workflow_id)
            entry = None
        self._finish(job.workflow_id, SyncRunStatus.FAILED, error=message)
        return entry

    def _finish(self, workflow_id: str, status: SyncRunStatus, error: str | None) -> None:
        record = self.db.query(SyncStatus).filter(SyncStatus.workflow_id == workflow_id).first()
        if record is None:
            return
        completed_at = utcnow()
        record.status = status.value
        record.error = error
        record.completed_at = completed_at
        started_at = as_utc(record.started_at)
        if started_at is not None:
            record.duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        self.db.commit()


# ----------------------------------------------------------------------
# Stats
# ----------------------------------------------------------------------
def get_sync_stats(db: Session, since: datetime | None = None) -> dict[str, Any]:
    query = db.query(SyncStatus)
    if since is not None:
        query = query.filter(SyncStatus.started_at >= since)

    counts = dict(
        query.with_entities(SyncStatus.status, func.count(SyncStatus.id)).group_by(SyncStatus.status).all()
    )
    unique_entities = (
        query.with_entities(SyncStatus.entity_type, SyncStatus.entity_id).distinct().count()
    )
    avg_duration = (
        query.with_entities(func.avg(SyncStatus.duration_ms))
        .filter(SyncStatus.duration_ms.isnot(None))
        .scalar()
    )
    dead_letter_count = db.query(DeadLetterEntry).filter(DeadLetterEntry.resolved_at.is_(None)).count()

    return {
        "total": sum(counts.values()),
        "pending": counts.get(SyncRunStatus.PENDING.value, 0),
        "success": counts.get(SyncRunStatus.SUCCESS.value, 0),
        "failed": counts.get(SyncRunStatus.FAILED.value, 0),
        "unique_entities": unique_entities,
        "avg_duration_ms": int(round(avg_duration)) if avg_duration is not None else None,
        "dead_letter_count": dead_letter_count,
    }
