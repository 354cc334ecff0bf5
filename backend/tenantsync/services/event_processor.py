from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenantsync.core.clock import utcnow
from tenantsync.models.events import EventFailure
from tenantsync.services import sync_workflow
from tenantsync.services.directory import DirectoryService
from tenantsync.services.ledger import IdempotencyLedger, is_unique_violation

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000

# Closed set of identity-provider events the pipeline understands. The poller
# filters on this list; anything else reaching process() is a no-op.
HANDLED_EVENT_TYPES: tuple[str, ...] = (
    "user.created",
    "user.updated",
    "user.deleted",
    "organization.created",
    "organization.updated",
    "organization.deleted",
    "organization_membership.created",
    "organization_membership.updated",
    "organization_membership.deleted",
    "organization_domain.verified",
    "organization_domain.verification_failed",
    "role.created",
    "role.updated",
    "role.deleted",
)


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    skipped: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "skipped": self.skipped}
        if self.error is not None:
            out["error"] = self.error
        return out


class EventProcessor:
    """
    Check the ledger, dispatch on event type, record completion.

    A handler failure is returned as a result (never raised) and leaves the
    event unmarked so a later delivery can try again.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self.ledger = IdempotencyLedger(db)
        self.directory = DirectoryService(db)
        self._handlers: dict[str, Callable[[str, dict[str, Any]], None]] = {
            "user.created": self._handle_user_upsert,
            "user.updated": self._handle_user_upsert,
            "user.deleted": self._handle_user_deleted,
            "organization.created": self._handle_organization_upsert,
            "organization.updated": self._handle_organization_upsert,
            "organization.deleted": self._handle_organization_deleted,
            "organization_membership.created": self._handle_membership_upsert,
            "organization_membership.updated": self._handle_membership_upsert,
            "organization_membership.deleted": self._handle_membership_deleted,
            "organization_domain.verified": self._handle_domain_verified,
            "organization_domain.verification_failed": self._handle_domain_failed,
            "role.created": self._handle_role_upsert,
            "role.updated": self._handle_role_upsert,
            "role.deleted": self._handle_role_deleted,
        }

    def process(self, event_id: str, event: dict[str, Any], source: str) -> ProcessResult:
        event_type = str(event.get("event") or "")
        try:
            if self.ledger.is_processed(event_id):
                logger.info("Event %s (%s) already processed; skipping [%s]", event_id, event_type, source)
                return ProcessResult(success=True, skipped=True)

            handler = self._handlers.get(event_type)
            if handler is None:
                logger.warning("Unhandled event type %s (%s) [%s]; acknowledging", event_type, event_id, source)
            else:
                handler(event_type, event.get("data") or {})

            self.ledger.mark_processed(event_id, event_type)
        except Exception as exc:  # pylint: disable=broad-except
            self.db.rollback()
            logger.exception("Event %s (%s) failed [%s]", event_id, event_type, source)
            self._record_failure(event_id, event_type, source, event, exc)
            return ProcessResult(success=False, error=str(exc) or exc.__class__.__name__)

        self._clear_failure(event_id)
        logger.info("Processed event %s (%s) [%s]", event_id, event_type, source)
        return ProcessResult(success=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _handle_user_upsert(self, event_type: str, data: dict[str, Any]) -> None:
        user = self.directory.upsert_user(data)
        sync_workflow.sync_user(self.db, user, webhook_event=event_type)

    def _handle_user_deleted(self, event_type: str, data: dict[str, Any]) -> None:
        external_id = data["id"]
        if not self.directory.delete_user(external_id):
            logger.info("User %s already absent locally", external_id)
        sync_workflow.sync_user_deleted(self.db, external_id, webhook_event=event_type)

    def _handle_organization_upsert(self, event_type: str, data: dict[str, Any]) -> None:
        org = self.directory.upsert_organization(data)
        sync_workflow.sync_organization(self.db, org, webhook_event=event_type)

    def _handle_organization_deleted(self, event_type: str, data: dict[str, Any]) -> None:
        external_id = data["id"]
        if not self.directory.delete_organization(external_id):
            logger.info("Organization %s already absent locally", external_id)
        sync_workflow.sync_organization_deleted(self.db, external_id, webhook_event=event_type)

    def _handle_membership_upsert(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.upsert_membership(data)

    def _handle_membership_deleted(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.delete_membership(data["id"])

    def _handle_domain_verified(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.set_domain_state(data, "verified")

    def _handle_domain_failed(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.set_domain_state(data, "failed")

    def _handle_role_upsert(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.upsert_role(data)

    def _handle_role_deleted(self, event_type: str, data: dict[str, Any]) -> None:
        self.directory.delete_role(data["slug"])

    # ------------------------------------------------------------------
    # Failure ledger
    # ------------------------------------------------------------------
    def _record_failure(
        self,
        event_id: str,
        event_type: str,
        source: str,
        event: dict[str, Any],
        exc: Exception,
    ) -> None:
        message = (str(exc) or exc.__class__.__name__)[:MAX_ERROR_MESSAGE_LENGTH]
        try:
            failure = self.db.query(EventFailure).filter(EventFailure.event_id == event_id).first()
            now = utcnow()
            if failure is None:
                failure = EventFailure(
                    event_id=event_id,
                    event_type=event_type or "unknown",
                    payload=event,
                    attempts=0,
                    first_failed_at=now,
                )
                self.db.add(failure)
            failure.source = source
            failure.error_message = message
            failure.attempts = (failure.attempts or 0) + 1
            failure.last_failed_at = now
            self.db.commit()
        except IntegrityError as exc_:
            self.db.rollback()
            if not is_unique_violation(exc_):
                logger.exception("Could not record failure for event %s", event_id)
        except Exception:  # pylint: disable=broad-except
            self.db.rollback()
            logger.exception("Could not record failure for event %s", event_id)

    def _clear_failure(self, event_id: str) -> None:
        try:
            deleted = (
                self.db.query(EventFailure)
                .filter(EventFailure.event_id == event_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except Exception:  # pylint: disable=broad-except
            self.db.rollback()
            logger.exception("Could not clear failure record for event %s", event_id)
            return
        if deleted:
            logger.info("Event %s recovered after earlier failure", event_id)

    # ------------------------------------------------------------------
    # Failure ledger queries
    # ------------------------------------------------------------------
    def list_failures(self, limit: int = 50) -> list[EventFailure]:
        return (
            self.db.query(EventFailure)
            .order_by(EventFailure.last_failed_at.desc(), EventFailure.id.desc())
            .limit(limit)
            .all()
        )

    def replay_failure(self, event_id: str) -> ProcessResult | None:
        failure = self.db.query(EventFailure).filter(EventFailure.event_id == event_id).first()
        if failure is None:
            return None
        return self.process(event_id, dict(failure.payload or {}), source="replay")
