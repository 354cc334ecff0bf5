"""
Write-only mirror of directory state into the analytical datastore.

Every write is keyed by the identity provider id so replays and
out-of-order retries converge on the same row.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Callable

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tenantsync.analytics.models import AnalyticsOrganization, AnalyticsUser
from tenantsync.core.config import settings
from tenantsync.core.database import engine_kwargs
from tenantsync.core.errors import SyncDependencyNotReady

logger = logging.getLogger(__name__)

_USER_FIELDS = ("local_id", "email", "first_name", "last_name")
_ORGANIZATION_FIELDS = ("local_id", "name")


class AnalyticsSink:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def upsert_user(self, workos_id: str, **fields: Any) -> None:
        self._upsert(AnalyticsUser, workos_id, _pick(fields, _USER_FIELDS))

    def delete_user(self, workos_id: str) -> bool:
        return self._delete(AnalyticsUser, workos_id)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------
    def upsert_organization(self, workos_id: str, **fields: Any) -> None:
        self._upsert(AnalyticsOrganization, workos_id, _pick(fields, _ORGANIZATION_FIELDS))

    def delete_organization(self, workos_id: str) -> bool:
        return self._delete(AnalyticsOrganization, workos_id)

    def update_organization_subscription(self, workos_id: str, *, tier: str | None, status: str | None) -> None:
        db = self._session_factory()
        try:
            row = db.query(AnalyticsOrganization).filter(AnalyticsOrganization.workos_id == workos_id).first()
            if row is None:
                raise SyncDependencyNotReady(f"Organization {workos_id} not mirrored yet")
            row.subscription_tier = tier
            row.subscription_status = status
            db.commit()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _upsert(self, model, workos_id: str, values: dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            for attempt in range(2):
                row = db.query(model).filter(model.workos_id == workos_id).first()
                if row is None:
                    row = model(workos_id=workos_id)
                    db.add(row)
                for key, value in values.items():
                    setattr(row, key, value)
                try:
                    db.commit()
                    return
                except IntegrityError:
                    # Lost an insert race; the second pass takes the update path.
                    db.rollback()
                    if attempt:
                        raise
        finally:
            db.close()

    def _delete(self, model, workos_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(model).filter(model.workos_id == workos_id).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()
        if not deleted:
            logger.info("%s %s already absent from analytics store", model.__tablename__, workos_id)
        return bool(deleted)


def _pick(fields: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {key: fields[key] for key in allowed if key in fields}


@lru_cache(maxsize=1)
def get_analytics_sink() -> AnalyticsSink:
    url = settings.analytics_database_url
    analytics_engine = create_engine(url, **engine_kwargs(url))
    return AnalyticsSink(sessionmaker(autocommit=False, autoflush=False, bind=analytics_engine))
