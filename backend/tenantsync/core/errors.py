from __future__ import annotations


class SyncDependencyNotReady(Exception):
    """
    Something a sync needs has not landed yet (usually a webhook-ordering race
    between entity types). Retried with backoff.
    """


class SyncPermanentError(Exception):
    """A sync that can never succeed as submitted. Dead-lettered without retry."""
