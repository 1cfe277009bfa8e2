from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from common.alpha_vantage import AlphaVantageClient
from common.config import Settings
from common.delta import collect_changes
from common.errors import AuthError, PatchError, ScanError
from common.graph import GraphClient, GraphError
from common.grid import build_patch
from common.identity import CredentialRenewer
from common.resolver import PlaceholderResolver
from state.locks import KeyedLocks
from state.s3_store import OptimisticLockError, SubscriptionStore


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncContext:
    """Collaborators for a synchronization pass; built once per Lambda container."""

    store: SubscriptionStore
    renewer: CredentialRenewer
    resolve: Callable[[str], str]
    graph_factory: Callable[[str], GraphClient] = GraphClient
    sentinel_prefix: str = "!roland"
    tracked_extension: str = ".xlsx"
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    clock: Callable[[], datetime] = _utcnow
    quotes: Optional[AlphaVantageClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncContext":
        quotes = AlphaVantageClient(settings.alpha_vantage_api_key) if settings.alpha_vantage_api_key else None
        return cls(
            store=SubscriptionStore(
                bucket=settings.state_bucket,
                prefix=settings.state_prefix,
                fernet_key=settings.fernet_key,
            ),
            renewer=CredentialRenewer(
                settings.client_id,
                settings.client_secret,
                tenant=settings.tenant,
                scope=settings.scope,
            ),
            resolve=PlaceholderResolver(settings.sentinel_prefix, quotes=quotes),
            sentinel_prefix=settings.sentinel_prefix,
            tracked_extension=settings.tracked_extension,
            quotes=quotes,
        )

    def close(self) -> None:
        self.renewer.close()
        if self.quotes is not None:
            self.quotes.close()


def scan_and_patch(
    graph: GraphClient,
    file_id: str,
    *,
    prefix: str,
    resolve: Callable[[str], str],
) -> int:
    """
    Resolve every placeholder cell in the first worksheet's used range.

    Returns the number of cells written. Zero means no placeholder matched and
    no PATCH was issued. Read/scan problems raise ScanError, a rejected update
    raises PatchError; both leave the document as it was.
    """
    try:
        sheet = graph.first_worksheet(file_id)
        used = graph.used_range(file_id, sheet.id)
    except GraphError as exc:
        raise ScanError(f"Could not read used range of {file_id}: {exc}") from exc

    patch = build_patch(used.values, prefix, resolve)
    if patch.is_empty:
        return 0

    try:
        graph.patch_range(file_id, sheet.id, used.local_address, patch.to_payload())
    except GraphError as exc:
        raise PatchError(f"Range update of {file_id} {used.address} rejected: {exc}") from exc
    logger.info("Patched %d cell(s) in %s %s", patch.replacements, file_id, used.address)
    return patch.replacements


def sync_subscription(subscription_id: str, ctx: SyncContext) -> Dict[str, Any]:
    """
    One synchronization pass for a subscription.

    - Loads the record; an unknown subscription is a logged no-op.
    - Stamps the notification time and renews credentials (failure non-fatal).
    - Walks the delta feed; FeedError propagates and nothing is persisted, so
      the same window is replayed on the next notification.
    - Scans/patches each changed workbook, isolating per-file failures.
    - Persists the record once, with an ETag precondition.

    Returns: {"ok": True, "files": N, "patched": P, "failed": F, "persisted": bool}.
    """
    with ctx.locks.hold(subscription_id):
        state, etag = ctx.store.read(subscription_id)
        if state is None:
            logger.info("No record for subscription %s; ignoring notification", subscription_id)
            return {"ok": True, "files": 0, "patched": 0, "failed": 0, "persisted": False}

        state.last_notification_at = ctx.clock()

        try:
            ctx.renewer.renew(state)
        except AuthError as exc:
            logger.warning("Credential renewal failed for %s, using stored token: %s", subscription_id, exc)

        patched = 0
        failed = 0
        with ctx.graph_factory(state.access_token) as graph:
            delta = collect_changes(graph, state.resume_cursor, extension=ctx.tracked_extension)
            state.advance_cursor(delta.cursor)

            for file_id in delta.file_ids:
                try:
                    if scan_and_patch(graph, file_id, prefix=ctx.sentinel_prefix, resolve=ctx.resolve):
                        patched += 1
                except (ScanError, PatchError) as exc:
                    failed += 1
                    logger.warning("Skipping %s for subscription %s: %s", file_id, subscription_id, exc)
                except Exception:
                    failed += 1
                    logger.exception("Unexpected failure on %s for subscription %s", file_id, subscription_id)

        persisted = True
        try:
            ctx.store.write(state, if_match=etag)
        except OptimisticLockError as exc:
            # A concurrent pass stored its record first; its cursor stands.
            persisted = False
            logger.warning("Record for %s changed during the pass, not overwriting: %s", subscription_id, exc)

    return {
        "ok": True,
        "files": len(delta.file_ids),
        "patched": patched,
        "failed": failed,
        "persisted": persisted,
    }


__all__ = ["SyncContext", "scan_and_patch", "sync_subscription"]
