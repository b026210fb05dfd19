"""
Integration Repository.

Sole writer of Integration, ProductMapping, SyncLog and SyncConflict rows.
Pure persistence: no business rules beyond the invariants the tables carry
(one active Integration per tenant/provider, 1:1 mappings, forward-only
SyncLog status). Every write is safe to repeat with the same input.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.fernet import InvalidToken
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pos_sync.core.models import (
    ConflictRecord, Direction, Scope, SyncStatus, TokenSet, as_utc, json_safe, utcnow,
)
from pos_sync.database.models import (
    Integration, OAuthAuthorization, ProductMapping, SyncConflict, SyncLog,
)
from pos_sync.security.encryption import TokenEncryptor
from pos_sync.utils.exceptions import (
    ConfigurationError, InvalidStatusTransition, RepositoryError, ValidationError,
)
from pos_sync.utils.logger import get_logger


logger = get_logger(__name__)

_UNSET = object()

COUNT_COLUMNS = {
    "created": SyncLog.created_count,
    "updated": SyncLog.updated_count,
    "skipped": SyncLog.skipped_count,
    "conflicted": SyncLog.conflicted_count,
    "failed": SyncLog.failed_count,
}


def as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError("Invalid identifier", field="id", value=value)


def repository_operation(table: str):
    """Wrap SQLAlchemy failures into RepositoryError and roll the session back."""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"Repository operation {func.__name__} on {table} failed: {e}")
                raise RepositoryError(
                    f"{func.__name__} failed: {e.__class__.__name__}",
                    operation=func.__name__,
                    table=table
                ) from e
        return wrapper
    return decorator


class IntegrationRepository:
    """Persistence for integrations, product mappings, sync logs and conflicts."""

    def __init__(self, session: Session, encryptor: Optional[TokenEncryptor] = None):
        self.session = session
        self.encryptor = encryptor
        self._depth = 0

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        if self._depth == 0:
            self.session.commit()
        else:
            self.session.flush()

    @contextmanager
    def transaction(self):
        """
        Group several writes into one commit.

        Nested blocks join the outermost one; any exception rolls the whole
        unit back.
        """
        self._depth += 1
        try:
            yield self.session
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                self.session.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self.session.commit()
                except SQLAlchemyError as e:
                    self.session.rollback()
                    raise RepositoryError(f"Commit failed: {e.__class__.__name__}",
                                          operation="commit") from e

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    def _require_encryptor(self) -> TokenEncryptor:
        if self.encryptor is None:
            raise RepositoryError("Token encryptor not configured", operation="encrypt",
                                  table="integrations")
        return self.encryptor

    @repository_operation("integrations")
    def get_integration(self, integration_id) -> Optional[Integration]:
        return self.session.get(Integration, as_uuid(integration_id))

    @repository_operation("integrations")
    def get_active_integration(self, tenant_id: str, provider: str) -> Optional[Integration]:
        return (
            self.session.query(Integration)
            .filter(
                Integration.tenant_id == tenant_id,
                Integration.provider == provider,
                Integration.is_active.is_(True),
            )
            .first()
        )

    @repository_operation("integrations")
    def list_active_integrations(self, tenant_id: str) -> List[Integration]:
        return (
            self.session.query(Integration)
            .filter(Integration.tenant_id == tenant_id, Integration.is_active.is_(True))
            .order_by(Integration.created_at)
            .all()
        )

    @repository_operation("integrations")
    def list_expiring_integrations(self, before: datetime) -> List[Integration]:
        """Active integrations whose access token expires before ``before``."""
        return (
            self.session.query(Integration)
            .filter(
                Integration.is_active.is_(True),
                Integration.token_expires_at.isnot(None),
                Integration.token_expires_at <= before,
            )
            .order_by(Integration.token_expires_at)
            .all()
        )

    @repository_operation("integrations")
    def reload_integration(self, integration: Integration) -> Integration:
        """Re-read ``integration`` from the database (another worker may have refreshed it)."""
        self.session.refresh(integration)
        return integration

    def _apply_tokens(self, integration: Integration, token_set: TokenSet) -> None:
        encryptor = self._require_encryptor()
        integration.access_token_encrypted = encryptor.encrypt(token_set.access_token)
        integration.refresh_token_encrypted = (
            encryptor.encrypt(token_set.refresh_token) if token_set.refresh_token else None
        )
        integration.token_expires_at = token_set.expires_at
        if token_set.scopes:
            integration.scopes = list(token_set.scopes)

    @repository_operation("integrations")
    def create_integration(self, tenant_id: str, provider: str, token_set: TokenSet,
                           environment: str = "sandbox",
                           location_id: Optional[str] = None) -> Integration:
        """
        Persist a connection after a successful code exchange.

        Reconnecting the same merchant updates the active row in place; a
        different merchant replaces it (the old row is deactivated).

        Returns:
            The active Integration
        """
        existing = (
            self.session.query(Integration)
            .filter(
                Integration.tenant_id == tenant_id,
                Integration.provider == provider,
                Integration.is_active.is_(True),
            )
            .with_for_update()
            .first()
        )

        if existing is not None:
            same_account = (existing.merchant_id is None or token_set.merchant_id is None
                            or existing.merchant_id == token_set.merchant_id)
            if same_account:
                self._apply_tokens(existing, token_set)
                existing.merchant_id = token_set.merchant_id or existing.merchant_id
                existing.environment = environment
                if location_id:
                    existing.location_id = location_id
                existing.last_refreshed_at = utcnow()
                self._commit()
                logger.info(f"Updated integration {existing.id} for tenant {tenant_id} ({provider})")
                return existing

            existing.is_active = False
            existing.disconnected_at = utcnow()
            existing.disconnect_reason = "replaced_by_new_account"
            self.session.flush()

        integration = Integration(
            tenant_id=tenant_id,
            provider=provider,
            environment=environment,
            merchant_id=token_set.merchant_id,
            location_id=location_id,
            is_active=True,
        )
        self._apply_tokens(integration, token_set)
        self.session.add(integration)
        self._commit()

        logger.info(f"Created integration {integration.id} for tenant {tenant_id} ({provider})")
        return integration

    @repository_operation("integrations")
    def save_tokens(self, integration: Integration, token_set: TokenSet) -> Integration:
        self._apply_tokens(integration, token_set)
        if token_set.merchant_id:
            integration.merchant_id = token_set.merchant_id
        integration.last_refreshed_at = utcnow()
        self._commit()
        return integration

    def get_token_set(self, integration: Integration) -> TokenSet:
        """Decrypt the stored credentials of ``integration``."""
        encryptor = self._require_encryptor()
        try:
            access_token = encryptor.decrypt(integration.access_token_encrypted)
            refresh_token = (encryptor.decrypt(integration.refresh_token_encrypted)
                             if integration.refresh_token_encrypted else None)
        except InvalidToken as e:
            raise ConfigurationError("Stored tokens cannot be decrypted with the configured keys",
                                     {"integration_id": str(integration.id)}) from e
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=as_utc(integration.token_expires_at),
            merchant_id=integration.merchant_id,
            scopes=list(integration.scopes or []),
        )

    @repository_operation("integrations")
    def deactivate_integration(self, integration: Integration, reason: str) -> Integration:
        if integration.is_active:
            integration.is_active = False
            integration.disconnected_at = utcnow()
            integration.disconnect_reason = reason[:255]
            self._commit()
            logger.info(f"Deactivated integration {integration.id}: {reason}")
        return integration

    @repository_operation("integrations")
    def touch_last_sync(self, integration: Integration, when: Optional[datetime] = None) -> None:
        integration.last_sync_at = when or utcnow()
        self._commit()

    # ------------------------------------------------------------------
    # Pending authorizations
    # ------------------------------------------------------------------

    @repository_operation("oauth_authorizations")
    def create_authorization_state(self, tenant_id: str, provider: str, state_hash: str,
                                   expires_at: datetime) -> OAuthAuthorization:
        existing = (
            self.session.query(OAuthAuthorization)
            .filter(OAuthAuthorization.state_hash == state_hash)
            .first()
        )
        if existing is not None:
            return existing

        authorization = OAuthAuthorization(
            tenant_id=tenant_id,
            provider=provider,
            state_hash=state_hash,
            expires_at=expires_at,
        )
        self.session.add(authorization)
        self._commit()
        return authorization

    @repository_operation("oauth_authorizations")
    def consume_authorization_state(self, state_hash: str, provider: str,
                                    now: Optional[datetime] = None) -> Optional[OAuthAuthorization]:
        """
        Mark a pending state as used.

        Returns:
            The authorization, or None if unknown, expired or already consumed
        """
        now = now or utcnow()
        authorization = (
            self.session.query(OAuthAuthorization)
            .filter(
                OAuthAuthorization.state_hash == state_hash,
                OAuthAuthorization.provider == provider,
            )
            .with_for_update()
            .first()
        )
        if authorization is None or not authorization.is_valid(now):
            return None

        authorization.consumed_at = now
        self._commit()
        return authorization

    @repository_operation("oauth_authorizations")
    def has_pending_authorization(self, tenant_id: str, provider: str,
                                  now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.session.query(OAuthAuthorization)
            .filter(
                OAuthAuthorization.tenant_id == tenant_id,
                OAuthAuthorization.provider == provider,
                OAuthAuthorization.consumed_at.is_(None),
                OAuthAuthorization.expires_at > now,
            )
            .first()
        ) is not None

    @repository_operation("oauth_authorizations")
    def delete_expired_authorization_states(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        deleted = (
            self.session.query(OAuthAuthorization)
            .filter(OAuthAuthorization.expires_at <= now)
            .delete(synchronize_session=False)
        )
        self._commit()
        return deleted

    # ------------------------------------------------------------------
    # Product mappings
    # ------------------------------------------------------------------

    @repository_operation("product_mappings")
    def get_mapping(self, integration_id, external_id: str) -> Optional[ProductMapping]:
        return (
            self.session.query(ProductMapping)
            .filter(
                ProductMapping.integration_id == as_uuid(integration_id),
                ProductMapping.external_product_id == external_id,
            )
            .first()
        )

    @repository_operation("product_mappings")
    def get_mapping_by_platform_id(self, integration_id, platform_id: str) -> Optional[ProductMapping]:
        return (
            self.session.query(ProductMapping)
            .filter(
                ProductMapping.integration_id == as_uuid(integration_id),
                ProductMapping.platform_product_id == str(platform_id),
            )
            .first()
        )

    @repository_operation("product_mappings")
    def list_mappings(self, integration_id) -> List[ProductMapping]:
        return (
            self.session.query(ProductMapping)
            .filter(ProductMapping.integration_id == as_uuid(integration_id))
            .order_by(ProductMapping.created_at)
            .all()
        )

    @repository_operation("product_mappings")
    def upsert_mapping(self, integration_id, external_id: str, platform_id: str,
                       variation_id: Optional[str] = None,
                       last_known_hash: Any = _UNSET,
                       last_inventory_hash: Any = _UNSET,
                       synced_at: Optional[datetime] = None) -> ProductMapping:
        """
        Insert or update the mapping keyed by (integration, external id).

        Raises:
            ValidationError: If the platform product is already mapped to a
                different external item in this integration.
        """
        integration_uuid = as_uuid(integration_id)
        platform_id = str(platform_id)

        mapping = (
            self.session.query(ProductMapping)
            .filter(
                ProductMapping.integration_id == integration_uuid,
                ProductMapping.external_product_id == external_id,
            )
            .with_for_update()
            .first()
        )

        other = (
            self.session.query(ProductMapping)
            .filter(
                ProductMapping.integration_id == integration_uuid,
                ProductMapping.platform_product_id == platform_id,
            )
            .first()
        )
        if other is not None and other.external_product_id != external_id:
            raise ValidationError(
                "Platform product is already mapped to another external item",
                field="platform_product_id",
                value=platform_id,
            )

        if mapping is None:
            mapping = ProductMapping(
                integration_id=integration_uuid,
                external_product_id=external_id,
                platform_product_id=platform_id,
            )
            self.session.add(mapping)
        else:
            mapping.platform_product_id = platform_id

        if variation_id is not None:
            mapping.external_variation_id = variation_id
        if last_known_hash is not _UNSET:
            mapping.last_known_hash = last_known_hash
        if last_inventory_hash is not _UNSET:
            mapping.last_inventory_hash = last_inventory_hash
        mapping.last_synced_at = synced_at or utcnow()

        self._commit()
        return mapping

    # ------------------------------------------------------------------
    # Sync logs
    # ------------------------------------------------------------------

    @repository_operation("sync_logs")
    def create_sync_log(self, integration: Integration, direction: Direction, scope: Scope,
                        dry_run: bool = False) -> SyncLog:
        sync_log = SyncLog(
            integration_id=integration.id,
            tenant_id=integration.tenant_id,
            provider=integration.provider,
            direction=Direction(direction).value,
            scope=Scope(scope).value,
            dry_run=dry_run,
            status=SyncStatus.QUEUED.value,
            item_results=[],
        )
        self.session.add(sync_log)
        self._commit()
        return sync_log

    @repository_operation("sync_logs")
    def get_sync_log(self, sync_log_id) -> Optional[SyncLog]:
        return self.session.get(SyncLog, as_uuid(sync_log_id))

    def _transition(self, sync_log: SyncLog, target: SyncStatus) -> bool:
        current = SyncStatus(sync_log.status)
        if current == target:
            return False
        if not current.can_transition_to(target):
            raise InvalidStatusTransition(
                f"SyncLog {sync_log.id} cannot move from {current.value} to {target.value}",
                operation="transition",
                table="sync_logs",
            )
        sync_log.status = target.value
        return True

    @repository_operation("sync_logs")
    def mark_sync_running(self, sync_log: SyncLog, started_at: Optional[datetime] = None) -> SyncLog:
        if self._transition(sync_log, SyncStatus.RUNNING):
            sync_log.started_at = started_at or utcnow()
            self._commit()
        return sync_log

    @repository_operation("sync_logs")
    def record_batch_result(self, sync_log: SyncLog, counts: Dict[str, int],
                            item_results: Iterable[Dict[str, Any]] = ()) -> SyncLog:
        """
        Add one batch's counts to a running SyncLog.

        Counts are applied with single-statement increments so concurrent
        completions never overwrite each other.
        """
        if SyncStatus(sync_log.status).is_terminal:
            raise InvalidStatusTransition(
                f"SyncLog {sync_log.id} is final and cannot be updated",
                operation="record_batch_result",
                table="sync_logs",
            )

        increments = {
            COUNT_COLUMNS[name].key: COUNT_COLUMNS[name] + int(value)
            for name, value in counts.items()
            if name in COUNT_COLUMNS and value
        }
        if increments:
            self.session.execute(
                update(SyncLog)
                .where(SyncLog.id == sync_log.id)
                .values(**increments)
                .execution_options(synchronize_session=False)
            )

        new_items = [json_safe(item) for item in item_results]
        if new_items:
            self.session.refresh(sync_log, ["item_results"])
            sync_log.item_results = list(sync_log.item_results or []) + new_items

        self._commit()
        self.session.refresh(sync_log)
        return sync_log

    @repository_operation("sync_logs")
    def finalize_sync_log(self, sync_log: SyncLog, status: SyncStatus,
                          error_summary: Optional[str] = None,
                          error_code: Optional[str] = None,
                          finished_at: Optional[datetime] = None) -> SyncLog:
        """
        Move a SyncLog to its terminal status and stamp ``finished_at`` once.

        Repeating the call with the status the log already has is a no-op.
        """
        status = SyncStatus(status)
        if not status.is_terminal:
            raise InvalidStatusTransition(f"{status.value} is not a terminal status",
                                          operation="finalize", table="sync_logs")
        if not self._transition(sync_log, status):
            return sync_log

        sync_log.finished_at = finished_at or utcnow()
        started = as_utc(sync_log.started_at) or as_utc(sync_log.created_at)
        if started is not None:
            sync_log.duration_ms = int((as_utc(sync_log.finished_at) - started).total_seconds() * 1000)
        sync_log.error_summary = error_summary
        sync_log.error_code = error_code
        self._commit()
        return sync_log

    @repository_operation("sync_logs")
    def list_sync_logs(self, tenant_id: str, page: int = 1, page_size: int = 20,
                       provider: Optional[str] = None) -> Tuple[List[SyncLog], int]:
        """
        Paginated SyncLog history of a tenant, newest first.

        Returns:
            (logs on the page, total number of logs)
        """
        page = max(1, page)
        page_size = max(1, min(page_size, 100))

        query = self.session.query(SyncLog).filter(SyncLog.tenant_id == tenant_id)
        if provider:
            query = query.filter(SyncLog.provider == provider)

        total = query.count()
        logs = (
            query.order_by(SyncLog.created_at.desc(), SyncLog.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return logs, total

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    @repository_operation("sync_conflicts")
    def save_conflict(self, integration_id, record: ConflictRecord,
                      sync_log_id=None) -> SyncConflict:
        """Upsert the open conflict for (mapping or external item, field)."""
        query = self.session.query(SyncConflict).filter(
            SyncConflict.integration_id == as_uuid(integration_id),
            SyncConflict.field == record.field,
            SyncConflict.status == "pending_review",
        )
        if record.mapping_id:
            query = query.filter(SyncConflict.mapping_id == as_uuid(record.mapping_id))
        else:
            query = query.filter(SyncConflict.external_product_id == record.external_id)

        conflict = query.first()
        if conflict is None:
            conflict = SyncConflict(
                integration_id=as_uuid(integration_id),
                mapping_id=as_uuid(record.mapping_id),
                external_product_id=record.external_id,
                platform_product_id=record.platform_id,
                field=record.field,
                status="pending_review",
            )
            self.session.add(conflict)

        conflict.external_value = json_safe(record.external_value)
        conflict.platform_value = json_safe(record.platform_value)
        conflict.reason = record.reason
        conflict.sync_log_id = as_uuid(sync_log_id)
        self._commit()
        return conflict

    @repository_operation("sync_conflicts")
    def list_pending_conflicts(self, integration_id) -> List[SyncConflict]:
        return (
            self.session.query(SyncConflict)
            .filter(
                SyncConflict.integration_id == as_uuid(integration_id),
                SyncConflict.status == "pending_review",
            )
            .order_by(SyncConflict.created_at)
            .all()
        )

    @repository_operation("sync_conflicts")
    def resolve_conflict(self, conflict_id, resolved_value: Any) -> Optional[SyncConflict]:
        conflict = self.session.get(SyncConflict, as_uuid(conflict_id))
        if conflict is None:
            return None
        if conflict.status != "resolved":
            conflict.status = "resolved"
            conflict.resolved_value = json_safe(resolved_value)
            conflict.resolved_at = utcnow()
            self._commit()
        return conflict
