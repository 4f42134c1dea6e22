"""
Transfer Orchestrator.

============================================================
PURPOSE
============================================================
Records every table-scoped data movement and enforces its
state machine, including the human approval workflow.

- create: requires_approval fixed once from connection policy
- request_approval / approve / deny / expire_pending_approvals
- start / update_progress / complete / fail / cancel
- audit queries and statistics

CONCURRENCY:
Every transition is a conditional UPDATE on the current status
(compare-and-set), so a sweep, an admin and a running transfer
can race without double-processing a row.

============================================================
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from connections import policy
from connections.registry import ConnectionRegistry
from core.clock import ClockProtocol, SystemClock
from core.exceptions import (
    ApprovalExpiredError,
    InvalidTransitionError,
    TransferNotFoundError,
    ValidationError,
)
from core.settings import SyncConfig
from database.engine import Database
from database.models import SyncConnection, SyncTransfer
from sync_data.codec import escape_identifier
from sync_data.types import ConflictStrategy
from transfers.state_machine import StateTransitionEvent, sources_for
from transfers.types import (
    ACTIVE_STATUSES,
    COUNTER_FIELDS,
    TransferDirection,
    TransferStatus,
)


logger = logging.getLogger(__name__)


TransferRef = Union[int, SyncTransfer]

S = TransferStatus


def _transfer_id(transfer: TransferRef) -> int:
    return transfer.id if isinstance(transfer, SyncTransfer) else int(transfer)


def _values(statuses: Iterable[TransferStatus]) -> List[str]:
    return sorted(s.value for s in statuses)


class TransferOrchestrator:
    """
    Service owning the sync_transfers table.

    Usage:
        orchestrator = TransferOrchestrator(db, registry=registry)
        transfer = orchestrator.create("users", "send", connection=conn)
        if transfer.requires_approval:
            orchestrator.request_approval(transfer)
        orchestrator.start(transfer)
        orchestrator.update_progress(transfer, records_transferred=500)
        orchestrator.complete(transfer)
    """

    def __init__(
        self,
        db: Database,
        registry: Optional[ConnectionRegistry] = None,
        config: Optional[SyncConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._db = db
        self._registry = registry
        self._config = config or SyncConfig()
        self._clock = clock or (registry.clock if registry else SystemClock())
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)

    # =========================================================
    # CREATE
    # =========================================================

    def create(
        self,
        table: str,
        direction: Union[TransferDirection, str],
        connection: Optional[SyncConnection] = None,
        conflict_strategy: Optional[Union[ConflictStrategy, str]] = None,
        session_code: Optional[str] = None,
        remote_site_url: Optional[str] = None,
        records_requested: int = 0,
        requester_ip: Optional[str] = None,
        requester_user_agent: Optional[str] = None,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        requires_approval: Optional[bool] = None,
    ) -> SyncTransfer:
        """
        Create a pending transfer.

        requires_approval is computed here from the connection's
        approval mode and never re-evaluated. Without a connection
        (pairing-code transfers) no approval is required unless the
        caller says so.
        """
        table = escape_identifier(table)
        try:
            direction = TransferDirection(direction)
        except ValueError as e:
            raise ValidationError(
                f"Unknown transfer direction: {direction!r}",
                errors={"direction": "invalid"},
            ) from e

        if conflict_strategy is None:
            conflict_strategy = (
                connection.default_conflict_strategy if connection else ConflictStrategy.SKIP
            )
        strategy = ConflictStrategy.parse(conflict_strategy)

        if requires_approval is None:
            requires_approval = policy.requires_approval(connection, table) if connection else False

        if records_requested < 0:
            raise ValidationError("records_requested cannot be negative",
                                  errors={"records_requested": "invalid"})

        now = self._clock.now()
        transfer = SyncTransfer(
            direction=direction.value,
            connection_id=connection.id if connection else None,
            session_code=session_code,
            remote_site_url=remote_site_url or (connection.site_url if connection else None),
            table_name=table,
            conflict_strategy=strategy.value,
            status=S.PENDING.value,
            requires_approval=bool(requires_approval),
            records_requested=records_requested,
            requester_ip=requester_ip,
            requester_user_agent=requester_user_agent,
            initiated_by=initiated_by,
            extra_metadata=metadata or {},
            requested_at=now,
            created_at=now,
            updated_at=now,
        )

        with self._db.transaction_scope() as session:
            session.add(transfer)

        logger.info(
            f"Transfer {transfer.id} created: {direction.value} {table} "
            f"strategy={strategy.value} requires_approval={transfer.requires_approval}"
        )
        return transfer

    # =========================================================
    # APPROVAL WORKFLOW
    # =========================================================

    def request_approval(
        self,
        transfer: TransferRef,
        hours: Optional[float] = None,
        actor: Optional[str] = None,
    ) -> SyncTransfer:
        """pending -> pending_approval, with an approval deadline."""
        hours = self._config.sync_approval_window_hours if hours is None else hours
        if hours <= 0:
            raise ValidationError("Approval window must be positive", errors={"hours": "invalid"})

        return self._transition(
            transfer,
            where=and_(
                SyncTransfer.status == S.PENDING.value,
                SyncTransfer.requires_approval.is_(True),
            ),
            to_status=S.PENDING_APPROVAL,
            reason="cannot_request_approval",
            actor=actor,
            approval_expires_at=self._clock.now() + timedelta(hours=hours),
        )

    def approve(self, transfer: TransferRef, admin_id: str) -> SyncTransfer:
        """
        pending_approval -> approved.

        Raises:
            ApprovalExpiredError: the deadline passed; the transfer
                is moved to expired
        """
        transfer_id = _transfer_id(transfer)
        now = self._clock.now()

        approved = self._try_transition(
            transfer_id,
            where=and_(
                SyncTransfer.status == S.PENDING_APPROVAL.value,
                or_(
                    SyncTransfer.approval_expires_at.is_(None),
                    SyncTransfer.approval_expires_at >= now,
                ),
            ),
            to_status=S.APPROVED,
            actor=admin_id,
            approved_at=now,
            approved_by=admin_id,
        )
        if approved is not None:
            logger.info(f"Transfer {transfer_id} approved by {admin_id}")
            return approved

        current = self.get(transfer_id)
        if current.status == S.PENDING_APPROVAL.value:
            self._expire_one(transfer_id, now)
            raise ApprovalExpiredError(transfer_id)
        raise InvalidTransitionError("cannot_approve", from_state=current.status)

    def deny(self, transfer: TransferRef, admin_id: str, reason: Optional[str] = None) -> SyncTransfer:
        """pending_approval -> denied (terminal)."""
        now = self._clock.now()
        denied = self._transition(
            transfer,
            where=SyncTransfer.status == S.PENDING_APPROVAL.value,
            to_status=S.DENIED,
            reason="cannot_deny",
            actor=admin_id,
            denied_at=now,
            denied_by=admin_id,
            denial_reason=reason,
            completed_at=now,
        )
        logger.info(f"Transfer {denied.id} denied by {admin_id}: {reason}")
        return denied

    def expire_pending_approvals(self) -> int:
        """
        Sweep pending_approval transfers past their deadline to expired.

        A single conditional UPDATE: repeated or concurrent runs never
        touch a row twice.
        """
        now = self._clock.now()
        with self._db.transaction_scope() as session:
            result = session.execute(
                update(SyncTransfer)
                .where(
                    SyncTransfer.status == S.PENDING_APPROVAL.value,
                    SyncTransfer.approval_expires_at.is_not(None),
                    SyncTransfer.approval_expires_at < now,
                )
                .values(status=S.EXPIRED.value, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        if count:
            logger.info(f"Expired {count} pending approvals")
        return count

    def _expire_one(self, transfer_id: int, now) -> None:
        self._try_transition(
            transfer_id,
            where=and_(
                SyncTransfer.status == S.PENDING_APPROVAL.value,
                SyncTransfer.approval_expires_at < now,
            ),
            to_status=S.EXPIRED,
            completed_at=now,
        )

    # =========================================================
    # EXECUTION
    # =========================================================

    def start(self, transfer: TransferRef) -> SyncTransfer:
        """
        pending (no approval needed) or approved -> in_progress.

        Raises:
            InvalidTransitionError: reason "cannot_start"
        """
        started = self._transition(
            transfer,
            where=or_(
                and_(
                    SyncTransfer.status == S.PENDING.value,
                    SyncTransfer.requires_approval.is_(False),
                ),
                SyncTransfer.status.in_(_values(sources_for(S.IN_PROGRESS, requires_approval=True))),
            ),
            to_status=S.IN_PROGRESS,
            reason="cannot_start",
            started_at=self._clock.now(),
        )
        logger.info(f"Transfer {started.id} started: {started.table_name}")
        return started

    def update_progress(self, transfer: TransferRef, **counters: int) -> SyncTransfer:
        """
        Set absolute counter values on an in_progress transfer.

        Counters only ever increase; a lower value is rejected.
        """
        values = self._check_counters(counters)
        if not values:
            return self.get(transfer)

        transfer_id = _transfer_id(transfer)
        guards = [getattr(SyncTransfer, k) <= v for k, v in values.items()]
        values["updated_at"] = self._clock.now()

        with self._db.transaction_scope() as session:
            result = session.execute(
                update(SyncTransfer)
                .where(
                    SyncTransfer.id == transfer_id,
                    SyncTransfer.status == S.IN_PROGRESS.value,
                    *guards,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            current = self._reload(session, transfer_id)

        if result.rowcount == 0:
            if current.status != S.IN_PROGRESS.value:
                raise InvalidTransitionError("not_in_progress", from_state=current.status)
            raise ValidationError("Progress counters cannot decrease", errors={"counters": "decreased"})

        logger.debug(f"Transfer {transfer_id} progress: {counters}")
        return current

    def increment_progress(self, transfer: TransferRef, **deltas: int) -> SyncTransfer:
        """Add non-negative deltas to the counters of an in_progress transfer."""
        deltas = self._check_counters(deltas)
        transfer_id = _transfer_id(transfer)
        values = {k: getattr(SyncTransfer, k) + v for k, v in deltas.items()}
        values["updated_at"] = self._clock.now()

        with self._db.transaction_scope() as session:
            result = session.execute(
                update(SyncTransfer)
                .where(SyncTransfer.id == transfer_id, SyncTransfer.status == S.IN_PROGRESS.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            current = self._reload(session, transfer_id)

        if result.rowcount == 0:
            raise InvalidTransitionError("not_in_progress", from_state=current.status)
        return current

    def complete(self, transfer: TransferRef, **final_counters: int) -> SyncTransfer:
        """
        in_progress -> completed. Re-completing is a no-op.

        A completed send transfer tied to a connection adds its
        totals to the connection.
        """
        values = self._check_counters(final_counters)
        if values:
            current = self.get(transfer)
            decreased = [k for k, v in values.items() if v < getattr(current, k)]
            if decreased and current.status == S.IN_PROGRESS.value:
                raise ValidationError(
                    f"Progress counters cannot decrease: {decreased}",
                    errors={k: "decreased" for k in decreased},
                )

        completed = self._transition(
            transfer,
            where=SyncTransfer.status == S.IN_PROGRESS.value,
            to_status=S.COMPLETED,
            reason="cannot_complete",
            idempotent=True,
            completed_at=self._clock.now(),
            **values,
        )
        if completed.just_transitioned:
            logger.info(
                f"Transfer {completed.id} completed: transferred={completed.records_transferred} "
                f"created={completed.records_created} updated={completed.records_updated} "
                f"skipped={completed.records_skipped} failed={completed.records_failed}"
            )
            if (
                self._registry is not None
                and completed.connection_id is not None
                and completed.direction == TransferDirection.SEND.value
            ):
                self._registry.record_transfer(
                    completed.connection_id,
                    records=completed.records_transferred,
                    bytes_count=completed.bytes_transferred,
                )
        return completed

    def fail(self, transfer: TransferRef, message: str) -> SyncTransfer:
        """pending / approved / in_progress -> failed. Re-failing is a no-op."""
        failed = self._transition(
            transfer,
            where=SyncTransfer.status.in_(_values(sources_for(S.FAILED))),
            to_status=S.FAILED,
            reason="cannot_fail",
            idempotent=True,
            error_message=message,
            completed_at=self._clock.now(),
        )
        if failed.just_transitioned:
            logger.warning(f"Transfer {failed.id} failed: {message}")
        return failed

    def cancel(self, transfer: TransferRef, actor: Optional[str] = None) -> SyncTransfer:
        """
        Any non-terminal status -> cancelled. Re-cancelling is a no-op.

        Only the recorded state changes; a running loop notices on
        its next is_cancelled check.
        """
        cancelled = self._transition(
            transfer,
            where=SyncTransfer.status.in_([s.value for s in ACTIVE_STATUSES]),
            to_status=S.CANCELLED,
            reason="cannot_cancel",
            idempotent=True,
            actor=actor,
            completed_at=self._clock.now(),
        )
        if cancelled.just_transitioned:
            logger.info(f"Transfer {cancelled.id} cancelled by {actor}")
        return cancelled

    def is_cancelled(self, transfer: TransferRef) -> bool:
        return self.get(transfer).status == S.CANCELLED.value

    # =========================================================
    # QUERIES
    # =========================================================

    def get(self, transfer: TransferRef) -> SyncTransfer:
        transfer_id = _transfer_id(transfer)
        with self._db.session_scope() as session:
            found = session.get(SyncTransfer, transfer_id)
            if found is None:
                raise TransferNotFoundError(f"Transfer {transfer_id} not found")
            return found

    def get_by_uuid(self, uuid: str) -> SyncTransfer:
        with self._db.session_scope() as session:
            found = session.execute(
                select(SyncTransfer).where(SyncTransfer.uuid == uuid)
            ).scalars().first()
            if found is None:
                raise TransferNotFoundError(f"Transfer {uuid} not found")
            return found

    def _filtered(
        self,
        stmt,
        direction: Optional[str] = None,
        status: Optional[Union[str, Iterable[str]]] = None,
        table: Optional[str] = None,
        connection_id: Optional[int] = None,
    ):
        if direction:
            stmt = stmt.where(SyncTransfer.direction == TransferDirection(direction).value)
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            stmt = stmt.where(SyncTransfer.status.in_([TransferStatus(s).value for s in statuses]))
        if table:
            stmt = stmt.where(SyncTransfer.table_name == table)
        if connection_id is not None:
            stmt = stmt.where(SyncTransfer.connection_id == connection_id)
        return stmt

    def list_transfers(
        self,
        direction: Optional[str] = None,
        status: Optional[Union[str, Iterable[str]]] = None,
        table: Optional[str] = None,
        connection_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SyncTransfer]:
        """Newest first."""
        stmt = self._filtered(select(SyncTransfer), direction, status, table, connection_id)
        stmt = stmt.order_by(SyncTransfer.requested_at.desc(), SyncTransfer.id.desc())
        with self._db.session_scope() as session:
            return list(session.execute(stmt.limit(limit).offset(offset)).scalars().all())

    def count_transfers(
        self,
        direction: Optional[str] = None,
        status: Optional[Union[str, Iterable[str]]] = None,
        table: Optional[str] = None,
        connection_id: Optional[int] = None,
    ) -> int:
        stmt = self._filtered(
            select(func.count(SyncTransfer.id)), direction, status, table, connection_id,
        )
        with self._db.session_scope() as session:
            return int(session.execute(stmt).scalar() or 0)

    def list_pending_approvals(self) -> List[SyncTransfer]:
        """Oldest first, so the longest-waiting request is on top."""
        with self._db.session_scope() as session:
            return list(
                session.execute(
                    select(SyncTransfer)
                    .where(SyncTransfer.status == S.PENDING_APPROVAL.value)
                    .order_by(SyncTransfer.requested_at, SyncTransfer.id)
                ).scalars().all()
            )

    def recent_transfers(self, limit: int = 10) -> List[SyncTransfer]:
        return self.list_transfers(limit=limit)

    def active_transfers(self) -> List[SyncTransfer]:
        return self.list_transfers(status=[s.value for s in ACTIVE_STATUSES], limit=1000)

    def connection_stats(self, connection_id: int) -> Dict[str, Any]:
        """Counts by status and record totals for one connection."""
        with self._db.session_scope() as session:
            by_status = dict(
                session.execute(
                    select(SyncTransfer.status, func.count(SyncTransfer.id))
                    .where(SyncTransfer.connection_id == connection_id)
                    .group_by(SyncTransfer.status)
                ).all()
            )
            totals = session.execute(
                select(
                    func.coalesce(func.sum(SyncTransfer.records_transferred), 0),
                    func.coalesce(func.sum(SyncTransfer.bytes_transferred), 0),
                ).where(SyncTransfer.connection_id == connection_id)
            ).one()

        return {
            "connection_id": connection_id,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "records_transferred": int(totals[0]),
            "bytes_transferred": int(totals[1]),
        }

    def table_stats(self) -> List[Dict[str, Any]]:
        """Per-table transfer counts and record totals, busiest first."""
        with self._db.session_scope() as session:
            rows = session.execute(
                select(
                    SyncTransfer.table_name,
                    func.count(SyncTransfer.id),
                    func.coalesce(func.sum(SyncTransfer.records_transferred), 0),
                    func.max(SyncTransfer.requested_at),
                )
                .group_by(SyncTransfer.table_name)
                .order_by(func.count(SyncTransfer.id).desc(), SyncTransfer.table_name)
            ).all()

        return [
            {
                "table": table,
                "transfers": int(count),
                "records_transferred": int(records),
                "last_transfer_at": last,
            }
            for table, count, records, last in rows
        ]

    # =========================================================
    # HELPERS
    # =========================================================

    @staticmethod
    def _check_counters(counters: Dict[str, int]) -> Dict[str, int]:
        unknown = set(counters) - set(COUNTER_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown progress counters: {sorted(unknown)}",
                errors={k: "unknown" for k in unknown},
            )
        values = {k: v for k, v in counters.items() if v is not None}
        negative = [k for k, v in values.items() if v < 0]
        if negative:
            raise ValidationError(
                f"Progress counters cannot be negative: {negative}",
                errors={k: "negative" for k in negative},
            )
        return values

    @staticmethod
    def _reload(session: Session, transfer_id: int) -> SyncTransfer:
        found = session.get(SyncTransfer, transfer_id, populate_existing=True)
        if found is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found")
        return found

    def _try_transition(
        self,
        transfer: TransferRef,
        where,
        to_status: TransferStatus,
        actor: Optional[str] = None,
        **values: Any,
    ) -> Optional[SyncTransfer]:
        """Conditional UPDATE; the row if it moved, else None."""
        transfer_id = _transfer_id(transfer)
        values["status"] = to_status.value
        values["updated_at"] = self._clock.now()

        with self._db.transaction_scope() as session:
            before = session.execute(
                select(SyncTransfer.status).where(SyncTransfer.id == transfer_id)
            ).scalar()
            if before is None:
                raise TransferNotFoundError(f"Transfer {transfer_id} not found")

            result = session.execute(
                update(SyncTransfer)
                .where(SyncTransfer.id == transfer_id, where)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            current = self._reload(session, transfer_id)

        if result.rowcount == 0:
            return None

        current.just_transitioned = True
        event = StateTransitionEvent(
            transfer_id=transfer_id,
            from_state=TransferStatus(before),
            to_state=to_status,
            timestamp=values["updated_at"],
            actor=actor,
        )
        for listener in self._listeners:
            listener(event)
        return current

    def _transition(
        self,
        transfer: TransferRef,
        where,
        to_status: TransferStatus,
        reason: str,
        idempotent: bool = False,
        actor: Optional[str] = None,
        **values: Any,
    ) -> SyncTransfer:
        """
        Conditional transition that raises when it does not apply.

        With idempotent=True a transfer already in ``to_status`` is
        returned unchanged.
        """
        moved = self._try_transition(transfer, where, to_status, actor=actor, **values)
        if moved is not None:
            return moved

        current = self.get(transfer)
        if idempotent and current.status == to_status.value:
            current.just_transitioned = False
            return current
        raise InvalidTransitionError(reason, from_state=current.status)
