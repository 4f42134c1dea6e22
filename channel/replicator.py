"""
Channel Protocol - Receiver Replicator.

============================================================
PURPOSE
============================================================
Pulls whole tables from a connected sender and imports them
locally, one receive Transfer per table.

LOOP (single-threaded per transfer):
    schema -> create table if missing -> count ->
    [cancelled? -> fetch page -> import page -> progress] ... ->
    reconcile local count against the sender's count

FAILURE POLICY:
- Transport errors retry the same page with backoff, then fail
  the transfer
- Policy / not-found errors fail the transfer at once
- Local database errors (wrapped in PersistenceError) and any
  other unexpected error fail the transfer at once
- Per-record import errors are counted; the transfer fails only
  when max_error_rate is set and exceeded
- Cancellation is cooperative: observed before each page

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from channel.client import ChannelClient
from channel.envelope import ChannelResponse
from core.exceptions import PersistenceError, SyncException, TableNotFoundError
from core.settings import SyncConfig
from database.models import SyncConnection, SyncTransfer
from sync_data.codec import escape_identifier, wire_size
from sync_data.data_importer import DataImporter
from sync_data.schema_inspector import SchemaInspector
from sync_data.types import ConflictStrategy, ImportResult, TableSchema
from transfers.orchestrator import TransferOrchestrator
from transfers.types import TransferDirection, TransferStatus


logger = logging.getLogger(__name__)


@dataclass
class ReplicationResult:
    """Outcome of pulling one table."""

    transfer: SyncTransfer
    imported: ImportResult
    remote_count: Optional[int] = None
    local_count: Optional[int] = None

    @property
    def status(self) -> str:
        return self.transfer.status

    @property
    def succeeded(self) -> bool:
        return self.transfer.status == TransferStatus.COMPLETED.value

    @property
    def reconciled(self) -> bool:
        """Local table holds at least as many rows as the sender reported."""
        if self.remote_count is None or self.local_count is None:
            return False
        return self.local_count >= self.remote_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": self.transfer.id,
            "status": self.status,
            "imported": self.imported.to_dict(),
            "remote_count": self.remote_count,
            "local_count": self.local_count,
            "reconciled": self.reconciled,
        }


class Replicator:
    """
    Receiver side: table pulls over one channel.

    Usage:
        replicator = Replicator(client, importer, orchestrator, connection=conn)
        result = await replicator.transfer("users", "overwrite")
    """

    def __init__(
        self,
        client: ChannelClient,
        importer: DataImporter,
        orchestrator: TransferOrchestrator,
        inspector: Optional[SchemaInspector] = None,
        config: Optional[SyncConfig] = None,
        connection: Optional[SyncConnection] = None,
        session_code: Optional[str] = None,
        remote_site_url: Optional[str] = None,
        max_page_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        max_error_rate: Optional[float] = None,
    ):
        config = config or SyncConfig()
        self._client = client
        self._importer = importer
        self._orchestrator = orchestrator
        self._inspector = inspector or importer.inspector
        self._connection = connection
        self._session_code = session_code
        self._remote_site_url = remote_site_url
        self._page_size = config.sync_page_size
        self._max_page_retries = max(1, max_page_retries)
        self._retry_delay = retry_delay_seconds
        self._max_error_rate = max_error_rate

    # =========================================================
    # PUBLIC API
    # =========================================================

    async def list_remote_tables(self) -> list:
        response = await self._client.request_tables()
        return response.unwrap()

    async def transfer(
        self,
        table: str,
        strategy: Optional[Union[ConflictStrategy, str]] = None,
        create_missing: bool = True,
    ) -> ReplicationResult:
        """
        Pull one table.

        Raises:
            InvalidIdentifierError: unsafe table name (before any
                transfer is recorded)
            ValidationError: unknown strategy
        """
        ident = escape_identifier(table)
        if strategy is None:
            strategy = (
                self._connection.default_conflict_strategy if self._connection
                else ConflictStrategy.SKIP
            )
        strategy = ConflictStrategy.parse(strategy)

        transfer = self._orchestrator.create(
            ident,
            TransferDirection.RECEIVE,
            connection=self._connection,
            conflict_strategy=strategy,
            session_code=self._session_code,
            remote_site_url=self._remote_site_url,
            requires_approval=False,
        )
        transfer = self._orchestrator.start(transfer)
        result = ReplicationResult(transfer=transfer, imported=ImportResult(table=ident))

        try:
            await self._run(transfer, ident, strategy, create_missing, result)
        except SQLAlchemyError as e:
            self._record_failure(transfer, ident, PersistenceError(f"Local database error: {e}", cause=e))
        except SyncException as e:
            self._record_failure(transfer, ident, e)
        except Exception as e:
            logger.exception(f"Pull of {ident} failed unexpectedly")
            self._orchestrator.fail(transfer, f"internal_error: {e}")

        result.transfer = self._orchestrator.get(transfer)
        return result

    async def transfer_all(
        self,
        tables: Iterable[str],
        strategies: Optional[Mapping[str, Union[ConflictStrategy, str]]] = None,
        default_strategy: Optional[Union[ConflictStrategy, str]] = None,
        create_missing: bool = True,
    ) -> Dict[str, ReplicationResult]:
        """
        Pull several tables one after the other; each stands alone.

        Every name is checked before the first pull starts.
        """
        tables = [escape_identifier(t) for t in tables]
        strategies = strategies or {}
        results = {}
        for table in tables:
            results[table] = await self.transfer(
                table, strategies.get(table, default_strategy), create_missing,
            )
        return results

    def _record_failure(self, transfer: SyncTransfer, table: str, error: SyncException) -> None:
        if self._orchestrator.is_cancelled(transfer):
            logger.info(f"Transfer {transfer.id} stopped after cancellation")
            return
        self._orchestrator.fail(transfer, f"{error.reason}: {error.message}")
        logger.error(f"Pull of {table} failed: {error.reason}")

    # =========================================================
    # TRANSFER LOOP
    # =========================================================

    async def _run(
        self,
        transfer: SyncTransfer,
        table: str,
        strategy: ConflictStrategy,
        create_missing: bool,
        result: ReplicationResult,
    ) -> None:
        schema_data = await self._call(lambda: self._client.request_schema(table))
        schema = TableSchema.from_dict(schema_data, table=table)

        if not await asyncio.to_thread(self._inspector.table_exists, table):
            if not create_missing:
                raise TableNotFoundError(table)
            await asyncio.to_thread(self._inspector.create_table, table, schema)
            logger.info(f"Created local table {table} from remote schema")

        count_data = await self._call(lambda: self._client.request_count(table))
        result.remote_count = int(count_data["count"])
        self._orchestrator.update_progress(transfer, records_requested=result.remote_count)

        offset = 0
        while True:
            if self._orchestrator.is_cancelled(transfer):
                logger.info(f"Transfer {transfer.id} cancelled at offset {offset}")
                return

            page = await self._call(
                lambda: self._client.request_records(table, offset=offset, limit=self._page_size)
            )
            records = page.get("records") or []

            if records:
                batch = await asyncio.to_thread(
                    self._importer.import_records, table, records, strategy,
                )
                result.imported.merge(batch)
                self._orchestrator.increment_progress(
                    transfer,
                    records_transferred=len(records),
                    records_created=batch.created,
                    records_updated=batch.updated,
                    records_skipped=batch.skipped,
                    records_failed=batch.failed,
                    bytes_transferred=wire_size(records),
                )
                logger.debug(
                    f"Transfer {transfer.id}: page at {offset} -> created={batch.created} "
                    f"updated={batch.updated} skipped={batch.skipped} failed={batch.failed}"
                )

                if (
                    self._max_error_rate is not None
                    and result.imported.error_rate > self._max_error_rate
                ):
                    self._orchestrator.fail(
                        transfer,
                        f"error rate {result.imported.error_rate:.2%} exceeds "
                        f"{self._max_error_rate:.2%}",
                    )
                    return

            offset += len(records)
            if not records or not page.get("has_more"):
                break

        result.local_count = await asyncio.to_thread(self._inspector.get_local_count, table)
        if not result.reconciled:
            logger.warning(
                f"Transfer {transfer.id}: local {table} has {result.local_count} rows, "
                f"sender reported {result.remote_count}"
            )
        self._orchestrator.complete(transfer)

    async def _call(self, send) -> Any:
        """
        Run one request, retrying transport failures.

        Raises:
            TransportError: still failing after max_page_retries
            SyncException: any other error reply, mapped by reason
        """
        attempt = 0
        while True:
            attempt += 1
            response: ChannelResponse = await send()
            if response.ok:
                return response.payload
            if not response.is_transport_error or attempt >= self._max_page_retries:
                raise response.to_exception()

            delay = self._retry_delay * (2 ** (attempt - 1))
            logger.warning(
                f"Channel request failed ({response.error}), "
                f"retry {attempt}/{self._max_page_retries - 1} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
