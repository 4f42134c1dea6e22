#!/usr/bin/env python3
"""
Table Sync - Command Line Entry Point.

============================================================
COMMANDS
============================================================
init-db                     create the engine's own tables and check the connection
serve                       run the sender channel server
pull                        pull tables from a sender
sweep                       one expiry pass
tables                      list local tables with row counts
export-sql                  print INSERT statements for a table
connections ...             list / create / approve / suspend / revoke /
                            reactivate / delete / verify

============================================================
USAGE
============================================================
python app.py init-db
python app.py serve --port 8765 --pairing-code
python app.py pull --url ws://sender:8765/sync/ws --code ABCD2345 \
    --table users --table orders --strategy overwrite
python app.py connections create --name hq --site-url https://hq.example \
    --direction sender

Environment:
    SYNC_DATABASE_URL, SYNC_LOG_LEVEL, SYNC_HOST, SYNC_PORT

============================================================
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from channel import (
    ChannelClient,
    ChannelServer,
    Replicator,
    RequestHandler,
    WebSocketTransport,
    run_server,
)
from connections import ConnectionNotifier, ConnectionRegistry, ConnectionResponse, NotifyOutcome
from core.exceptions import SyncException
from core.settings import SyncConfig
from database import Database, DatabaseSettingsStore
from pairing import SessionBroker
from sync_data import DataExporter, DataImporter, SchemaInspector
from sync_data.types import ConflictStrategy
from transfers import TransferOrchestrator
from workers import Sweeper


logger = logging.getLogger("table_sync")


# ============================================================
# ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="table-sync",
        description="Peer-to-peer relational table replication",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL (default: SYNC_DATABASE_URL or sqlite:///table_sync.db)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("SYNC_LOG_LEVEL", "INFO").upper(),
        help="Logging level (default: SYNC_LOG_LEVEL or INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the engine's own tables")

    serve = sub.add_parser("serve", help="Run the sender channel server")
    serve.add_argument("--host", default=os.getenv("SYNC_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("SYNC_PORT", "8765")))
    serve.add_argument("--pairing-code", action="store_true",
                       help="Create a single-use pairing code for this server's lifetime")
    serve.add_argument("--sweep-interval", type=float, default=60.0, metavar="SECONDS")

    pull = sub.add_parser("pull", help="Pull tables from a sender")
    pull.add_argument("--url", required=True, help="Sender WebSocket URL, e.g. ws://host:8765/sync/ws")
    auth = pull.add_mutually_exclusive_group(required=True)
    auth.add_argument("--token", help="Connection bearer token")
    auth.add_argument("--code", help="Pairing code")
    pull.add_argument("--password", help="Download password, when the connection has one")
    pull.add_argument("--table", action="append", default=[], help="Table to pull (repeatable)")
    pull.add_argument("--all", action="store_true", help="Pull every table the sender offers")
    pull.add_argument("--strategy", choices=[s.value for s in ConflictStrategy], default=None)
    pull.add_argument("--connection-id", type=int, default=None,
                      help="Local connection record to attach the transfers to")
    pull.add_argument("--no-create", action="store_true", help="Do not create missing tables")
    pull.add_argument("--max-error-rate", type=float, default=None)

    sub.add_parser("sweep", help="Run one expiry pass")
    sub.add_parser("tables", help="List local tables")

    export = sub.add_parser("export-sql", help="Print INSERT statements")
    export.add_argument("--table", required=True)

    conns = sub.add_parser("connections", help="Manage connections")
    conn_sub = conns.add_subparsers(dest="action", required=True)

    c_list = conn_sub.add_parser("list")
    c_list.add_argument("--direction", choices=["sender", "receiver"])
    c_list.add_argument("--status")

    c_create = conn_sub.add_parser("create")
    c_create.add_argument("--name", required=True)
    c_create.add_argument("--site-url", required=True)
    c_create.add_argument("--direction", choices=["sender", "receiver"], required=True)
    c_create.add_argument("--approval-mode", default="auto_approve",
                          choices=["auto_approve", "require_approval", "per_table"])
    c_create.add_argument("--allowed-table", action="append", default=[])
    c_create.add_argument("--excluded-table", action="append", default=[])
    c_create.add_argument("--max-downloads", type=int)
    c_create.add_argument("--max-records-total", type=int)
    c_create.add_argument("--created-by")
    c_create.add_argument("--notify", action="store_true",
                          help="Register the receiver half at the remote site (sender only)")
    c_create.add_argument("--remote-password", help="Incoming password the remote site requires")

    for action in ("approve", "suspend", "revoke"):
        p = conn_sub.add_parser(action)
        p.add_argument("connection_id", type=int)
        p.add_argument("--by", required=True, help="Acting admin")
        if action != "approve":
            p.add_argument("--reason")

    c_reactivate = conn_sub.add_parser("reactivate")
    c_reactivate.add_argument("connection_id", type=int)

    for action in ("delete", "verify"):
        conn_sub.add_parser(action).add_argument("connection_id", type=int)

    return parser


# ============================================================
# WIRING
# ============================================================

class Services:
    """Everything a command needs, built from one database."""

    def __init__(self, database_url: Optional[str] = None):
        self.db = Database(database_url)
        self.db.create_all()
        self.config = SyncConfig.load(DatabaseSettingsStore(self.db))
        self.registry = ConnectionRegistry(self.db, config=self.config)
        self.orchestrator = TransferOrchestrator(self.db, registry=self.registry, config=self.config)
        self.inspector = SchemaInspector(self.db)
        self.exporter = DataExporter(self.db, self.inspector)
        self.importer = DataImporter(self.db, self.inspector)
        self.broker = SessionBroker(clock=self.registry.clock)
        self.notifier = ConnectionNotifier(
            site_url=self.config.sync_site_url,
            timeout_seconds=self.config.sync_request_timeout_seconds,
        )
        self.notifier.attach(self.registry)

    def close(self) -> None:
        self.db.dispose()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

def cmd_init_db(services: Services, args) -> int:
    services.db.verify_connection()
    print("Database initialized")
    return 0


async def _serve(services: Services, args) -> None:
    handler = RequestHandler(
        services.registry, services.orchestrator, services.exporter, broker=services.broker,
    )
    server = ChannelServer(handler, services.registry, services.broker)
    sweeper = Sweeper(services.orchestrator, services.registry, services.broker, services.config)

    if args.pairing_code:
        session = services.broker.create_session("send", owner=asyncio.current_task())
        print(f"Pairing code: {session.code}")

    sweep_task = asyncio.create_task(sweeper.run_forever(args.sweep_interval))
    notify_task = asyncio.create_task(services.notifier.run_forever())
    try:
        await run_server(server, args.host, args.port)
    finally:
        sweeper.stop()
        services.notifier.stop()
        await sweep_task
        await notify_task
        await services.notifier.close()


def cmd_serve(services: Services, args) -> int:
    if not services.config.sync_enabled:
        logger.error("Sync is disabled (sync_enabled=false)")
        return 1
    try:
        asyncio.run(_serve(services, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


async def _pull(services: Services, args) -> int:
    connection = services.registry.get(args.connection_id) if args.connection_id else None
    transport = WebSocketTransport(
        args.url, token=args.token, code=args.code, download_password=args.password,
    )
    await transport.connect()

    async with ChannelClient(transport, timeout=services.config.sync_request_timeout_seconds) as client:
        replicator = Replicator(
            client,
            services.importer,
            services.orchestrator,
            inspector=services.inspector,
            config=services.config,
            connection=connection,
            session_code=args.code,
            remote_site_url=args.url,
            max_error_rate=args.max_error_rate,
        )

        tables: List[str] = list(args.table)
        if args.all:
            tables.extend(t["name"] for t in await replicator.list_remote_tables() if t["name"] not in tables)
        if not tables:
            logger.error("Nothing to pull: pass --table or --all")
            return 2

        results = await replicator.transfer_all(
            tables, default_strategy=args.strategy, create_missing=not args.no_create,
        )

    _print_json({table: r.to_dict() for table, r in results.items()})
    return 0 if all(r.succeeded for r in results.values()) else 1


def cmd_pull(services: Services, args) -> int:
    return asyncio.run(_pull(services, args))


def cmd_sweep(services: Services, args) -> int:
    sweeper = Sweeper(services.orchestrator, services.registry, services.broker, services.config)
    _print_json(sweeper.run_once())
    return 0


def cmd_tables(services: Services, args) -> int:
    for info in services.inspector.list_tables():
        marker = "~" if info.estimated else ""
        print(f"{info.name:40s} {marker}{info.row_count}")
    return 0


def cmd_export_sql(services: Services, args) -> int:
    for statement in services.exporter.to_sql_inserts(args.table):
        print(statement)
    return 0


def _conn_json(conn) -> dict:
    return ConnectionResponse.model_validate(conn).model_dump(mode="json")


async def _with_notifier(notifier: ConnectionNotifier, call):
    try:
        return await call()
    finally:
        await notifier.close()


def _send_notices(notifier: ConnectionNotifier) -> None:
    if not notifier.pending:
        return
    for result in asyncio.run(_with_notifier(notifier, notifier.flush)):
        if result.delivered:
            logger.info(f"Connection {result.connection_id}: peer notified ({result.outcome.value})")
        else:
            logger.warning(
                f"Connection {result.connection_id}: peer not notified "
                f"({result.outcome.value}: {result.error})"
            )


def cmd_connections(services: Services, args) -> int:
    registry = services.registry
    notifier = services.notifier

    if args.action == "list":
        _print_json([_conn_json(c) for c in registry.list_connections(args.direction, args.status)])
    elif args.action == "create":
        attrs = {
            "name": args.name,
            "site_url": args.site_url,
            "direction": args.direction,
            "approval_mode": args.approval_mode,
            "allowed_tables": args.allowed_table,
            "excluded_tables": args.excluded_table,
            "max_downloads": args.max_downloads,
            "max_records_total": args.max_records_total,
            "created_by": args.created_by,
        }
        conn, token = registry.create({k: v for k, v in attrs.items() if v is not None})
        output = {"connection": _conn_json(conn), "token": token}
        if args.notify:
            result = asyncio.run(_with_notifier(
                notifier, lambda: notifier.notify_remote_site(conn, token, args.remote_password),
            ))
            output["remote"] = result.to_dict()
        _print_json(output)
        print("Store the token now; it is not shown again.", file=sys.stderr)
    elif args.action == "approve":
        _print_json(_conn_json(registry.approve(args.connection_id, args.by)))
    elif args.action == "suspend":
        _print_json(_conn_json(registry.suspend(args.connection_id, args.by, args.reason)))
    elif args.action == "reactivate":
        _print_json(_conn_json(registry.reactivate(args.connection_id)))
    elif args.action == "revoke":
        _print_json(_conn_json(registry.revoke(args.connection_id, args.by, args.reason)))
    elif args.action == "delete":
        registry.delete(args.connection_id)
        _print_json({"deleted": args.connection_id})
    elif args.action == "verify":
        conn = registry.get(args.connection_id)
        result = asyncio.run(_with_notifier(notifier, lambda: notifier.verify_connection(conn)))
        _print_json(result.to_dict())
        return 0 if result.outcome is NotifyOutcome.EXISTS else 1

    _send_notices(notifier)
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "serve": cmd_serve,
    "pull": cmd_pull,
    "sweep": cmd_sweep,
    "tables": cmd_tables,
    "export-sql": cmd_export_sql,
    "connections": cmd_connections,
}


# ============================================================
# MAIN
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    services = Services(args.database_url)
    try:
        return COMMANDS[args.command](services, args)
    except SyncException as e:
        logger.error(f"{e.reason}: {e.message}")
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
