"""
Connection Policy - Derived Predicates.

============================================================
PURPOSE
============================================================
Pure checks evaluated against a connection row before any work
is granted to a remote peer. Every function takes the instant to
evaluate at, so callers decide which clock is authoritative.

- is_active: status, expiry and quota headroom together
- within_allowed_hours: inclusive hour window, may wrap midnight
- ip_allowed: empty allow-list means no restriction
- table_allowed: exclude-list wins, then allow-list if non-empty
- requires_approval: per approval mode

============================================================
"""

import ipaddress
from datetime import datetime
from typing import Any, Optional

from connections.schemas import ApprovalMode, ConnectionStatus


# ============================================================
# LIFECYCLE / QUOTAS
# ============================================================

def is_expired(conn: Any, now: datetime) -> bool:
    if conn.expires_at is None:
        return False
    return now > conn.expires_at


def within_download_limits(conn: Any) -> bool:
    if conn.max_downloads is None:
        return True
    return conn.downloads_used < conn.max_downloads


def within_record_limits(conn: Any) -> bool:
    if conn.max_records_total is None:
        return True
    return conn.records_downloaded < conn.max_records_total


def is_active(conn: Any, now: datetime) -> bool:
    return (
        conn.status == ConnectionStatus.ACTIVE.value
        and not is_expired(conn, now)
        and within_download_limits(conn)
        and within_record_limits(conn)
    )


def remaining_downloads(conn: Any) -> Optional[int]:
    """None means unlimited."""
    if conn.max_downloads is None:
        return None
    return max(conn.max_downloads - conn.downloads_used, 0)


def remaining_records(conn: Any) -> Optional[int]:
    """None means unlimited."""
    if conn.max_records_total is None:
        return None
    return max(conn.max_records_total - conn.records_downloaded, 0)


# ============================================================
# TIME / NETWORK
# ============================================================

def within_allowed_hours(conn: Any, now: datetime) -> bool:
    start, end = conn.allowed_hours_start, conn.allowed_hours_end
    if start is None or end is None:
        return True

    hour = now.hour
    if start <= end:
        return start <= hour <= end
    # start > end wraps midnight, e.g. 22 -> 6
    return hour >= start or hour <= end


def ip_allowed(conn: Any, client_ip: Optional[str]) -> bool:
    """
    Check a client address against the allow-list.

    Entries may be single addresses or CIDR networks. An
    empty list allows every address.
    """
    whitelist = conn.ip_whitelist or []
    if not whitelist:
        return True
    if not client_ip:
        return False

    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False

    for entry in whitelist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


# ============================================================
# TABLES
# ============================================================

def table_allowed(conn: Any, table: str) -> bool:
    if table in (conn.excluded_tables or []):
        return False
    allowed = conn.allowed_tables or []
    return not allowed or table in allowed


def requires_approval(conn: Any, table: str) -> bool:
    mode = conn.approval_mode
    if mode == ApprovalMode.AUTO_APPROVE.value:
        return False
    if mode == ApprovalMode.PER_TABLE.value:
        return table not in (conn.auto_approve_tables or [])
    return True
