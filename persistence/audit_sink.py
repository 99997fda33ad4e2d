"""
Audit Event Sinks

Implementations of guard.audit.AuditSink.

    InMemoryAuditSink  → process-local append-only list (default, tests)
    SupabaseAuditSink  → `audit_events` table

Schema:
    audit_events (
        id          TEXT PRIMARY KEY,
        subject_id  TEXT,
        action      TEXT NOT NULL,
        metadata    JSONB,
        source_ip   TEXT,
        user_agent  TEXT,
        geo         JSONB,
        created_at  TIMESTAMPTZ NOT NULL
    )
"""

from __future__ import annotations

import bisect
import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import geoip2.database
from supabase import create_client, Client

from guard.audit import AuditSink
from guard.errors import SinkUnavailable
from guard.models import AuditAction, AuditEvent


logger = logging.getLogger(__name__)


PRIVATE_IP_PREFIXES = (
    "10.",
    "172.16.", "172.17.", "172.18.", "172.19.",
    "172.20.", "172.21.", "172.22.", "172.23.",
    "172.24.", "172.25.", "172.26.", "172.27.",
    "172.28.", "172.29.", "172.30.", "172.31.",
    "192.168.",
    "127.",
    "0.",
    "::1",
    "fe80:",
)


# =============================================================================
# In-Memory
# =============================================================================

class InMemoryAuditSink(AuditSink):
    """
    Append-only event list kept sorted by created_at.

    Events may arrive out of order across writers; they are inserted at
    their timestamp position so query() windows stay correct.
    """

    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._keys: List[datetime] = []
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            index = bisect.bisect_right(self._keys, event.created_at)
            self._keys.insert(index, event.created_at)
            self._events.insert(index, event)

    def query(
        self,
        since: datetime,
        until: datetime,
        subject_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            lo = bisect.bisect_left(self._keys, since)
            hi = bisect.bisect_right(self._keys, until)
            window = self._events[lo:hi]
        return [
            e for e in window
            if (subject_id is None or e.subject_id == subject_id)
            and (action is None or e.action == action)
        ]

    def events(self) -> List[AuditEvent]:
        """Snapshot of every stored event, oldest first."""
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        return len(self._events)


# =============================================================================
# Supabase
# =============================================================================

class SupabaseAuditSink(AuditSink):
    """
    Writes audit events to Supabase.

    Rows are enriched with a best-effort GeoIP lookup of source_ip. Any
    client error surfaces as SinkUnavailable so AuditWriter can retry.
    """

    TABLE_NAME = "audit_events"

    def __init__(
        self,
        client: Optional[Client] = None,
        geoip_path: Optional[str] = None,
    ) -> None:
        if client is None:
            url = os.getenv("SUPABASE_URL")
            key = os.getenv("SUPABASE_KEY")
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the Supabase audit sink")
            client = create_client(url, key)
        self.client = client

        geoip_path = geoip_path or os.getenv("GEOIP_DB_PATH", "assets/GeoLite2-City.mmdb")
        try:
            self.geoip = geoip2.database.Reader(geoip_path)
        except Exception as e:
            logger.warning(f"GeoIP database unavailable for audit sink: {e}")
            self.geoip = None

    # ------------------------------------------------------------------
    # AuditSink
    # ------------------------------------------------------------------

    def append(self, event: AuditEvent) -> None:
        row = event.to_dict()
        row["geo"] = self._resolve_ip(event.source_ip)
        try:
            self.client.table(self.TABLE_NAME).insert(row).execute()
            logger.debug(f"Audit event inserted: {event.id}")
        except Exception as e:
            raise SinkUnavailable(f"Supabase insert failed: {e}") from e

    def query(
        self,
        since: datetime,
        until: datetime,
        subject_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> List[AuditEvent]:
        try:
            request = (
                self.client.table(self.TABLE_NAME)
                .select("*")
                .gte("created_at", since.isoformat())
                .lte("created_at", until.isoformat())
            )
            if subject_id is not None:
                request = request.eq("subject_id", subject_id)
            if action is not None:
                request = request.eq("action", action.value)
            response = request.order("created_at").execute()
        except Exception as e:
            raise SinkUnavailable(f"Supabase query failed: {e}") from e

        events: List[AuditEvent] = []
        for row in response.data or []:
            try:
                events.append(AuditEvent.from_dict(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed audit row {row.get('id')}: {e}")
        return events

    # ------------------------------------------------------------------
    # GeoIP Lookup
    # ------------------------------------------------------------------

    def _resolve_ip(self, ip_address: Optional[str]) -> Dict[str, Any]:
        """Resolve IP to { country, city }; all best-effort."""
        if not ip_address:
            return {"country": "unknown", "city": "unknown"}

        if ip_address.startswith(PRIVATE_IP_PREFIXES):
            return {"country": "private", "city": "private"}

        if self.geoip is None:
            return {"country": "unknown", "city": "unknown"}

        try:
            response = self.geoip.city(ip_address)
            return {
                "country": response.country.iso_code or "unknown",
                "city": response.city.name or "unknown",
            }
        except Exception as e:
            logger.debug(f"GeoIP lookup failed for {ip_address}: {e}")
            return {"country": "unknown", "city": "unknown"}
