"""
Audit Sink Tests

InMemoryAuditSink ordering/filtering, and SupabaseAuditSink with a mocked
client and mocked GeoIP reader.
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from guard.errors import SinkUnavailable
from guard.models import AuditAction, AuditEvent
from persistence.audit_sink import InMemoryAuditSink, SupabaseAuditSink

from conftest import T0


def at(minutes, action=AuditAction.LOGIN_FAILED, subject="X", **kwargs):
    return AuditEvent(
        action=action,
        subject_id=subject,
        created_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


# =============================================================================
# In-Memory
# =============================================================================

class TestInMemoryAuditSink:

    def test_query_is_sorted_despite_arrival_order(self):
        sink = InMemoryAuditSink()
        for minutes in (5, 1, 3):
            sink.append(at(minutes))

        window = sink.query(since=T0, until=T0 + timedelta(hours=1))
        assert [e.created_at for e in window] == sorted(e.created_at for e in window)

    def test_query_bounds_are_inclusive(self):
        sink = InMemoryAuditSink()
        for minutes in (0, 10, 20):
            sink.append(at(minutes))

        window = sink.query(since=T0, until=T0 + timedelta(minutes=10))
        assert len(window) == 2

    def test_query_filters(self):
        sink = InMemoryAuditSink()
        sink.append(at(0, AuditAction.LOGIN_FAILED, "X"))
        sink.append(at(1, AuditAction.LOGIN_SUCCEEDED, "X"))
        sink.append(at(2, AuditAction.LOGIN_FAILED, "Y"))

        until = T0 + timedelta(hours=1)
        assert len(sink.query(T0, until, subject_id="X")) == 2
        assert len(sink.query(T0, until, action=AuditAction.LOGIN_FAILED)) == 2
        assert len(sink.query(T0, until, subject_id="Y", action=AuditAction.LOGIN_SUCCEEDED)) == 0


# =============================================================================
# Supabase
# =============================================================================

@pytest.fixture
def supabase_client():
    client = MagicMock()
    client.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[])
    return client


class TestSupabaseAuditSink:

    def test_append_inserts_row_with_geo(self, supabase_client, mock_geoip):
        with mock_geoip({"8.8.8.8": {"city_name": "Mountain View", "country_iso": "US"}}):
            sink = SupabaseAuditSink(client=supabase_client, geoip_path="unused.mmdb")
            sink.append(at(0, source_ip="8.8.8.8", metadata={"identifier": "a@b.com"}))

        supabase_client.table.assert_called_with("audit_events")
        row = supabase_client.table.return_value.insert.call_args[0][0]
        assert row["action"] == "login_failed"
        assert row["metadata"] == {"identifier": "a@b.com"}
        assert row["geo"] == {"country": "US", "city": "Mountain View"}
        assert row["created_at"] == T0.isoformat()

    def test_private_ip_is_not_looked_up(self, supabase_client, mock_geoip):
        with mock_geoip({}) as reader:
            sink = SupabaseAuditSink(client=supabase_client, geoip_path="unused.mmdb")
            sink.append(at(0, source_ip="192.168.1.20"))

        row = supabase_client.table.return_value.insert.call_args[0][0]
        assert row["geo"] == {"country": "private", "city": "private"}
        reader.city.assert_not_called()

    def test_unknown_ip_degrades_gracefully(self, supabase_client, mock_geoip):
        with mock_geoip({}):
            sink = SupabaseAuditSink(client=supabase_client, geoip_path="unused.mmdb")
            sink.append(at(0, source_ip="203.0.113.9"))

        row = supabase_client.table.return_value.insert.call_args[0][0]
        assert row["geo"] == {"country": "unknown", "city": "unknown"}

    def test_insert_failure_raises_sink_unavailable(self, supabase_client, mock_geoip):
        supabase_client.table.return_value.insert.return_value.execute.side_effect = Exception("503")
        with mock_geoip({}):
            sink = SupabaseAuditSink(client=supabase_client, geoip_path="unused.mmdb")
            with pytest.raises(SinkUnavailable):
                sink.append(at(0))

    def test_query_decodes_rows_and_skips_malformed(self, supabase_client, mock_geoip):
        good = at(0).to_dict()
        good["created_at"] = "2024-05-01T09:00:00Z"
        request = MagicMock()
        request.gte.return_value = request
        request.lte.return_value = request
        request.eq.return_value = request
        request.order.return_value = request
        request.execute.return_value = MagicMock(data=[good, {"id": "broken"}])
        supabase_client.table.return_value.select.return_value = request

        with mock_geoip({}):
            sink = SupabaseAuditSink(client=supabase_client, geoip_path="unused.mmdb")
            events = sink.query(T0, T0 + timedelta(hours=1), subject_id="X")

        assert [e.id for e in events] == [good["id"]]
        assert events[0].created_at == T0
        request.eq.assert_called_with("subject_id", "X")

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        with pytest.raises(ValueError):
            SupabaseAuditSink()
