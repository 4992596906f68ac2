"""Tests for bookingsync.core.exporter — single-row push outcomes."""

import asyncio

import pytest

from bookingsync.core.exporter import ExportOutcome
from bookingsync.data.models import EventType, SyncStatus
from bookingsync.ports.calendar_port import PermanentProviderError, TransientProviderError
from conftest import berlin


def _booking(store, **kwargs):
    return store.add_event(
        berlin(2025, 3, 12, 10), berlin(2025, 3, 12, 11),
        event_type=EventType.BOOKING, **kwargs,
    )


class TestExport:
    @pytest.mark.asyncio
    async def test_create_assigns_export_key_as_provider_id(self, exporter, event_store, provider):
        ev = _booking(event_store, customer_first_name="Anna")
        outcome = await exporter.export(ev.id)
        assert outcome is ExportOutcome.CREATED
        stored = event_store.get_event(ev.id)
        assert stored.export_key
        assert stored.provider_id == stored.export_key
        assert stored.provider_etag == provider.events[stored.provider_id].etag
        assert stored.sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_synced_row_is_skipped(self, exporter, event_store, provider):
        ev = event_store.import_event("g1", berlin(2025, 3, 12, 10), berlin(2025, 3, 12, 11))
        assert await exporter.export(ev.id) is ExportOutcome.SKIPPED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_missing_row_is_skipped(self, exporter):
        assert await exporter.export(404) is ExportOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_update_when_locally_newer(self, exporter, event_store, provider):
        ev = _booking(event_store)
        await exporter.export(ev.id)
        event_store.update_local(ev.id, customer_phone="0171 1234567")
        outcome = await exporter.export(ev.id)
        assert outcome is ExportOutcome.UPDATED
        pid = event_store.get_event(ev.id).provider_id
        assert "Phone: 0171 1234567" in provider.events[pid].description

    @pytest.mark.asyncio
    async def test_retry_without_local_change_makes_no_call(self, exporter, event_store, provider):
        ev = event_store.import_event("g1", berlin(2025, 3, 12, 10), berlin(2025, 3, 12, 11))
        event_store.mark_error(ev.id, "earlier failure")
        outcome = await exporter.export(ev.id)
        assert outcome is ExportOutcome.UNCHANGED
        assert provider.calls == []
        assert event_store.get_event(ev.id).sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_failure_marks_error_and_raises(self, exporter, event_store, provider):
        ev = _booking(event_store)
        provider.fail_for = {ev.id}
        with pytest.raises(TransientProviderError):
            await exporter.export(ev.id)
        stored = event_store.get_event(ev.id)
        assert stored.sync_status == SyncStatus.ERROR
        assert stored.provider_id is None

    @pytest.mark.asyncio
    async def test_permanent_failure_logged_for_operators(self, exporter, event_store, provider, caplog):
        ev = _booking(event_store)
        provider.fail_for = {ev.id}
        provider.fail_with = PermanentProviderError
        with pytest.raises(PermanentProviderError):
            await exporter.export(ev.id)
        assert "needs attention" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_of_already_deleted_remote_counts_as_done(
        self, exporter, event_store, provider,
    ):
        ev = _booking(event_store)
        await exporter.export(ev.id)
        pid = event_store.get_event(ev.id).provider_id
        provider.cancel_remote(pid)
        event_store.mark_deleted(ev.id)
        assert await exporter.export(ev.id) is ExportOutcome.DELETED
        assert event_store.get_event(ev.id) is None

    @pytest.mark.asyncio
    async def test_cancel_of_never_exported_row_makes_no_call(self, exporter, event_store, provider):
        ev = _booking(event_store)
        event_store.cancel(ev.id, "typo", "staff")
        assert await exporter.export(ev.id) is ExportOutcome.CANCELLED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_exports_of_one_row_create_once(self, exporter, event_store, provider):
        ev = _booking(event_store)
        outcomes = await asyncio.gather(exporter.export(ev.id), exporter.export(ev.id))
        assert sorted(o.value for o in outcomes) == ["created", "skipped"]
        assert [c[0] for c in provider.calls] == ["create"]
