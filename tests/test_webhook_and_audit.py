"""
Test Webhook Notifier and Audit Trail
"""

import json
import logging
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from services.audit_service import AuditEvent, AuditService
from services.errors import BadRequestError
from services.webhook_service import WebhookNotifier
from tests.fixtures import link_and_approve


class TestWebhookNotifier:
    """Best-effort delivery"""

    @pytest.mark.asyncio
    async def test_no_sink_configured(self):
        notifier = WebhookNotifier(url="")

        assert await notifier.notify_status_update("custody.linked", {"id": "r1"}) is False
        assert notifier.failed == 0

    @pytest.mark.asyncio
    async def test_delivers_event_envelope(self):
        received = []

        async def hook(request):
            received.append(await request.json())
            return web.json_response({"ok": True})

        app = web.Application()
        app.router.add_post("/hook", hook)
        async with TestServer(app) as server:
            notifier = WebhookNotifier(url=str(server.make_url("/hook")), timeout_seconds=5)
            delivered = await notifier.notify_status_update("operation.approved", {"id": "op-1"})

        assert delivered is True
        assert notifier.delivered == 1
        assert received[0]["event"] == "operation.approved"
        assert received[0]["data"] == {"id": "op-1"}
        assert "timestamp" in received[0]

    @pytest.mark.asyncio
    async def test_rejected_delivery_is_counted(self):
        async def hook(request):
            return web.Response(status=500, text="sink down")

        app = web.Application()
        app.router.add_post("/hook", hook)
        async with TestServer(app) as server:
            notifier = WebhookNotifier(url=str(server.make_url("/hook")), timeout_seconds=5)
            assert await notifier.notify_status_update("custody.failed", {}) is False

        assert notifier.failed == 1

    @pytest.mark.asyncio
    async def test_unreachable_sink_never_raises(self):
        notifier = WebhookNotifier(url="http://127.0.0.1:9/hook", timeout_seconds=2)

        assert await notifier.notify_status_update("custody.linked", {"id": "r1"}) is False
        assert notifier.failed == 1


class TestAuditTrail:
    """Append-only entries"""

    @pytest.mark.asyncio
    async def test_entries_are_json_safe_and_mirrored(self, db, caplog):
        audit = AuditService()

        with caplog.at_level(logging.INFO, logger="audit"):
            entry_id = await audit.append(
                AuditEvent.BALANCE_CREDITED, "ops", {"amount": Decimal("12.50")}, custody_record_id="r1"
            )

        events = await audit.list_events(custody_record_id="r1")
        assert [e.id for e in events] == [entry_id]
        assert events[0].details == {"amount": "12.50"}

        mirrored = [json.loads(r.getMessage()) for r in caplog.records if r.name == "audit"]
        assert mirrored[0]["event_type"] == AuditEvent.BALANCE_CREDITED
        assert mirrored[0]["id"] == entry_id

    @pytest.mark.asyncio
    async def test_each_custody_transition_writes_one_entry(self, engine):
        record = await link_and_approve(engine)

        events = await engine.audit.list_events(custody_record_id=record.id)
        assert sorted(e.event_type for e in events) == sorted([AuditEvent.ASSET_LINKED, AuditEvent.CUSTODY_LINKED])

        linked = [e for e in events if e.event_type == AuditEvent.CUSTODY_LINKED][0]
        assert linked.actor == "checker-1"
        assert linked.details["from_status"] == "PENDING"
        assert linked.details["to_status"] == "LINKED"

    @pytest.mark.asyncio
    async def test_failed_transition_writes_nothing(self, engine):
        record = await link_and_approve(engine)
        before = len(await engine.audit.list_events(custody_record_id=record.id))

        with pytest.raises(BadRequestError):
            await engine.custody.transition_status(record.id, "WITHDRAWN", {}, "ops")

        assert len(await engine.audit.list_events(custody_record_id=record.id)) == before
