"""
Tests for the periodic conversation reconcile: fixmo/services/conversations.py
reconcile_conversations and fixmo/workers/conversation_reconciler.py.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select, func

from conftest import T0, add_appointment, session_factory_from
from fixmo.models import Conversation, OutboxEvent
from fixmo.services.conversations import reconcile_conversations

DAY = timedelta(days=1)


async def _add_conversation(db, seed, status):
    conversation = Conversation(customer_id=seed.customer.id, provider_id=seed.provider.id, status=status)
    db.add(conversation)
    await db.commit()
    return conversation


async def _event_count(db):
    return (await db.execute(select(func.count(OutboxEvent.id)))).scalar()


class TestReconcileConversations:
    async def test_reopens_closed_conversation_with_live_appointment(self, db, seed):
        await add_appointment(db, seed, status="confirmed")
        conversation = await _add_conversation(db, seed, "closed")

        summary = await reconcile_conversations(db, now=T0)

        assert summary == {"checked": 1, "reopened": 1, "closed": 0, "appointments_completed": 0}
        assert conversation.status == "active"

    async def test_closes_and_completes_lapsed_warranty(self, db, seed):
        appt = await add_appointment(db, seed, status="in-warranty", finished_at=T0, warranty_expires_at=T0 + 7 * DAY)
        conversation = await _add_conversation(db, seed, "active")

        summary = await reconcile_conversations(db, now=T0 + 8 * DAY)

        assert summary["closed"] == 1
        assert summary["appointments_completed"] == 1
        assert appt.status == "completed"
        assert conversation.status == "closed"

    async def test_second_run_changes_nothing(self, db, seed):
        await add_appointment(db, seed, status="in-warranty", finished_at=T0)
        await _add_conversation(db, seed, "active")
        now = T0 + 8 * DAY

        await reconcile_conversations(db, now=now)
        await db.commit()
        events_after_first = await _event_count(db)

        summary = await reconcile_conversations(db, now=now)

        assert summary == {"checked": 1, "reopened": 0, "closed": 0, "appointments_completed": 0}
        assert await _event_count(db) == events_after_first
        assert not db.dirty

    async def test_archived_conversations_are_skipped(self, db, seed):
        await add_appointment(db, seed, status="confirmed")
        conversation = await _add_conversation(db, seed, "archived")

        summary = await reconcile_conversations(db, now=T0)

        assert summary["checked"] == 0
        assert conversation.status == "archived"


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class TestReconcilerWorker:
    async def test_cycle_commits_summary(self, db, seed):
        await add_appointment(db, seed, status="completed")
        conversation = await _add_conversation(db, seed, "active")

        with patch("fixmo.database.async_session_factory", session_factory_from(db)):
            from fixmo.workers.conversation_reconciler import reconcile_cycle
            summary = await reconcile_cycle()

        assert summary["closed"] == 1
        await db.refresh(conversation)
        assert conversation.status == "closed"

    async def test_heartbeat_key(self, mock_redis):
        from fixmo.workers.conversation_reconciler import _heartbeat

        await _heartbeat(3600)

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "fixmo:worker_health:conversation_reconciler"
        assert kwargs.get("ex") == 7200

    async def test_heartbeat_swallows_redis_errors(self):
        with patch(
            "fixmo.utils.redis_client.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("no redis"),
        ):
            from fixmo.workers.conversation_reconciler import _heartbeat

            await _heartbeat(3600)  # must not raise

    async def test_loop_survives_cycle_errors(self):
        settings = MagicMock()
        settings.conversation_reconcile_interval_seconds = 3600
        settings.run_sweeps_on_startup = True

        with (
            patch("fixmo.config.get_settings", return_value=settings),
            patch(
                "fixmo.workers.conversation_reconciler.reconcile_cycle",
                new_callable=AsyncMock,
                side_effect=RuntimeError("db down"),
            ) as mock_cycle,
            patch("fixmo.workers.conversation_reconciler._heartbeat", new_callable=AsyncMock),
            patch("fixmo.workers.conversation_reconciler.asyncio.sleep", new_callable=AsyncMock, side_effect=[None, asyncio.CancelledError]),
        ):
            from fixmo.workers.conversation_reconciler import run_conversation_reconciler

            with pytest.raises(asyncio.CancelledError):
                await run_conversation_reconciler()

        assert mock_cycle.await_count == 2
