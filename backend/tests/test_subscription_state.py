"""
Subscription state machine: allowed transitions, refusals, effective plan,
superseding of local subscriptions and provider upserts.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from models import BillingCycle, PlanTier, SubscriptionStatus as S
from services.subscription_state import (
    ALLOWED_TRANSITIONS, can_transition, counts_toward_entitlement, map_provider_status, subscription_state,
)
from utils.audit import get_audit_logs_for_resource

pytestmark = pytest.mark.asyncio


async def active_local(account_id, plan=PlanTier.STANDARD, cycle=BillingCycle.MONTHLY):
    doc = await subscription_state.create_local_subscription(account_id, plan, cycle)
    _, doc = await subscription_state.activate_local(doc["subscription_id"])
    return doc


class TestTransitionTable:
    async def test_canceled_is_terminal(self):
        assert ALLOWED_TRANSITIONS[S.CANCELED] == frozenset()
        for target in S:
            if target != S.CANCELED:
                assert not can_transition(S.CANCELED, target)

    async def test_same_state_always_allowed(self):
        for status in S:
            assert can_transition(status, status)

    async def test_examples(self):
        assert can_transition("INCOMPLETE", "ACTIVE")
        assert can_transition(S.PAST_DUE, S.ACTIVE)
        assert not can_transition(S.INCOMPLETE, S.PAST_DUE)
        assert not can_transition(S.ACTIVE, S.TRIALING)

    async def test_provider_status_mapping(self):
        assert map_provider_status("active") == S.ACTIVE
        assert map_provider_status("past_due") == S.PAST_DUE
        assert map_provider_status("incomplete_expired") == S.INCOMPLETE
        assert map_provider_status("paused") == S.INCOMPLETE
        assert map_provider_status(None) == S.INCOMPLETE

    async def test_counting_states(self):
        assert counts_toward_entitlement("ACTIVE")
        assert counts_toward_entitlement(S.TRIALING)
        assert not counts_toward_entitlement(S.PAST_DUE)
        assert not counts_toward_entitlement(None)


class TestLocalLifecycle:
    async def test_create_starts_incomplete(self, fake_db):
        doc = await subscription_state.create_local_subscription("acct-1", PlanTier.STANDARD, BillingCycle.YEARLY)
        assert doc["status"] == "INCOMPLETE"
        assert "provider_subscription_id" not in doc
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.FREE

    async def test_activation_sets_period(self, fake_db):
        doc = await subscription_state.create_local_subscription("acct-1", PlanTier.STANDARD, BillingCycle.YEARLY)
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        applied, active = await subscription_state.activate_local(doc["subscription_id"], now=now)
        assert applied
        assert active["status"] == "ACTIVE"
        assert active["current_period_start"] == now
        assert active["current_period_end"] == now + timedelta(days=365)
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.STANDARD

    async def test_refused_transition_leaves_record(self, fake_db):
        doc = await subscription_state.create_local_subscription("acct-1", PlanTier.STANDARD, BillingCycle.MONTHLY)
        applied, stored = await subscription_state.transition(doc["subscription_id"], S.PAST_DUE, reason="test")
        assert applied is False
        assert stored["status"] == "INCOMPLETE"
        logs = await get_audit_logs_for_resource("subscription", doc["subscription_id"])
        assert logs[0]["action"] == "SUBSCRIPTION_TRANSITION_REFUSED"

    async def test_canceled_cannot_reactivate(self, fake_db):
        doc = await active_local("acct-1")
        applied, canceled = await subscription_state.transition(doc["subscription_id"], S.CANCELED)
        assert applied and canceled["canceled_at"] is not None

        applied, stored = await subscription_state.transition(doc["subscription_id"], S.ACTIVE)
        assert applied is False
        assert stored["status"] == "CANCELED"

    async def test_same_state_refreshes_period_only(self, fake_db):
        doc = await active_local("acct-1")
        new_end = datetime(2030, 1, 1, tzinfo=timezone.utc)
        applied, stored = await subscription_state.transition(doc["subscription_id"], S.ACTIVE, current_period_end=new_end)
        assert applied
        assert stored["current_period_end"] == new_end
        logs = await get_audit_logs_for_resource("subscription", doc["subscription_id"])
        changes = [log for log in logs if log["action"] == "SUBSCRIPTION_STATUS_CHANGED"]
        assert len(changes) == 1

    async def test_unknown_subscription(self, fake_db):
        assert await subscription_state.transition("missing", S.ACTIVE) == (False, None)
        assert await subscription_state.activate_local("missing") == (False, None)

    async def test_past_due_falls_back_to_free(self, fake_db):
        doc = await active_local("acct-1", plan=PlanTier.PROFESSIONAL)
        await subscription_state.transition(doc["subscription_id"], S.PAST_DUE)
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.FREE
        current = await subscription_state.get_current_subscription("acct-1")
        assert current["status"] == "PAST_DUE"

    async def test_concurrent_transitions_from_same_state(self, fake_db):
        doc = await active_local("acct-1")
        results = await asyncio.gather(
            subscription_state.transition(doc["subscription_id"], S.CANCELED),
            subscription_state.transition(doc["subscription_id"], S.PAST_DUE),
        )
        final = await subscription_state.get(doc["subscription_id"])
        # Whatever order they land in, the record only moves along allowed edges
        assert final["status"] in ("CANCELED", "PAST_DUE")
        assert any(applied for applied, _ in results)
        if final["status"] == "PAST_DUE":
            assert not results[0][0]


class TestSupersede:
    async def test_newer_local_subscription_cancels_older(self, fake_db):
        first = await active_local("acct-1", plan=PlanTier.STANDARD)
        second = await active_local("acct-1", plan=PlanTier.PROFESSIONAL)

        assert (await subscription_state.get(first["subscription_id"]))["status"] == "CANCELED"
        assert (await subscription_state.get(second["subscription_id"]))["status"] == "ACTIVE"
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.PROFESSIONAL

        logs = await get_audit_logs_for_resource("subscription", first["subscription_id"])
        assert "SUBSCRIPTION_SUPERSEDED" in [log["action"] for log in logs]

    async def test_other_accounts_untouched(self, fake_db):
        other = await active_local("acct-2")
        await active_local("acct-1")
        assert (await subscription_state.get(other["subscription_id"]))["status"] == "ACTIVE"


class TestProviderUpsert:
    async def upsert(self, status=S.ACTIVE, plan=PlanTier.STANDARD, amount=599.0, **kwargs):
        return await subscription_state.upsert_from_provider(
            "sub_stripe_1",
            account_id="acct-1",
            status=status,
            plan=plan,
            billing_cycle=BillingCycle.MONTHLY,
            amount=amount,
            currency="inr",
            **kwargs,
        )

    async def test_insert_then_sync(self, fake_db):
        created = await self.upsert()
        assert created["status"] == "ACTIVE"
        assert created["currency"] == "INR"
        assert created["provider_subscription_id"] == "sub_stripe_1"

        end = datetime(2027, 1, 1, tzinfo=timezone.utc)
        synced = await self.upsert(plan=PlanTier.BUSINESS, amount=1.0, current_period_end=end)

        assert synced["subscription_id"] == created["subscription_id"]
        assert synced["plan"] == "STANDARD"
        assert synced["amount"] == 599.0
        assert synced["current_period_end"] == end
        assert await fake_db.subscriptions.count_documents({"account_id": "acct-1"}) == 1

    async def test_concurrent_upserts_create_one_row(self, fake_db):
        await asyncio.gather(self.upsert(), self.upsert(), self.upsert())
        assert await fake_db.subscriptions.count_documents({"provider_subscription_id": "sub_stripe_1"}) == 1

    async def test_provider_subscription_supersedes_local(self, fake_db):
        local = await active_local("acct-1")
        await self.upsert(plan=PlanTier.PROFESSIONAL)
        assert (await subscription_state.get(local["subscription_id"]))["status"] == "CANCELED"
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.PROFESSIONAL

    async def test_local_does_not_supersede_provider_row(self, fake_db):
        provider = await self.upsert()
        await active_local("acct-1", plan=PlanTier.PROFESSIONAL)
        assert (await subscription_state.get(provider["subscription_id"]))["status"] == "ACTIVE"
        assert await subscription_state.get_effective_plan("acct-1") == PlanTier.PROFESSIONAL

    async def test_force_status_canceled_clears_flag(self, fake_db):
        await self.upsert(cancel_at_period_end=True)
        doc = await subscription_state.force_status("sub_stripe_1", S.CANCELED)
        assert doc["status"] == "CANCELED"
        assert doc["cancel_at_period_end"] is False

    async def test_sync_unknown_provider_id(self, fake_db):
        assert await subscription_state.sync_from_provider("sub_missing", S.ACTIVE) is None

    async def test_set_cancel_at_period_end(self, fake_db):
        doc = await active_local("acct-1")
        updated = await subscription_state.set_cancel_at_period_end(doc["subscription_id"], True)
        assert updated["cancel_at_period_end"] is True
        assert updated["status"] == "ACTIVE"
