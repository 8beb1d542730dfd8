"""
Subscription store: idempotency on the payment intent id, one row per user,
failure marking and reconciliation flag handling.
"""
import pytest

from models import BillingFrequency, PaymentMethod, SubscriptionStatus
from services.billing_errors import ForbiddenError, SubscriptionNotFoundError, ValidationError
from services.plan_catalog import plan_catalog
from services.subscription_store import subscription_store


async def _persist(user_id="user-1", intent_id="pi_1", plan_id=2, subscription_id=None, source="lifecycle"):
    plan = await plan_catalog.get_plan(plan_id)
    return await subscription_store.persist(
        user_id=user_id,
        plan=plan,
        billing_frequency=BillingFrequency.MONTHLY,
        payment_method=PaymentMethod.CREDIT_CARD,
        status=SubscriptionStatus.ACTIVE,
        payment_intent_id=intent_id,
        subscription_id=subscription_id,
        source=source,
    )


@pytest.mark.asyncio
async def test_same_intent_twice_is_single_record(memory_db):
    doc1, changed1 = await _persist()
    doc2, changed2 = await _persist(source="webhook")
    
    assert changed1 is True
    assert changed2 is False
    assert doc1 == doc2
    assert doc1 == await subscription_store.get_by_id(doc1["subscription_id"])
    assert len(memory_db.subscriptions.docs) == 1
    assert memory_db.subscriptions.docs[0]["payment_intent_ids"] == ["pi_1"]


@pytest.mark.asyncio
async def test_new_intent_updates_existing_row(memory_db):
    doc1, _ = await _persist(intent_id="pi_1", plan_id=2)
    doc2, changed = await _persist(intent_id="pi_2", plan_id=3)
    
    assert changed is True
    assert doc2["subscription_id"] == doc1["subscription_id"]
    assert doc2["plan_id"] == 3
    assert doc2["payment_intent_id"] == "pi_2"
    assert doc2["payment_intent_ids"] == ["pi_1", "pi_2"]


@pytest.mark.asyncio
async def test_intent_of_another_user_rejected(memory_db):
    await _persist(user_id="user-1", intent_id="pi_1")
    with pytest.raises(ValidationError):
        await _persist(user_id="user-2", intent_id="pi_1")


@pytest.mark.asyncio
async def test_plan_change_on_foreign_subscription_forbidden(memory_db):
    doc, _ = await _persist(user_id="user-1", intent_id="pi_1")
    with pytest.raises(ForbiddenError):
        await _persist(user_id="user-2", intent_id="pi_9", subscription_id=doc["subscription_id"])
    with pytest.raises(SubscriptionNotFoundError):
        await _persist(user_id="user-2", intent_id="pi_9", subscription_id="SUB-MISSING")


@pytest.mark.asyncio
async def test_mark_failed_keeps_row(memory_db):
    await _persist(intent_id="pi_1")
    count = await subscription_store.mark_failed_for_intent("pi_1", reason="card_declined")
    assert count == 1
    doc = memory_db.subscriptions.docs[0]
    assert doc["status"] == "failed"
    assert doc["is_active"] is False
    assert doc["failure_reason"] == "card_declined"
    # Second delivery changes nothing
    assert await subscription_store.mark_failed_for_intent("pi_1", reason="card_declined") == 0


@pytest.mark.asyncio
async def test_verify_requires_pending_status(memory_db):
    doc, _ = await _persist(intent_id="pi_1")
    with pytest.raises(ValidationError, match="only pending_verification"):
        await subscription_store.verify_bank_transfer(doc["subscription_id"], "admin-1")
    with pytest.raises(SubscriptionNotFoundError):
        await subscription_store.verify_bank_transfer("SUB-NOPE", "admin-1")


@pytest.mark.asyncio
async def test_flag_lifecycle(memory_db):
    flag_id = await subscription_store.flag_for_reconciliation(
        user_id="user-1",
        plan_id=2,
        billing_frequency=BillingFrequency.MONTHLY,
        intent_id="pi_1",
        subscription_id=None,
        source="webhook",
        error="boom",
    )
    assert flag_id.startswith("RCF-")
    open_flags = await subscription_store.list_flags(status="open")
    assert [f["flag_id"] for f in open_flags] == [flag_id]
    
    resolved = await subscription_store.resolve_flag(flag_id, "admin-1", note="activated by hand")
    assert resolved["status"] == "resolved"
    assert resolved["resolved_by"] == "admin-1"
    assert await subscription_store.list_flags(status="open") == []
    
    with pytest.raises(ValidationError):
        await subscription_store.resolve_flag("RCF-MISSING", "admin-1")


@pytest.mark.asyncio
async def test_flag_write_failure_is_logged_not_raised(memory_db):
    memory_db.reconciliation_flags.fail_writes = 1
    flag_id = await subscription_store.flag_for_reconciliation(
        user_id="user-1",
        plan_id=2,
        billing_frequency=BillingFrequency.MONTHLY,
        intent_id="pi_1",
        subscription_id=None,
        source="lifecycle",
        error="boom",
    )
    assert flag_id is None
