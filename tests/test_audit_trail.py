"""
בדיקות ל-Audit Trail — רישום פעולות על עסקאות ו-subscriptions.
"""
import pytest
from sqlalchemy import select

from app.db.models.audit_log import AuditAction, AuditLog
from app.domain.services.audit_service import SYSTEM_CONTEXT, AuditService, RequestContext
from tests.callback_payloads import stk_success_callback


async def _trail(db_session, resource_id: str) -> list[AuditLog]:
    return await AuditService(db_session).list_for_resource("transaction", resource_id)


class TestAuditService:
    """בדיקות יחידה ל-AuditService"""

    @pytest.mark.unit
    async def test_record_persists_entry(self, db_session, merchant):
        service = AuditService(db_session)

        entry = await service.record(
            AuditAction.PAYMENT_CANCELLED,
            "transaction",
            "txn_0001",
            user_id=merchant.id,
            details={"previous_status": "pending"},
            context=RequestContext(ip_address="10.1.2.3", user_agent="acme-pos/1.0"),
        )

        stored = (await db_session.execute(select(AuditLog).where(AuditLog.id == entry.id))).scalar_one()
        assert stored.action == AuditAction.PAYMENT_CANCELLED
        assert stored.user_id == merchant.id
        assert stored.details == {"previous_status": "pending"}
        assert (stored.ip_address, stored.user_agent) == ("10.1.2.3", "acme-pos/1.0")

    @pytest.mark.unit
    async def test_system_context_defaults(self, db_session):
        entry = await AuditService(db_session).record(
            AuditAction.PAYMENT_EXPIRED, "transaction", "txn_0002"
        )

        assert entry.user_id is None
        assert entry.user_agent == SYSTEM_CONTEXT.user_agent
        assert entry.details == {}

    @pytest.mark.unit
    async def test_long_user_agent_truncated(self, db_session):
        entry = await AuditService(db_session).record(
            AuditAction.PAYMENT_INITIATED,
            "transaction",
            "txn_0003",
            context=RequestContext(user_agent="x" * 400),
        )

        assert len(entry.user_agent) == 255

    @pytest.mark.unit
    async def test_list_for_resource_in_order(self, db_session):
        service = AuditService(db_session)
        await service.record(AuditAction.PAYMENT_INTENT_CREATED, "transaction", "txn_a")
        await service.record(AuditAction.PAYMENT_INTENT_CREATED, "transaction", "txn_b")
        await service.record(AuditAction.PAYMENT_INITIATED, "transaction", "txn_a")

        trail = await service.list_for_resource("transaction", "txn_a")

        assert [e.action for e in trail] == [AuditAction.PAYMENT_INTENT_CREATED, AuditAction.PAYMENT_INITIATED]


class TestPaymentAuditTrail:
    """כל שלב בחיי העסקה משאיר רשומה"""

    @pytest.mark.integration
    async def test_full_lifecycle_trail(self, test_client, db_session, merchant, auth_headers):
        headers = {**auth_headers(merchant), "User-Agent": "acme-pos/2.1"}
        created = await test_client.post(
            "/api/v1/payments/create-intent",
            json={"amount": "500.00", "provider": "mpesa", "phone": "0712345678"},
            headers=headers,
        )
        transaction_id = created.json()["data"]["transaction_id"]
        await test_client.post(f"/api/v1/payments/initiate/{transaction_id}", headers=headers)
        await test_client.post("/api/v1/webhooks/mpesa", json=stk_success_callback())
        await test_client.post(f"/api/v1/payments/{transaction_id}/refund", headers=headers)

        trail = await _trail(db_session, transaction_id)

        assert [e.action for e in trail] == [
            AuditAction.PAYMENT_INTENT_CREATED,
            AuditAction.PAYMENT_INITIATED,
            AuditAction.PROVIDER_CALLBACK_PROCESSED,
            AuditAction.PAYMENT_REFUNDED,
        ]
        merchant_entries = [e for e in trail if e.action != AuditAction.PROVIDER_CALLBACK_PROCESSED]
        assert all(e.user_id == merchant.id for e in merchant_entries)
        assert all(e.user_agent == "acme-pos/2.1" for e in merchant_entries)
        callback_entry = trail[2]
        assert callback_entry.user_id is None
        assert callback_entry.details["outcome"] == "applied"
        assert callback_entry.details["receipt"] == "NLJ7RT61SV"

    @pytest.mark.integration
    async def test_rejected_request_leaves_no_trail(self, test_client, db_session, merchant, auth_headers):
        """בקשה שנכשלה בולידציה לא יוצרת רשומת audit"""
        response = await test_client.post(
            "/api/v1/payments/create-intent",
            json={"amount": "0", "provider": "mpesa", "phone": "0712345678"},
            headers=auth_headers(merchant),
        )

        assert response.status_code == 400
        rows = (await db_session.execute(select(AuditLog))).scalars().all()
        assert rows == []

    @pytest.mark.integration
    async def test_subscription_changes_audited(self, test_client, db_session, merchant, auth_headers):
        headers = auth_headers(merchant)
        created = await test_client.post(
            "/api/v1/webhooks",
            json={"url": "https://merchant.example.com/hooks", "events": ["payment.completed"]},
            headers=headers,
        )
        subscription_id = created.json()["data"]["id"]
        await test_client.patch(f"/api/v1/webhooks/{subscription_id}", json={"is_active": False}, headers=headers)

        trail = await AuditService(db_session).list_for_resource("webhook_subscription", str(subscription_id))

        assert [e.action for e in trail] == [
            AuditAction.WEBHOOK_SUBSCRIPTION_CREATED,
            AuditAction.WEBHOOK_SUBSCRIPTION_UPDATED,
        ]
        assert trail[1].details == {"changed": ["is_active"]}
        assert "whsec_" not in str(trail[0].details)
