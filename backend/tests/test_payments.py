"""
Payment manager: create runs the allocation engine, delete reverses it
"""
import pytest

from commission_core.local_store import CERTIFICATIONS, DISTRIBUTIONS, PAYMENTS
from commission_core.session import SessionContext


@pytest.fixture
async def contract_id(session, add_contract):
    return await add_contract(session.company_id)


@pytest.fixture
async def pending(contract_id, add_certification):
    return [
        await add_certification(contract_id, "2024-01", 100.0),
        await add_certification(contract_id, "2024-02", 150.0),
        await add_certification(contract_id, "2024-03", 250.0),
    ]


class TestCreatePayment:

    async def test_global_payment_settles(self, payments, session, pending, store):
        result = await payments.create_payment(session, {"scope": "global", "total_amount": 500})

        assert result["success"] is True
        payment = result["data"]["payment"]
        allocation = result["data"]["allocation"]
        assert payment["state"] == "completed"
        assert payment["method"] == "transfer"
        assert payment["date"] == "2024-06-15"
        assert payment["contract_id"] is None
        assert allocation["completed"] is True
        assert len(allocation["distributions"]) == 3
        for cert_id in pending:
            assert (await store.get(CERTIFICATIONS, cert_id))["paid"] is True

    async def test_specific_payment(self, payments, session, contract_id, pending):
        result = await payments.create_payment(session, {
            "scope": "specific", "contract_id": contract_id, "total_amount": 120, "method": "cash",
        })

        allocation = result["data"]["allocation"]
        assert allocation["paid_certification_ids"] == [pending[0]]
        assert allocation["unapplied_amount"] == 20.0
        assert result["data"]["payment"]["state"] == "pending"

    async def test_specific_requires_contract(self, payments, session, pending):
        result = await payments.create_payment(session, {"scope": "specific", "total_amount": 100})
        assert result["success"] is False
        assert result["error_type"] == "VALIDATION_ERROR"

    async def test_foreign_contract_rejected(self, payments, session, add_contract):
        other = await add_contract("another-company")
        result = await payments.create_payment(session, {
            "scope": "specific", "contract_id": other, "total_amount": 100,
        })
        assert result["error_type"] == "NOT_FOUND"

    async def test_nothing_pending_still_records(self, payments, session, store):
        """Without pending certifications the payment is kept, unallocated"""
        result = await payments.create_payment(session, {"scope": "global", "total_amount": 75})

        assert result["success"] is True
        assert result["data"]["allocation"] is None
        assert await store.get(PAYMENTS, result["data"]["payment"]["id"]) is not None

    async def test_amount_must_be_positive(self, payments, session, pending):
        result = await payments.create_payment(session, {"scope": "global", "total_amount": 0})
        assert result["success"] is False

    async def test_requires_company(self, payments):
        result = await payments.create_payment(SessionContext(user_id="user-1"), {
            "scope": "global", "total_amount": 10,
        })
        assert result["error"] == "Select a company first"


class TestReadAndEdit:

    async def test_get_includes_distributions(self, payments, session, pending):
        created = await payments.create_payment(session, {"scope": "global", "total_amount": 250})
        payment_id = created["data"]["payment"]["id"]

        result = await payments.get_payment(session, payment_id)
        assert sorted(d["assigned_amount"] for d in result["data"]["distributions"]) == [50.0, 75.0, 125.0]

    async def test_list_filters(self, payments, session, contract_id, pending):
        await payments.create_payment(session, {
            "scope": "specific", "contract_id": contract_id, "total_amount": 100, "date": "2024-03-10",
        })
        await payments.create_payment(session, {"scope": "global", "total_amount": 50, "date": "2024-05-02"})

        everything = await payments.list_payments(session)
        assert [p["date"] for p in everything["data"]] == ["2024-05-02", "2024-03-10"]

        only_global = await payments.list_payments(session, {"scope": "global"})
        assert len(only_global["data"]) == 1

        march = await payments.list_payments(session, {"date_from": "2024-03-01", "date_to": "2024-03-31"})
        assert [p["scope"] for p in march["data"]] == ["specific"]

    async def test_update_rules(self, payments, session, pending):
        created = await payments.create_payment(session, {"scope": "global", "total_amount": 250})
        payment_id = created["data"]["payment"]["id"]

        amount = await payments.update_payment(session, payment_id, {"total_amount": 300})
        assert amount["success"] is False

        scope = await payments.update_payment(session, payment_id, {"scope": "specific"})
        assert scope["success"] is False

        method = await payments.update_payment(session, payment_id, {"method": "cheque", "notes": "ref 12"})
        assert method["data"]["method"] == "cheque"
        assert method["data"]["notes"] == "ref 12"

    async def test_delete_reverses_allocation(self, payments, session, pending, store):
        created = await payments.create_payment(session, {"scope": "global", "total_amount": 500})
        payment_id = created["data"]["payment"]["id"]

        result = await payments.delete_payment(session, payment_id)

        assert result["success"] is True
        assert sorted(result["data"]["reset_certification_ids"]) == sorted(pending)
        assert await store.get(PAYMENTS, payment_id) is None
        assert await store.count(DISTRIBUTIONS) == 0
        for cert_id in pending:
            assert (await store.get(CERTIFICATIONS, cert_id))["paid"] is False

        missing = await payments.delete_payment(session, payment_id)
        assert missing["error_type"] == "NOT_FOUND"

    async def test_statistics(self, payments, session, contract_id, pending):
        await payments.create_payment(session, {
            "scope": "specific", "contract_id": contract_id, "total_amount": 100, "date": "2024-06-01",
        })
        await payments.create_payment(session, {
            "scope": "global", "total_amount": 50, "method": "cash", "date": "2024-04-20",
        })

        stats = (await payments.get_payment_statistics(session))["data"]
        assert stats["total_payments"] == 2
        assert stats["total_amount"] == 150.0
        assert stats["specific_amount"] == 100.0
        assert stats["global_amount"] == 50.0
        assert stats["by_method"] == {
            "cash": {"count": 1, "amount": 50.0},
            "transfer": {"count": 1, "amount": 100.0},
        }
        assert [m["period"] for m in stats["monthly"]] == [
            "2024-01", "2024-02", "2024-03", "2024-04", "2024-05", "2024-06"
        ]
        assert stats["monthly"][-1]["amount"] == 100.0
