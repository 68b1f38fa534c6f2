"""
Certification manager: commission resolution, period rules, balance
bookkeeping and the paid-state guard
"""
import pytest

from commission_core.local_store import CERTIFICATIONS, CONTRACTS, SYNC_QUEUE


@pytest.fixture
async def contract_id(session, add_contract):
    return await add_contract(session.company_id, base_amount=1000.0)


class TestCreate:

    async def test_create_uses_company_default_percent(self, certifications, session, contract_id, store):
        """No percent on the certification or contract: company default (10%) applies"""
        result = await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-05", "certified_amount": 400,
        })

        assert result["success"] is True
        cert = result["data"]
        assert cert["commission_percent"] == 10.0
        assert cert["computed_commission"] == 40.0
        assert cert["paid"] is False
        assert cert["payment_id"] is None
        assert (await store.get(CONTRACTS, contract_id))["available_balance"] == 600.0
        assert await store.count(SYNC_QUEUE, {"table": CERTIFICATIONS, "action": "INSERT"}) == 1

    async def test_contract_percent_beats_company_default(self, certifications, session, add_contract):
        contract_id = await add_contract(session.company_id, custom_commission_percent=2.5)
        cert = (await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-05", "certified_amount": 400,
        }))["data"]
        assert cert["computed_commission"] == 10.0

    async def test_explicit_percent_and_override(self, certifications, session, contract_id):
        cert = (await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-05", "certified_amount": 400,
            "commission_percent": 1.5, "manual_commission_override": 5,
        }))["data"]
        assert cert["computed_commission"] == 6.0
        assert cert["manual_commission_override"] == 5.0

    async def test_future_period_rejected(self, certifications, session, contract_id):
        result = await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-07", "certified_amount": 100,
        })
        assert result["success"] is False
        assert "future" in result["error"]

    async def test_bad_period_format(self, certifications, session, contract_id):
        result = await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-13", "certified_amount": 100,
        })
        assert result["error_type"] == "VALIDATION_ERROR"

    async def test_one_per_period(self, certifications, session, contract_id):
        data = {"contract_id": contract_id, "period": "2024-05", "certified_amount": 100}
        assert (await certifications.create_certification(session, data))["success"] is True
        duplicate = await certifications.create_certification(session, data)
        assert duplicate["success"] is False

    async def test_exceeding_balance_writes_nothing(self, certifications, session, contract_id, store):
        result = await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-05", "certified_amount": 1500,
        })
        assert result["success"] is False
        assert result["details"]["available_balance"] == 1000.0
        assert await store.count(CERTIFICATIONS) == 0
        assert await store.count(SYNC_QUEUE) == 0


class TestUpdateDelete:

    @pytest.fixture
    async def cert(self, certifications, session, contract_id):
        return (await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-05", "certified_amount": 400,
        }))["data"]

    async def test_amount_change_moves_balance(self, certifications, session, cert, contract_id, store):
        result = await certifications.update_certification(session, cert["id"], {"certified_amount": 700})

        assert result["data"]["computed_commission"] == 70.0
        assert (await store.get(CONTRACTS, contract_id))["available_balance"] == 300.0

        lowered = await certifications.update_certification(session, cert["id"], {"certified_amount": 100})
        assert lowered["success"] is True
        assert (await store.get(CONTRACTS, contract_id))["available_balance"] == 900.0

    async def test_increase_beyond_balance(self, certifications, session, cert):
        result = await certifications.update_certification(session, cert["id"], {"certified_amount": 1500})
        assert result["success"] is False

    async def test_override_set_and_cleared(self, certifications, session, cert):
        with_override = await certifications.update_certification(
            session, cert["id"], {"manual_commission_override": 25}
        )
        assert with_override["data"]["manual_commission_override"] == 25.0

        cleared = await certifications.update_certification(session, cert["id"], {"clear_override": True})
        assert cleared["data"]["manual_commission_override"] is None
        assert cleared["data"]["computed_commission"] == 40.0

    async def test_paid_fields_not_editable(self, certifications, session, cert):
        result = await certifications.update_certification(session, cert["id"], {"paid": True})
        assert result["success"] is False
        assert result["details"]["fields"] == ["paid"]

    async def test_paid_certification_amounts_locked(self, certifications, session, cert, store):
        await store.update_fields(CERTIFICATIONS, cert["id"], set_fields={"paid": True, "payment_id": "p-1"})

        locked = await certifications.update_certification(session, cert["id"], {"certified_amount": 500})
        assert locked["success"] is False
        notes = await certifications.update_certification(session, cert["id"], {"notes": "checked"})
        assert notes["data"]["notes"] == "checked"

        delete = await certifications.delete_certification(session, cert["id"])
        assert delete["success"] is False

    async def test_delete_restores_balance(self, certifications, session, cert, contract_id, store, queue):
        result = await certifications.delete_certification(session, cert["id"])

        assert result["success"] is True
        assert await store.get(CERTIFICATIONS, cert["id"]) is None
        assert (await store.get(CONTRACTS, contract_id))["available_balance"] == 1000.0
        assert await queue.has_pending_delete(CERTIFICATIONS, cert["id"])


class TestReadSide:

    async def test_list_newest_period_first(self, certifications, session, contract_id):
        for period in ("2024-02", "2024-04", "2024-03"):
            await certifications.create_certification(session, {
                "contract_id": contract_id, "period": period, "certified_amount": 100,
            })
        listed = await certifications.list_certifications(session, contract_id)
        assert [c["period"] for c in listed["data"]] == ["2024-04", "2024-03", "2024-02"]

    async def test_statistics(self, certifications, session, contract_id, store):
        first = (await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-01", "certified_amount": 300,
        }))["data"]
        await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-02", "certified_amount": 100,
        })
        await store.update_fields(CERTIFICATIONS, first["id"], set_fields={"paid": True})

        stats = (await certifications.get_certification_statistics(session, contract_id))["data"]
        assert stats["total_certifications"] == 2
        assert stats["certified_amount"] == 400.0
        assert stats["total_commission"] == 40.0
        assert stats["paid_commission"] == 30.0
        assert stats["pending_commission"] == 10.0
        assert stats["paid_percent"] == 75.0
        assert stats["available_balance"] == 600.0

    async def test_annual_summary(self, certifications, session, contract_id):
        await certifications.create_certification(session, {
            "contract_id": contract_id, "period": "2024-03", "certified_amount": 200,
        })
        summary = (await certifications.get_annual_summary(session, contract_id, 2024))["data"]

        assert len(summary["months"]) == 12
        assert summary["months"][2] == {
            "period": "2024-03", "certified_amount": 200.0, "commission": 20.0, "paid": False,
        }
        assert summary["commission"] == 20.0

    async def test_certifications_by_month(self, certifications, session, contract_id, add_contract, add_certification):
        """One period across every contract of the selected company"""
        second = await add_contract(session.company_id, contract_number="C-002")
        foreign = await add_contract("another-company", contract_number="C-900")
        for target, period, amount in ((contract_id, "2024-04", 300), (second, "2024-04", 500), (second, "2024-05", 100)):
            await certifications.create_certification(session, {
                "contract_id": target, "period": period, "certified_amount": amount,
            })
        await add_certification(foreign, "2024-04", 7.0)

        result = (await certifications.get_certifications_by_month(session, 2024, 4))["data"]

        assert result["period"] == "2024-04"
        assert [c["contract_number"] for c in result["certifications"]] == ["C-001", "C-002"]
        assert result["certified_amount"] == 800.0
        assert result["commission"] == 80.0

        invalid = await certifications.get_certifications_by_month(session, 2024, 13)
        assert invalid["error_type"] == "VALIDATION_ERROR"
