"""
Payment allocation engine: specific and global allocation, reversal,
invariant checks and journal recovery
"""
from decimal import Decimal

import pytest

from commission_core.errors import IntegrityError, NotFoundError, ValidationError
from commission_core.local_store import (
    CERTIFICATIONS, DISTRIBUTIONS, PAYMENTS, SETTLEMENT_JOURNAL, SYNC_QUEUE
)
from commission_core.payment_allocation import (
    AllocationPlan, PlannedLine, plan_global, plan_specific, verify_plan
)
from commission_core.settlement_journal import ALLOCATE


async def add_payment(store, company_id, amount, scope="global", contract_id=None):
    payment_id = await store.add(PAYMENTS, {
        "company_id": company_id,
        "scope": scope,
        "contract_id": contract_id,
        "total_amount": amount,
        "method": "transfer",
        "date": "2024-06-15",
        "state": "pending",
    })
    return await store.get(PAYMENTS, payment_id)


@pytest.fixture
async def three_certs(session, add_contract, add_certification):
    """Certifications owing 100, 150 and 250 on one contract"""
    contract_id = await add_contract(session.company_id)
    return [
        await add_certification(contract_id, "2024-01", 100.0),
        await add_certification(contract_id, "2024-02", 150.0),
        await add_certification(contract_id, "2024-03", 250.0),
    ]


class TestPlanning:
    """Pure plan functions"""

    def test_specific_stops_at_first_uncovered(self):
        certs = [
            {"id": "a", "period": "2024-01", "computed_commission": 80.0},
            {"id": "b", "period": "2024-02", "computed_commission": 120.0},
            {"id": "c", "period": "2024-03", "computed_commission": 10.0},
        ]
        plan = plan_specific(certs, 150)

        assert [line.certification["id"] for line in plan.lines] == ["a"]
        assert plan.unapplied == Decimal("70.00")

    def test_global_residual_goes_to_last_line(self):
        """Three equal obligations and 100.00: cents are not lost to rounding"""
        certs = [{"id": str(n), "computed_commission": 50.0} for n in range(3)]
        plan = plan_global(certs, 100)

        assert [line.assigned for line in plan.lines] == [
            Decimal("33.33"), Decimal("33.33"), Decimal("33.34")
        ]
        assert plan.assigned_total == Decimal("100.00")
        assert not any(line.paid for line in plan.lines)

    def test_global_overpayment_caps_at_owed(self):
        certs = [{"id": "a", "computed_commission": 40.0}, {"id": "b", "computed_commission": 60.0}]
        plan = plan_global(certs, 500)

        assert [line.assigned for line in plan.lines] == [Decimal("40.00"), Decimal("60.00")]
        assert all(line.paid for line in plan.lines)
        assert plan.unapplied == Decimal("400.00")

    def test_global_zero_obligations(self):
        plan = plan_global([{"id": "a", "computed_commission": 0.0}], 100)
        assert plan.lines == []

    def test_verify_rejects_over_settlement(self):
        plan = AllocationPlan(amount=Decimal("100"), lines=[
            PlannedLine(certification={"id": "a"}, owed=Decimal("50"), assigned=Decimal("60"), paid=True)
        ])
        with pytest.raises(IntegrityError) as exc:
            verify_plan(plan, "p-1")
        assert exc.value.violation_type == "OVER_SETTLEMENT"

    def test_verify_rejects_exceeding_payment(self):
        plan = AllocationPlan(amount=Decimal("50"), lines=[
            PlannedLine(certification={"id": "a"}, owed=Decimal("40"), assigned=Decimal("40"), paid=True),
            PlannedLine(certification={"id": "b"}, owed=Decimal("40"), assigned=Decimal("20"), paid=False),
        ])
        with pytest.raises(IntegrityError) as exc:
            verify_plan(plan, "p-1")
        assert exc.value.violation_type == "DISTRIBUTION_EXCEEDS_PAYMENT"

    def test_verify_rejects_negative(self):
        plan = AllocationPlan(amount=Decimal("50"), lines=[
            PlannedLine(certification={"id": "a"}, owed=Decimal("40"), assigned=Decimal("-1"), paid=False),
        ])
        with pytest.raises(IntegrityError) as exc:
            verify_plan(plan, "p-1")
        assert exc.value.violation_type == "NEGATIVE_DISTRIBUTION"


class TestGlobalAllocation:

    async def test_exact_payment_settles_everything(self, engine, store, session, three_certs):
        """100/150/250 paid with 500: each gets its owed amount and is paid"""
        payment = await add_payment(store, session.company_id, 500.0)
        result = await engine.allocate_global(payment, 500)

        assert sorted(d["assigned_amount"] for d in result.distributions) == [100.0, 150.0, 250.0]
        assert sorted(result.paid_certification_ids) == sorted(three_certs)
        assert result.completed is True
        for cert_id in three_certs:
            cert = await store.get(CERTIFICATIONS, cert_id)
            assert cert["paid"] is True
            assert cert["payment_id"] == payment["id"]
        assert (await store.get(PAYMENTS, payment["id"]))["state"] == "completed"

    async def test_partial_payment_is_proportional(self, engine, store, session, three_certs):
        """Half of the total: 50/75/125 and nothing marked paid"""
        payment = await add_payment(store, session.company_id, 250.0)
        result = await engine.allocate_global(payment, 250)

        by_cert = {d["certification_id"]: d for d in result.distributions}
        assert [by_cert[c]["assigned_amount"] for c in three_certs] == [50.0, 75.0, 125.0]
        assert [by_cert[c]["assigned_percent"] for c in three_certs] == [20.0, 30.0, 50.0]
        assert result.paid_certification_ids == []
        for cert_id in three_certs:
            assert (await store.get(CERTIFICATIONS, cert_id))["paid"] is False

    async def test_every_write_is_queued(self, engine, store, queue, session, three_certs):
        payment = await add_payment(store, session.company_id, 500.0)
        await engine.allocate_global(payment, 500)

        items = await queue.drain_pending(100)
        assert [i.table for i in items].count(DISTRIBUTIONS) == 3
        assert [i.table for i in items].count(CERTIFICATIONS) == 3
        assert [i.table for i in items].count(PAYMENTS) == 1

    async def test_no_pending_certifications(self, engine, store, session):
        payment = await add_payment(store, session.company_id, 100.0)
        with pytest.raises(NotFoundError):
            await engine.allocate_global(payment, 100)

    async def test_non_positive_amount(self, engine, store, session, three_certs):
        payment = await add_payment(store, session.company_id, 100.0)
        with pytest.raises(ValidationError):
            await engine.allocate_global(payment, 0)


class TestSpecificAllocation:

    async def test_oldest_first_without_carry_over(self, engine, store, session, add_contract, add_certification):
        """80 then 120 with 150: the first is paid, 70 is reported unapplied"""
        contract_id = await add_contract(session.company_id)
        first = await add_certification(contract_id, "2024-01", 80.0)
        second = await add_certification(contract_id, "2024-02", 120.0)
        payment = await add_payment(store, session.company_id, 150.0, "specific", contract_id)

        result = await engine.allocate_specific(payment, contract_id, 150)

        assert result.paid_certification_ids == [first]
        assert result.unapplied_amount == 70.0
        assert result.completed is False
        assert (await store.get(CERTIFICATIONS, first))["paid"] is True
        assert (await store.get(CERTIFICATIONS, second))["paid"] is False
        assert len(await store.get_by_index(DISTRIBUTIONS, "certification_id", second)) == 0
        assert (await store.get(PAYMENTS, payment["id"]))["state"] == "pending"

    async def test_unknown_contract(self, engine, store, session):
        payment = await add_payment(store, session.company_id, 150.0, "specific", "nope")
        with pytest.raises(NotFoundError):
            await engine.allocate_specific(payment, "nope", 150)


class TestReversal:

    async def test_reverse_restores_everything(self, engine, store, session, three_certs):
        """After reverse no distribution remains and every certification is pending"""
        payment = await add_payment(store, session.company_id, 500.0)
        await engine.allocate_global(payment, 500)

        result = await engine.reverse(payment["id"])

        assert sorted(result.reset_certification_ids) == sorted(three_certs)
        assert result.payment_deleted is True
        assert await store.get_by_index(DISTRIBUTIONS, "payment_id", payment["id"]) == []
        assert await store.get(PAYMENTS, payment["id"]) is None
        for cert_id in three_certs:
            cert = await store.get(CERTIFICATIONS, cert_id)
            assert cert["paid"] is False
            assert cert["payment_id"] is None

    async def test_reverse_partial_global(self, engine, store, session, three_certs):
        payment = await add_payment(store, session.company_id, 250.0)
        await engine.allocate_global(payment, 250)

        result = await engine.reverse(payment["id"])
        assert len(result.deleted_distribution_ids) == 3
        assert await store.count(DISTRIBUTIONS) == 0

    async def test_reverse_twice_is_harmless(self, engine, store, session, three_certs):
        payment = await add_payment(store, session.company_id, 500.0)
        await engine.allocate_global(payment, 500)
        await engine.reverse(payment["id"])

        again = await engine.reverse(payment["id"])
        assert again.reset_certification_ids == []
        assert again.payment_deleted is False


class TestRecovery:

    async def test_recover_finishes_interrupted_allocation(self, engine, store, queue, session, three_certs):
        """A journal entry opened before a crash is applied by recover()"""
        payment = await add_payment(store, session.company_id, 100.0)
        cert_id = three_certs[0]
        await engine.journal.open(
            ALLOCATE, payment["id"],
            distributions=[{
                "id": "d-1", "payment_id": payment["id"], "contract_id": "k",
                "certification_id": cert_id, "assigned_amount": 100.0, "assigned_percent": 100.0,
            }],
            certification_updates=[{"id": cert_id, "paid": True, "payment_id": payment["id"]}],
            payment_update={"state": "completed"},
        )

        recovered = await engine.recover()

        assert recovered == 1
        assert await store.get(DISTRIBUTIONS, "d-1") is not None
        assert (await store.get(CERTIFICATIONS, cert_id))["paid"] is True
        assert (await store.get(PAYMENTS, payment["id"]))["state"] == "completed"
        assert await engine.journal.unapplied() == []
        assert await store.count(SYNC_QUEUE, {"table": DISTRIBUTIONS}) == 1

    async def test_recover_skips_applied_writes(self, engine, store, session, three_certs):
        """Replaying an entry whose writes already happened does not duplicate them"""
        payment = await add_payment(store, session.company_id, 500.0)
        await engine.allocate_global(payment, 500)
        entry = (await store.find(SETTLEMENT_JOURNAL, {"payment_id": payment["id"]}))[0]
        await store.update_fields(SETTLEMENT_JOURNAL, entry["id"], set_fields={"applied": False})

        assert await engine.recover() == 1
        assert await store.count(DISTRIBUTIONS, {"payment_id": payment["id"]}) == 3

    async def test_nothing_to_recover(self, engine):
        assert await engine.recover() == 0
