"""Tests for tracked-versus-remote reconciliation."""
import pytest
from sqlmodel import select

from campaign_provisioner.provisioning.errors import BudgetExhaustedError
from campaign_provisioner.provisioning.models import ResourceKind, SlotStatus, VerificationRecord
from campaign_provisioner.provisioning.reconciliation import ExistenceStatus, ReconciliationService
from campaign_provisioner.provisioning.slot_tracker import MISSING

from fakes import ACCOUNT, NOT_FOUND, UNAVAILABLE


@pytest.fixture
def reconciliation(db, gateway, executor, slots):
    return ReconciliationService(db, gateway, executor, slots)


async def created_job(make_job, state, slots, platform, groups, exist):
    """Job whose first `exist` group slots are live remotely and the rest only tracked."""
    root = platform.add_resource(ACCOUNT, ResourceKind.ROOT, "Spring Sale")
    job = await make_job(groups=groups)
    job = await state.update_fields(job.id, root_remote_id=root.remote_id)
    await slots.initialize_slots(job)
    for slot in await slots.get_slots(job.id, ResourceKind.GROUP):
        if slot.slot_number <= exist:
            remote_id = platform.add_resource(root.remote_id, ResourceKind.GROUP, slot.name).remote_id
        else:
            remote_id = f"ghost-{slot.slot_number}"
        slot = await slots.mark_creating(slot)
        await slots.mark_created(slot, remote_id, root.remote_id)
    return job, root


class TestReconcile:
    async def test_silent_failures_marked_failed(self, db, make_job, state, slots, platform, reconciliation, scope):
        """10 tracked, 8 remote: exactly 2 slots fail and one record is written."""
        job, _ = await created_job(make_job, state, slots, platform, groups=10, exist=8)

        result = await reconciliation.reconcile(job, scope)

        assert result.actual == {"group": 8, "item": 0}
        assert result.tracked == {"group": 10, "item": 0}
        assert len(result.missing_slots) == 2
        assert result.mismatch
        failed = await slots.get_slots(job.id, statuses=[SlotStatus.FAILED])
        assert sorted(s.slot_number for s in failed) == [9, 10]
        assert all(s.error_kind == MISSING for s in failed)

        async with db.session() as session:
            records = (await session.execute(select(VerificationRecord))).scalars().all()
        assert len(records) == 1
        assert records[0].mismatch
        assert {d["type"] for d in records[0].discrepancies} == {"missing"}

    async def test_clean_reconcile(self, make_job, state, slots, platform, reconciliation, scope):
        job, _ = await created_job(make_job, state, slots, platform, groups=3, exist=3)
        result = await reconciliation.reconcile(job, scope)
        assert not result.mismatch
        assert result.missing_slots == []

    async def test_untracked_and_over_ceiling_reported(self, make_job, state, slots, platform, reconciliation, scope):
        job, root = await created_job(make_job, state, slots, platform, groups=2, exist=2)
        platform.add_resource(root.remote_id, ResourceKind.GROUP, "stray")
        result = await reconciliation.reconcile(job, scope)
        types = {d["type"] for d in result.discrepancies}
        assert types == {"untracked", "over_ceiling"}
        assert len(result.untracked["group"]) == 1

    async def test_unverifiable_slot_is_not_marked_missing(self, make_job, state, slots, platform,
                                                          reconciliation, scope):
        job, _ = await created_job(make_job, state, slots, platform, groups=2, exist=1)
        for n in range(1, 6):
            platform.fail_nth("get", n, UNAVAILABLE)
        result = await reconciliation.reconcile(job, scope)
        assert result.missing_slots == []
        assert [d["type"] for d in result.discrepancies] == ["unverified"]
        assert await slots.count(job.id, status=SlotStatus.FAILED) == 0

    async def test_job_without_root_reports_zero(self, make_job, reconciliation, scope, slots):
        job = await make_job(groups=2)
        await slots.initialize_slots(job)
        result = await reconciliation.reconcile(job, scope)
        assert result.actual == {"group": 0, "item": 0}


class TestRemoteCounts:
    async def test_counts_items_per_group(self, platform, reconciliation, scope):
        root = platform.add_resource(ACCOUNT, ResourceKind.ROOT, "r")
        g1 = platform.add_resource(root.remote_id, ResourceKind.GROUP, "g1")
        g2 = platform.add_resource(root.remote_id, ResourceKind.GROUP, "g2")
        platform.add_resource(g1.remote_id, ResourceKind.ITEM, "i1")
        platform.add_resource(g2.remote_id, ResourceKind.ITEM, "i2")
        platform.add_resource(g2.remote_id, ResourceKind.ITEM, "i3")
        counts = await reconciliation.get_current_remote_counts(root.remote_id, scope)
        assert counts.as_dict() == {"group": 2, "item": 3}

    async def test_listing_failure_raises(self, platform, reconciliation, scope):
        root = platform.add_resource(ACCOUNT, ResourceKind.ROOT, "r")
        for n in range(1, 6):
            platform.fail_nth("list", n, UNAVAILABLE)
        with pytest.raises(BudgetExhaustedError):
            await reconciliation.get_current_remote_counts(root.remote_id, scope)


class TestVerifyEntity:
    async def test_statuses(self, platform, reconciliation, scope):
        root = platform.add_resource(ACCOUNT, ResourceKind.ROOT, "r")
        assert await reconciliation.verify_entity_exists(root.remote_id, ResourceKind.ROOT, scope) == \
            ExistenceStatus.EXISTS
        assert await reconciliation.verify_entity_exists("nope", ResourceKind.ROOT, scope) == \
            ExistenceStatus.MISSING
        for n in range(3, 8):
            platform.fail_nth("get", n, UNAVAILABLE)
        assert await reconciliation.verify_entity_exists(root.remote_id, ResourceKind.ROOT, scope) == \
            ExistenceStatus.UNKNOWN

    async def test_not_found_error_code(self, platform, reconciliation, scope):
        root = platform.add_resource(ACCOUNT, ResourceKind.ROOT, "r")
        platform.fail_nth("get", 1, NOT_FOUND)
        assert await reconciliation.verify_entity_exists(root.remote_id, ResourceKind.ROOT, scope) == \
            ExistenceStatus.MISSING
