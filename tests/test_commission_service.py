from datetime import timedelta
from decimal import Decimal

from binary_mlm.config.plan import CommissionStatus, IncomeType
from binary_mlm.services.commission_service import CommissionService, buildNaturalKey, recordIdFor
from binary_mlm.store import paths
from binary_mlm.utils.time_machine import timeMachine

from conftest import TENANT, NOW, add_tenant, add_user, chain, income_records, set_tree


def direct_config(**overrides):
    directIncome = {"enabled": True, "type": "fixed", "value": 50, "creditTiming": "instant"}
    directIncome.update(overrides)
    return {"directIncome": directIncome}


def matching_config(levels, **overrides):
    sponsorMatching = {"enabled": True, "levels": levels}
    sponsorMatching.update(overrides)
    return {"sponsorMatching": sponsorMatching}


def repurchase_config(**overrides):
    repurchaseIncome = {
        "enabled": True,
        "repurchaseBV": 1000,
        "incomePercentage": 5,
        "eligibleLevels": [1, 2, 3],
        "monthlyQualification": False,
    }
    repurchaseIncome.update(overrides)
    return {"repurchaseIncome": repurchaseIncome}


# region Ledger

def test_natural_key_identity():
    key = buildNaturalKey("acme", "s1", "u1", IncomeType.DIRECT, "bv-100")
    assert key == "acme|s1|u1|direct|bv-100"
    assert buildNaturalKey("acme", "s1", None, IncomeType.RANK_REWARD, "gold") == "acme|s1|-|rank_reward|gold"
    assert recordIdFor(key) == recordIdFor("acme|s1|u1|direct|bv-100")
    assert recordIdFor(key) != recordIdFor("acme|s1|u1|direct|bv-200")


async def test_same_commission_is_recorded_once(store):
    service = CommissionService(store)
    args = (TENANT, "s1", IncomeType.DIRECT, Decimal("50"), "u1", "Direct", CommissionStatus.CREDITED, "bv-100")

    first = await service.recordCommission(*args)
    second = await service.recordCommission(*args)

    assert first is not None
    assert second is None
    assert len(income_records(store)) == 1
    assert first["naturalKey"] == "acme|s1|u1|direct|bv-100"
    assert first["currency"] == "USD"
    assert first["walletCredited"] is False


async def test_sum_income_excludes_rejected_and_other_types(store):
    service = CommissionService(store)
    await service.recordCommission(
        TENANT, "u1", IncomeType.BINARY_MATCHING, Decimal("100"), None, "a", CommissionStatus.CREDITED, "p1")
    await service.recordCommission(
        TENANT, "u1", IncomeType.BINARY_MATCHING, Decimal("40"), None, "b", CommissionStatus.REJECTED, "p2")
    await service.recordCommission(
        TENANT, "u1", IncomeType.DIRECT, Decimal("70"), None, "c", CommissionStatus.CREDITED, "p3")
    await service.recordCommission(
        TENANT, "u2", IncomeType.BINARY_MATCHING, Decimal("90"), None, "d", CommissionStatus.CREDITED, "p4")

    total = service.sumIncome(TENANT, "u1", IncomeType.BINARY_MATCHING, NOW - timedelta(hours=1))
    assert total == Decimal("100")

    later = service.sumIncome(TENANT, "u1", IncomeType.BINARY_MATCHING, NOW + timedelta(hours=1))
    assert later == 0

# endregion


# region Direct income

async def test_direct_income_fixed(store):
    add_tenant(store, mlmConfig=direct_config())
    chain(store, "sponsor", "buyer")
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 200}, merge=True)

    record = await CommissionService(store).calculateDirectIncome(TENANT, "buyer")

    assert record["userId"] == "sponsor"
    assert record["sourceUserId"] == "buyer"
    assert record["amount"] == 50
    assert record["level"] == 1
    assert record["status"] == "credited"


async def test_direct_income_percentage(store):
    add_tenant(store, mlmConfig=direct_config(type="percentage", value=10))
    add_user(store, "sponsor")
    add_user(store, "buyer", sponsorId="sponsor", packageBV=250)

    record = await CommissionService(store).calculateDirectIncome(TENANT, "buyer")

    assert record["amount"] == 25


async def test_direct_income_delayed_is_pending(store):
    add_tenant(store, mlmConfig=direct_config(creditTiming="delayed", delayHours=48))
    add_user(store, "sponsor")
    add_user(store, "buyer", sponsorId="sponsor", packageBV=250)

    record = await CommissionService(store).calculateDirectIncome(TENANT, "buyer")

    assert record["status"] == "pending"
    assert record["creditAfter"] == (NOW + timedelta(hours=48)).isoformat()
    assert "creditedAt" not in record


async def test_direct_income_without_sponsor(store):
    add_tenant(store, mlmConfig=direct_config())
    add_user(store, "orphan", packageBV=100)
    add_user(store, "lost", sponsorId="deleted-user", packageBV=100)
    service = CommissionService(store)

    assert await service.calculateDirectIncome(TENANT, "orphan") is None
    assert await service.calculateDirectIncome(TENANT, "lost") is None
    assert await service.calculateDirectIncome(TENANT, "nobody") is None
    assert income_records(store) == []


async def test_direct_income_once_per_purchase(store):
    add_tenant(store, mlmConfig=direct_config())
    add_user(store, "sponsor")
    add_user(store, "buyer", sponsorId="sponsor", packageBV=100)
    service = CommissionService(store)

    assert await service.calculateDirectIncome(TENANT, "buyer") is not None
    assert await service.calculateDirectIncome(TENANT, "buyer") is None

    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 300}, merge=True)
    assert await service.calculateDirectIncome(TENANT, "buyer") is not None

    assert len(income_records(store)) == 2


async def test_direct_income_respects_pause(store):
    add_tenant(store, mlmConfig=direct_config())
    add_user(store, "sponsor")
    add_user(store, "buyer", sponsorId="sponsor", packageBV=100)
    store.set(paths.distributionSettingsDoc(TENANT), {"isPaused": True})

    assert await CommissionService(store).calculateDirectIncome(TENANT, "buyer") is None

# endregion


# region Sponsor matching

async def test_sponsor_matching_pays_each_level(store):
    levels = [{"level": 1, "percentage": 10}, {"level": 2, "percentage": 5}, {"level": 3, "percentage": 2}]
    add_tenant(store, mlmConfig=matching_config(levels))
    chain(store, "l3", "l2", "l1", "buyer")
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)

    records = await CommissionService(store).calculateSponsorMatching(TENANT, "buyer")

    paid = {record["userId"]: (record["level"], record["amount"]) for record in records}
    assert paid == {"l1": (1, 100), "l2": (2, 50), "l3": (3, 20)}


async def test_short_chain_pays_existing_levels_only(store):
    levels = [{"level": n, "percentage": 1} for n in range(1, 6)]
    add_tenant(store, mlmConfig=matching_config(levels))
    chain(store, "top", "buyer")
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 100}, merge=True)

    records = await CommissionService(store).calculateSponsorMatching(TENANT, "buyer")

    assert [record["userId"] for record in records] == ["top"]


async def test_inactive_sponsor_is_skipped_and_walk_continues(store):
    """
    l3 -> l2 -> l1 -> buyer, l2 last active 45 days ago with a 30 day limit:
    level 2 is skipped, levels 1 and 3 are still paid.
    """
    levels = [{"level": 1, "percentage": 10}, {"level": 2, "percentage": 5}, {"level": 3, "percentage": 2}]
    add_tenant(store, mlmConfig=matching_config(levels, autoDisableIfInactive=True, inactiveDays=30))
    recent = timeMachine.now - timedelta(days=1)
    chain(store, "l3", "l2", "l1", "buyer", lastActivity=recent)
    store.set(paths.userDoc(TENANT, "l2"), {"lastActivity": timeMachine.now - timedelta(days=45)}, merge=True)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)

    records = await CommissionService(store).calculateSponsorMatching(TENANT, "buyer")

    assert sorted(record["level"] for record in records) == [1, 3]
    assert "l2" not in {record["userId"] for record in records}


async def test_inactive_flag_ignored_without_auto_disable(store):
    levels = [{"level": 1, "percentage": 10}]
    add_tenant(store, mlmConfig=matching_config(levels, autoDisableIfInactive=False, inactiveDays=30))
    chain(store, "l1", "buyer")
    store.set(paths.userDoc(TENANT, "l1"), {"isActive": False}, merge=True)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 100}, merge=True)

    records = await CommissionService(store).calculateSponsorMatching(TENANT, "buyer")

    assert len(records) == 1


async def test_sponsor_qualification_thresholds(store):
    """
    Level 1 needs 500 team volume and 2 directs; l1 has the volume but only
    one direct. Level 2 needs 100 pairs; l2 has them.
    """
    levels = [
        {"level": 1, "percentage": 10, "qualification": {"teamVolume": 500, "directs": 2}},
        {"level": 2, "percentage": 5, "qualification": {"pairs": 100}},
    ]
    add_tenant(store, mlmConfig=matching_config(levels))
    chain(store, "l2", "l1", "buyer")
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)
    set_tree(store, "l1", leftVolume=400, rightVolume=400)
    set_tree(store, "l2", leftVolume=150, rightVolume=100)

    records = await CommissionService(store).calculateSponsorMatching(TENANT, "buyer")

    assert [(record["userId"], record["amount"]) for record in records] == [("l2", 50)]


async def test_sponsor_without_tree_fails_volume_qualification(store):
    levels = [{"level": 1, "percentage": 10, "qualification": {"teamVolume": 1}}]
    add_tenant(store, mlmConfig=matching_config(levels))
    chain(store, "l1", "buyer")
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 100}, merge=True)

    assert await CommissionService(store).calculateSponsorMatching(TENANT, "buyer") == []


async def test_sponsor_matching_without_bv_pays_nothing(store):
    add_tenant(store, mlmConfig=matching_config([{"level": 1, "percentage": 10}]))
    chain(store, "l1", "buyer")

    assert await CommissionService(store).calculateSponsorMatching(TENANT, "buyer") == []

# endregion


# region Repurchase income

async def test_repurchase_below_threshold_pays_nobody(store):
    add_tenant(store, mlmConfig=repurchase_config())
    chain(store, "l3", "l2", "l1", "buyer")

    records = await CommissionService(store).calculateRepurchaseIncome(TENANT, "buyer", 800)

    assert records == []
    assert income_records(store) == []


async def test_repurchase_pays_eligible_levels(store):
    add_tenant(store, mlmConfig=repurchase_config(eligibleLevels=[1, 3]))
    chain(store, "l3", "l2", "l1", "buyer")

    records = await CommissionService(store).calculateRepurchaseIncome(TENANT, "buyer", 2000)

    paid = {record["userId"]: record["amount"] for record in records}
    assert paid == {"l1": 100, "l3": 100}
    assert all(record["incomeType"] == "repurchase" for record in records)


async def test_repurchase_monthly_qualification(store, virtual_time):
    add_tenant(store, mlmConfig=repurchase_config(eligibleLevels=[1], monthlyQualification=True))
    add_user(store, "sponsor")
    add_user(store, "buyer1", sponsorId="sponsor")
    add_user(store, "buyer2", sponsorId="sponsor")
    service = CommissionService(store)

    assert len(await service.calculateRepurchaseIncome(TENANT, "buyer1", 1000, "order-1")) == 1
    assert await service.calculateRepurchaseIncome(TENANT, "buyer2", 1000, "order-2") == []

    virtual_time.advanceTime(days=30)  # April
    assert len(await service.calculateRepurchaseIncome(TENANT, "buyer2", 1000, "order-3")) == 1


async def test_repurchase_same_event_is_paid_once(store):
    add_tenant(store, mlmConfig=repurchase_config(eligibleLevels=[1]))
    chain(store, "l1", "buyer")
    service = CommissionService(store)

    assert len(await service.calculateRepurchaseIncome(TENANT, "buyer", 1500, "order-1")) == 1
    assert await service.calculateRepurchaseIncome(TENANT, "buyer", 1500, "order-1") == []
    assert len(await service.calculateRepurchaseIncome(TENANT, "buyer", 1500, "order-2")) == 1

# endregion
