from decimal import Decimal

from binary_mlm.config.plan import (
    CappingPeriod, CreditTiming, MLMConfig, Qualification, WeakLegLogic, loadConfig
)
from binary_mlm.store import paths

from conftest import TENANT


def test_empty_config_disables_everything():
    plan = MLMConfig.fromDict(TENANT, {})

    assert not plan.binaryMatching.enabled
    assert not plan.directIncome.enabled
    assert not plan.sponsorMatching.enabled
    assert not plan.repurchaseIncome.enabled
    assert plan.ranks == []
    assert plan.binaryPlanEnabled is True
    assert plan.binaryMatching.cappingAmount is None
    assert plan.binaryMatching.weakLegLogic == WeakLegLogic.SMALLER


def test_full_config_is_parsed():
    plan = MLMConfig.fromDict(TENANT, {
        "binaryMatching": {
            "enabled": True, "pairRatio": "2:1", "pairIncome": "12.5",
            "cappingPeriod": "weekly", "cappingAmount": 1000, "weakLegLogic": "bogus",
        },
        "directIncome": {"enabled": True, "type": "percentage", "value": 8, "creditTiming": "delayed", "delayHours": 24},
        "sponsorMatching": {
            "enabled": True,
            "levels": [{"level": 3, "percentage": 1}, {"level": 1, "percentage": 5, "qualification": {"directs": 2}}],
            "autoDisableIfInactive": True,
            "inactiveDays": 30,
        },
        "repurchaseIncome": {"enabled": True, "repurchaseBV": 100, "incomePercentage": 3, "eligibleLevels": [3, 1, 1, 0]},
        "ranks": [{"id": "gold", "level": 2, "rewards": {"cash": 100}}, {"name": "no id"}],
        "binaryPlan": {"enabled": False},
    })

    assert plan.binaryMatching.pairIncome == Decimal("12.5")
    assert plan.binaryMatching.cappingPeriod == CappingPeriod.WEEKLY
    assert plan.binaryMatching.cappingAmount == Decimal("1000")
    assert plan.binaryMatching.weakLegLogic == WeakLegLogic.SMALLER
    assert plan.directIncome.creditTiming == CreditTiming.DELAYED
    assert [level.level for level in plan.sponsorMatching.levels] == [1, 3]
    assert plan.sponsorMatching.maxLevel == 3
    assert plan.sponsorMatching.levels[0].qualification.directs == 2
    assert plan.repurchaseIncome.eligibleLevels == [1, 3]
    assert [rank.id for rank in plan.ranks] == ["gold"]
    assert plan.ranks[0].name == "gold"
    assert plan.ranks[0].cashReward == Decimal("100")
    assert plan.binaryPlanEnabled is False


def test_absent_thresholds_always_pass():
    assert Qualification().isEmpty
    assert Qualification().isMetBy()

    qualification = Qualification.fromDict({"teamVolume": 500, "pairs": 100})
    assert qualification.needsTree
    assert qualification.isMetBy(totalVolume=Decimal("500"), pairs=Decimal("100"), directs=0)
    assert not qualification.isMetBy(totalVolume=Decimal("500"), pairs=Decimal("99"))
    assert not Qualification.fromDict({"directs": 1}).needsTree


def test_load_config_from_store(store):
    assert loadConfig(store, TENANT) is None

    store.set(paths.mlmConfigDoc(TENANT), {"directIncome": {"enabled": True, "value": 25}})
    plan = loadConfig(store, TENANT)

    assert plan.tenantId == TENANT
    assert plan.directIncome.value == Decimal("25")
