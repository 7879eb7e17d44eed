from binary_mlm.events.event_bus import MLMEvents
from binary_mlm.services.trigger_service import TriggerService, registerTriggers
from binary_mlm.store import paths

from conftest import TENANT, add_tenant, add_user, income_records

PLAN = {
    "directIncome": {"enabled": True, "type": "percentage", "value": 10},
    "sponsorMatching": {"enabled": True, "levels": [{"level": 2, "percentage": 5}]},
    "repurchaseIncome": {
        "enabled": True,
        "repurchaseBV": 500,
        "incomePercentage": 2,
        "eligibleLevels": [1],
    },
}


def build_network(store):
    """
    top sponsors mid, mid sponsors and places buyer on its left.
    """
    add_tenant(store, mlmConfig=PLAN)
    add_user(store, "top")
    add_user(store, "mid", sponsorId="top", placementId="top", placementSide="left")
    add_user(store, "buyer", sponsorId="mid", placementId="mid", placementSide="left")


async def test_user_create_sets_up_wallet_and_tree(store):
    build_network(store)
    triggers = TriggerService(store)

    await triggers.onUserCreate(TENANT, "buyer")

    assert store.get(paths.walletDoc(TENANT, "buyer"))["availableBalance"] == 0
    node = store.get(paths.treeDoc(TENANT, "buyer"))
    assert node["leftMatchedVolume"] == 0
    assert store.get(paths.treeDoc(TENANT, "mid"))["leftCount"] == 1
    assert store.get(paths.treeDoc(TENANT, "top"))["leftCount"] == 2


async def test_package_increase_distributes_income(store):
    build_network(store)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)

    await TriggerService(store).onUserPackageUpdate(TENANT, "buyer", 0, 1000)

    paid = {(record["userId"], record["incomeType"]): record["amount"] for record in income_records(store)}
    assert paid == {
        ("mid", "direct"): 100,
        ("mid", "repurchase"): 20,
        ("top", "sponsor_matching"): 50,
    }
    assert store.get(paths.treeDoc(TENANT, "buyer"))["totalVolume"] == 1000
    # leg = buyer's BV + buyer's aggregated total
    assert store.get(paths.treeDoc(TENANT, "mid"))["leftVolume"] == 2000


async def test_small_purchase_skips_repurchase(store):
    build_network(store)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1300}, merge=True)

    await TriggerService(store).onUserPackageUpdate(TENANT, "buyer", 1000, 1300)

    types = sorted(record["incomeType"] for record in income_records(store))
    assert types == ["direct", "sponsor_matching"]


async def test_package_decrease_does_nothing(store):
    build_network(store)

    await TriggerService(store).onUserPackageUpdate(TENANT, "buyer", 1000, 800)
    await TriggerService(store).onUserPackageUpdate(TENANT, "buyer", 1000, 1000)

    assert income_records(store) == []


async def test_redelivered_purchase_event_pays_once(store):
    build_network(store)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)
    triggers = TriggerService(store)

    await triggers.onUserPackageUpdate(TENANT, "buyer", 0, 1000)
    await triggers.onUserPackageUpdate(TENANT, "buyer", 0, 1000)

    assert len(income_records(store)) == 3


async def test_registered_triggers_credit_wallets(store, clean_event_bus):
    build_network(store)
    registerTriggers(store)

    for userId in ("top", "mid", "buyer"):
        await clean_event_bus.emit(MLMEvents.USER_CREATED, {"tenantId": TENANT, "userId": userId})

    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)
    await clean_event_bus.emit(MLMEvents.PACKAGE_UPDATED, {
        "tenantId": TENANT, "userId": "buyer", "beforeBV": 0, "afterBV": 1000
    })

    mid = store.get(paths.walletDoc(TENANT, "mid"))
    top = store.get(paths.walletDoc(TENANT, "top"))
    assert mid["availableBalance"] == 120
    assert mid["totalEarnings"] == 120
    assert top["availableBalance"] == 50
    assert all(record["walletCredited"] for record in income_records(store))


async def test_trigger_errors_are_swallowed(store):
    class BrokenTree:
        async def recomputeAndPropagate(self, tenantId, userId):
            raise RuntimeError("tree unavailable")

    build_network(store)
    triggers = TriggerService(store)
    triggers.treeService = BrokenTree()

    await triggers.onUserPackageUpdate(TENANT, "buyer", 0, 1000)


async def test_repeat_purchase_pays_direct_income_on_new_bv_only(store):
    build_network(store)
    triggers = TriggerService(store)

    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1000}, merge=True)
    await triggers.onUserPackageUpdate(TENANT, "buyer", 0, 1000)
    store.set(paths.userDoc(TENANT, "buyer"), {"packageBV": 1500}, merge=True)
    await triggers.onUserPackageUpdate(TENANT, "buyer", 1000, 1500)

    direct = sorted(record["amount"] for record in income_records(store, incomeType="direct"))
    assert direct == [50, 100]
