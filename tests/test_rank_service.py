from binary_mlm.events.event_bus import MLMEvents
from binary_mlm.services.rank_service import RankService
from binary_mlm.store import paths

from conftest import TENANT, add_tenant, add_user, income_records, set_tree

RANKS = {
    "ranks": [
        {"id": "silver", "name": "Silver", "level": 1, "qualification": {"teamVolume": 1000}},
        {
            "id": "gold",
            "name": "Gold",
            "level": 2,
            "qualification": {"teamVolume": 5000, "directs": 2},
            "rewards": {"cash": 250},
            "autoAssign": True,
        },
    ]
}


def add_directs(store, sponsorId, count):
    for n in range(count):
        add_user(store, f"{sponsorId}-d{n}", sponsorId=sponsorId, role="member")


async def test_highest_qualifying_rank_is_assigned(store, clean_event_bus):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "u1")
    add_directs(store, "u1", 2)
    set_tree(store, "u1", leftVolume=3000, rightVolume=3000)
    achieved = []
    clean_event_bus.subscribe(MLMEvents.RANK_ACHIEVED, achieved.append)

    results = await RankService(store).evaluateRanks()

    assert results["updated"] == 1
    assert results["rewards"] == 1
    assert store.get(paths.userDoc(TENANT, "u1"))["rankId"] == "gold"

    rewards = income_records(store, incomeType="rank_reward")
    assert [(record["userId"], record["amount"]) for record in rewards] == [("u1", 250)]
    assert achieved[0]["rankId"] == "gold"


async def test_volume_without_directs_gets_lower_rank(store):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "u1")
    set_tree(store, "u1", leftVolume=3000, rightVolume=3000)

    await RankService(store).evaluateRanks()

    assert store.get(paths.userDoc(TENANT, "u1"))["rankId"] == "silver"
    assert income_records(store) == []


async def test_rank_reward_paid_once_per_rank(store):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "u1")
    add_directs(store, "u1", 2)
    set_tree(store, "u1", leftVolume=3000, rightVolume=3000)
    service = RankService(store)

    await service.evaluateRanks()
    # rank dropped by an admin, then re-qualified
    store.update(paths.userDoc(TENANT, "u1"), {"rankId": "silver"})
    results = await service.evaluateRanks()

    assert results["updated"] == 1
    assert results["rewards"] == 0
    assert len(income_records(store, incomeType="rank_reward")) == 1


async def test_unchanged_rank_is_left_alone(store):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "u1", rankId="silver")
    set_tree(store, "u1", leftVolume=600, rightVolume=600)

    results = await RankService(store).evaluateRanks()

    assert results["checked"] == 1
    assert results["updated"] == 0


async def test_users_without_tree_or_qualification_keep_no_rank(store):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "new")
    add_user(store, "small")
    set_tree(store, "small", leftVolume=10, rightVolume=10)

    results = await RankService(store).evaluateRanks()

    assert results["updated"] == 0
    assert "rankId" not in store.get(paths.userDoc(TENANT, "small"))


async def test_paused_tenant_gets_rank_but_no_reward(store):
    add_tenant(store, mlmConfig=RANKS)
    add_user(store, "u1")
    add_directs(store, "u1", 2)
    set_tree(store, "u1", leftVolume=3000, rightVolume=3000)
    store.set(paths.distributionSettingsDoc(TENANT), {"isPaused": True})

    await RankService(store).evaluateRanks()

    assert store.get(paths.userDoc(TENANT, "u1"))["rankId"] == "gold"
    assert income_records(store) == []
