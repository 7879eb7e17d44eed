from datetime import datetime, timezone

import pytest

from init import get_session, init_tables
from binary_mlm.events.event_bus import eventBus
from binary_mlm.store import paths
from binary_mlm.store.document_store import DocumentStore
from binary_mlm.utils.time_machine import timeMachine

TENANT = "acme"
NOW = datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)  # a Thursday


@pytest.fixture
def store():
    session_factory, engine = get_session("sqlite://")
    init_tables(engine)
    yield DocumentStore(session_factory)
    engine.dispose()


@pytest.fixture(autouse=True)
def virtual_time():
    timeMachine.setTime(NOW)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def clean_event_bus():
    eventBus.clear()
    yield eventBus
    eventBus.clear()


def add_tenant(store, tenantId=TENANT, status="active", mlmConfig=None):
    store.set(paths.tenantDoc(tenantId), {"status": status})
    if mlmConfig is not None:
        store.set(paths.mlmConfigDoc(tenantId), mlmConfig)


def add_user(store, userId, tenantId=TENANT, **fields):
    data = {
        "status": "active",
        "isActive": True,
        "role": "user",
        "packageBV": 0,
        "firstName": userId.upper(),
        "lastName": "",
    }
    data.update(fields)
    store.set(paths.userDoc(tenantId, userId), data)
    return data


def set_tree(store, userId, tenantId=TENANT, **fields):
    node = {
        "userId": userId,
        "companyId": tenantId,
        "leftVolume": 0,
        "rightVolume": 0,
        "totalVolume": 0,
        "leftCount": 0,
        "rightCount": 0,
        "totalCount": 0,
    }
    node.update(fields)
    if "totalVolume" not in fields:
        node["totalVolume"] = node["leftVolume"] + node["rightVolume"]
    store.set(paths.treeDoc(tenantId, userId), node)
    return node


def income_records(store, tenantId=TENANT, **filters):
    records = [snapshot.data for snapshot in store.query(paths.incomeCollection(tenantId))]
    return [
        record for record in records
        if all(record.get(key) == value for key, value in filters.items())
    ]


def chain(store, *userIds, tenantId=TENANT, **fields):
    """
    Sponsor chain: chain(store, "a", "b", "c") makes a the sponsor of b and
    b the sponsor of c.
    """
    previous = None
    for userId in userIds:
        add_user(store, userId, tenantId, sponsorId=previous, **fields)
        previous = userId
