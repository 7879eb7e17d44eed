# binary_mlm/services/tree_service.py
"""
Binary tree volume aggregation over the placement chain.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

import config
from binary_mlm.config.plan import LEFT, RIGHT, WeakLegLogic, loadConfig
from binary_mlm.errors import DocumentExists
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal, toNumber
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ChildLeg = Tuple[str, Dict[str, Any], Dict[str, Any]]  # (childId, user data, tree node)


def weakSide(leftVolume: Decimal, rightVolume: Decimal, policy: WeakLegLogic = WeakLegLogic.SMALLER) -> str:
    """Leg that receives a node's own BV; ties go left."""
    if policy == WeakLegLogic.LEFT:
        return LEFT
    if policy == WeakLegLogic.RIGHT:
        return RIGHT
    return LEFT if leftVolume <= rightVolume else RIGHT


def aggregateNode(
        tenantId: str,
        userId: str,
        userData: Dict[str, Any],
        children: List[ChildLeg],
        policy: WeakLegLogic = WeakLegLogic.SMALLER
) -> Dict[str, Any]:
    """
    Fresh tree node for userId from its placement children.
    The first child found on a side is that leg's entry point.
    """
    legs: Dict[str, Optional[ChildLeg]] = {LEFT: None, RIGHT: None}
    for child in children:
        childId, childData, _ = child
        side = childData.get("placementSide")
        if side not in legs:
            logger.warning(f"User {childId} has unknown placement side {side!r}, ignored")
            continue
        if legs[side] is None:
            legs[side] = child
        else:
            logger.warning(f"Extra {side} child {childId} under {userId} ignored")

    volumes = {LEFT: Decimal("0"), RIGHT: Decimal("0")}
    counts = {LEFT: 0, RIGHT: 0}
    for side, leg in legs.items():
        if leg is None:
            continue
        _, childData, childTree = leg
        volumes[side] = toDecimal(childData.get("packageBV")) + toDecimal(childTree.get("totalVolume"))
        counts[side] = int(childTree.get("totalCount") or 0) + 1

    ownBV = toDecimal(userData.get("packageBV"))
    if ownBV > 0:
        volumes[weakSide(volumes[LEFT], volumes[RIGHT], policy)] += ownBV

    return {
        "userId": userId,
        "companyId": tenantId,
        "leftLegId": legs[LEFT][0] if legs[LEFT] else None,
        "rightLegId": legs[RIGHT][0] if legs[RIGHT] else None,
        "leftVolume": toNumber(volumes[LEFT]),
        "rightVolume": toNumber(volumes[RIGHT]),
        "totalVolume": toNumber(volumes[LEFT] + volumes[RIGHT]),
        "leftCount": counts[LEFT],
        "rightCount": counts[RIGHT],
        "totalCount": counts[LEFT] + counts[RIGHT],
    }


class BinaryTreeService:
    """Service for recomputing leg volumes and counts of tree nodes."""

    def __init__(self, store):
        self.store = store

    async def getNode(self, tenantId: str, userId: str) -> Optional[Dict[str, Any]]:
        return self.store.get(paths.treeDoc(tenantId, userId))

    async def getStats(self, tenantId: str, userId: str, countDirects: bool = True) -> Optional[Dict[str, Any]]:
        """
        Qualification figures for a user: leg and team volumes, 1:1 pairs and
        direct referrals. None when the user has no tree node.
        """
        node = await self.getNode(tenantId, userId)
        if node is None:
            return None

        leftVolume = toDecimal(node.get("leftVolume"))
        rightVolume = toDecimal(node.get("rightVolume"))
        directs = 0
        if countDirects:
            directs = len(self.store.query(
                paths.usersCollection(tenantId),
                [("sponsorId", "==", userId)]
            ))

        return {
            "totalVolume": toDecimal(node.get("totalVolume")),
            "leftVolume": leftVolume,
            "rightVolume": rightVolume,
            "pairs": min(leftVolume, rightVolume),
            "directs": directs,
        }

    async def initializeNode(self, tenantId: str, userId: str) -> bool:
        """Zero-volume node for a newly registered user; existing nodes are left alone."""
        try:
            self.store.create(paths.treeDoc(tenantId, userId), {
                "userId": userId,
                "companyId": tenantId,
                "leftLegId": None,
                "rightLegId": None,
                "leftVolume": 0,
                "rightVolume": 0,
                "totalVolume": 0,
                "leftCount": 0,
                "rightCount": 0,
                "totalCount": 0,
                "leftMatchedVolume": 0,
                "rightMatchedVolume": 0,
                "lastUpdated": timeMachine.now,
            })
            return True
        except DocumentExists:
            return False

    async def recomputeNode(
            self,
            tenantId: str,
            userId: str,
            policy: Optional[WeakLegLogic] = None
    ) -> Optional[Dict[str, Any]]:
        """Recompute a single node from its children and merge-write it."""
        result = await self._recompute(tenantId, userId, policy or self._weakLegPolicy(tenantId))
        return result[0] if result else None

    async def recomputeAndPropagate(self, tenantId: str, userId: str) -> int:
        """
        Recompute userId's node, then every placement ancestor up to the root.
        A missing user ends the walk silently. Returns the number of nodes written.
        """
        policy = self._weakLegPolicy(tenantId)
        currentId = userId
        visited = set()
        updated = 0

        while currentId and updated < config.PLACEMENT_MAX_DEPTH:
            if currentId in visited:
                logger.error(f"Placement cycle at user {currentId} in tenant {tenantId}")
                break
            visited.add(currentId)

            result = await self._recompute(tenantId, currentId, policy)
            if result is None:
                break

            updated += 1
            _, userData = result
            currentId = userData.get("placementId")
        else:
            if currentId:
                logger.warning(
                    f"Propagation from {userId} stopped at depth guard "
                    f"{config.PLACEMENT_MAX_DEPTH} in tenant {tenantId}"
                )

        if updated:
            await eventBus.emit(MLMEvents.TREE_UPDATED, {
                "tenantId": tenantId,
                "userId": userId,
                "nodesUpdated": updated
            })

        return updated

    async def rebuildTenantTree(self, tenantId: str) -> int:
        """Recompute every node of a tenant exactly once, leaves first."""
        policy = self._weakLegPolicy(tenantId)
        users = {
            snapshot.id: snapshot.data
            for snapshot in self.store.query(paths.usersCollection(tenantId))
        }

        childrenOf = defaultdict(list)
        roots = []
        for userId, userData in users.items():
            parentId = userData.get("placementId")
            if parentId and parentId in users:
                childrenOf[parentId].append(userId)
            else:
                roots.append(userId)

        # Iterative post-order so children are finished before their parent
        order = []
        stack = [(rootId, False) for rootId in reversed(roots)]
        while stack:
            userId, expanded = stack.pop()
            if expanded:
                order.append(userId)
                continue
            stack.append((userId, True))
            for childId in reversed(childrenOf[userId]):
                stack.append((childId, False))

        unreachable = len(users) - len(order)
        if unreachable:
            logger.error(f"{unreachable} users of tenant {tenantId} sit in a placement cycle, skipped")

        nodes: Dict[str, Dict[str, Any]] = {}
        for userId in order:
            children = [(childId, users[childId], nodes[childId]) for childId in childrenOf[userId]]
            node = aggregateNode(tenantId, userId, users[userId], children, policy)
            node["lastUpdated"] = timeMachine.now
            self.store.set(paths.treeDoc(tenantId, userId), node, merge=True)
            nodes[userId] = node

        logger.info(f"Rebuilt {len(nodes)} tree nodes for tenant {tenantId}")
        return len(nodes)

    async def migrateLegacyTreeNodes(self, tenantId: str) -> int:
        """Move binaryTree/position documents to the canonical binaryTree/main."""
        migrated = 0
        for snapshot in self.store.query(paths.usersCollection(tenantId)):
            legacyPath = paths.treeDoc(tenantId, snapshot.id, paths.LEGACY_TREE_DOC)
            legacy = self.store.get(legacyPath)
            if legacy is None:
                continue

            mainPath = paths.treeDoc(tenantId, snapshot.id)
            if self.store.get(mainPath) is None:
                self.store.set(mainPath, legacy)
                migrated += 1
            self.store.delete(legacyPath)

        logger.info(f"Migrated {migrated} legacy tree nodes for tenant {tenantId}")
        return migrated

    async def _recompute(
            self,
            tenantId: str,
            userId: str,
            policy: WeakLegLogic
    ) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        userData = self.store.get(paths.userDoc(tenantId, userId))
        if userData is None:
            logger.info(f"User {userId} not found in tenant {tenantId}, branch skipped")
            return None

        children = []
        for child in self.store.query(paths.usersCollection(tenantId), [("placementId", "==", userId)]):
            childTree = self.store.get(paths.treeDoc(tenantId, child.id)) or {}
            children.append((child.id, child.data, childTree))

        node = aggregateNode(tenantId, userId, userData, children, policy)
        node["lastUpdated"] = timeMachine.now
        self.store.set(paths.treeDoc(tenantId, userId), node, merge=True)

        return node, userData

    def _weakLegPolicy(self, tenantId: str) -> WeakLegLogic:
        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None:
            return WeakLegLogic.SMALLER
        return mlmConfig.binaryMatching.weakLegLogic
