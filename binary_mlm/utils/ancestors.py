# binary_mlm/utils/ancestors.py
"""
Upline walks over either parent pointer of a user document.

Users carry two independent parent pointers: sponsorId (referral lineage,
used by the income distributors) and placementId (binary tree, used for
volume aggregation). Both chains are walked the same way.
"""
from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging

import config
from binary_mlm.store import paths

logger = logging.getLogger(__name__)

SPONSOR = "sponsorId"
PLACEMENT = "placementId"


def walkAncestors(
        store,
        tenantId: str,
        userId: str,
        pointer: str = SPONSOR,
        maxDepth: Optional[int] = None,
        startData: Optional[Dict[str, Any]] = None
) -> Iterator[Tuple[int, str, Dict[str, Any]]]:
    """
    Yield (depth, ancestorId, ancestorData) walking up the pointer chain.
    Depth 1 is the immediate parent. The walk ends when the pointer is
    missing, the depth guard is reached, an ancestor document is missing or
    the chain loops back on itself.
    """
    if maxDepth is None:
        maxDepth = config.UPLINE_MAX_DEPTH if pointer == SPONSOR else config.PLACEMENT_MAX_DEPTH

    currentData = startData
    if currentData is None:
        currentData = store.get(paths.userDoc(tenantId, userId))
        if currentData is None:
            return

    visited = {userId}
    depth = 0

    while depth < maxDepth:
        parentId = currentData.get(pointer)
        if not parentId:
            return

        if parentId in visited:
            logger.error(f"Cycle in {pointer} chain of tenant {tenantId} at user {parentId}")
            return

        parentData = store.get(paths.userDoc(tenantId, parentId))
        if parentData is None:
            logger.warning(f"Ancestor {parentId} of {userId} missing in tenant {tenantId}, chain ends")
            return

        depth += 1
        visited.add(parentId)
        yield depth, parentId, parentData
        currentData = parentData


def getPlacementPath(store, tenantId: str, userId: str) -> List[str]:
    """Placement path from the root down to userId."""
    if store.get(paths.userDoc(tenantId, userId)) is None:
        return []

    path = [userId]
    for _, ancestorId, _ in walkAncestors(store, tenantId, userId, PLACEMENT):
        path.append(ancestorId)

    path.reverse()
    return path
