# binary_mlm/config/plan.py
"""
MLM plan configuration and constants.

Each tenant keeps its rules in tenants/{tenantId}/mlmConfig/main; the
dataclasses below are the typed view the services work with. Sections that
are missing from the document parse to disabled defaults.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal


class IncomeType(Enum):
    DIRECT = "direct"
    BINARY_MATCHING = "binary_matching"
    SPONSOR_MATCHING = "sponsor_matching"
    REPURCHASE = "repurchase"
    RANK_REWARD = "rank_reward"


class CommissionStatus(Enum):
    PENDING = "pending"
    CREDITED = "credited"
    REJECTED = "rejected"


class CappingPeriod(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class WeakLegLogic(Enum):
    SMALLER = "smaller"
    LEFT = "left"
    RIGHT = "right"


class CreditTiming(Enum):
    INSTANT = "instant"
    DELAYED = "delayed"


LEFT = "left"
RIGHT = "right"

# Lock job types
DAILY_PAIRING_JOB = "daily-pairing"


def _enum(enumClass, value, default):
    try:
        return enumClass(value)
    except ValueError:
        return default


def _optionalDecimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or value == 0:
        return None
    return toDecimal(value)


@dataclass
class Qualification:
    """Thresholds an upline must meet; absent (None) thresholds always pass."""

    teamVolume: Optional[Decimal] = None
    pairs: Optional[Decimal] = None
    directs: Optional[int] = None
    leftVolume: Optional[Decimal] = None
    rightVolume: Optional[Decimal] = None

    @classmethod
    def fromDict(cls, data: Optional[Dict[str, Any]]) -> "Qualification":
        data = data or {}
        directs = data.get("directs")
        return cls(
            teamVolume=_optionalDecimal(data.get("teamVolume")),
            pairs=_optionalDecimal(data.get("pairs")),
            directs=int(directs) if directs else None,
            leftVolume=_optionalDecimal(data.get("leftVolume")),
            rightVolume=_optionalDecimal(data.get("rightVolume")),
        )

    @property
    def isEmpty(self) -> bool:
        return all(
            value is None for value in
            (self.teamVolume, self.pairs, self.directs, self.leftVolume, self.rightVolume)
        )

    @property
    def needsTree(self) -> bool:
        return any(
            value is not None for value in
            (self.teamVolume, self.pairs, self.leftVolume, self.rightVolume)
        )

    def isMetBy(
            self,
            totalVolume: Decimal = Decimal("0"),
            pairs: Decimal = Decimal("0"),
            directs: int = 0,
            leftVolume: Decimal = Decimal("0"),
            rightVolume: Decimal = Decimal("0")
    ) -> bool:
        if self.teamVolume is not None and totalVolume < self.teamVolume:
            return False
        if self.pairs is not None and pairs < self.pairs:
            return False
        if self.directs is not None and directs < self.directs:
            return False
        if self.leftVolume is not None and leftVolume < self.leftVolume:
            return False
        if self.rightVolume is not None and rightVolume < self.rightVolume:
            return False
        return True


@dataclass
class BinaryMatchingConfig:
    enabled: bool = False
    pairRatio: str = "1:1"
    pairIncome: Decimal = Decimal("0")
    cappingPeriod: CappingPeriod = CappingPeriod.DAILY
    cappingAmount: Optional[Decimal] = None  # None = no cap
    carryForward: bool = True
    flushOut: bool = False
    weakLegLogic: WeakLegLogic = WeakLegLogic.SMALLER

    @classmethod
    def fromDict(cls, data: Optional[Dict[str, Any]]) -> "BinaryMatchingConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            pairRatio=str(data.get("pairRatio") or "1:1"),
            pairIncome=toDecimal(data.get("pairIncome")),
            cappingPeriod=_enum(CappingPeriod, data.get("cappingPeriod"), CappingPeriod.DAILY),
            cappingAmount=_optionalDecimal(data.get("cappingAmount")),
            carryForward=bool(data.get("carryForward", True)),
            flushOut=bool(data.get("flushOut", False)),
            weakLegLogic=_enum(WeakLegLogic, data.get("weakLegLogic"), WeakLegLogic.SMALLER),
        )


@dataclass
class DirectIncomeConfig:
    enabled: bool = False
    type: str = "fixed"  # fixed, percentage
    value: Decimal = Decimal("0")
    creditTiming: CreditTiming = CreditTiming.INSTANT
    delayHours: int = 0

    @classmethod
    def fromDict(cls, data: Optional[Dict[str, Any]]) -> "DirectIncomeConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            type="percentage" if data.get("type") == "percentage" else "fixed",
            value=toDecimal(data.get("value")),
            creditTiming=_enum(CreditTiming, data.get("creditTiming"), CreditTiming.INSTANT),
            delayHours=int(data.get("delayHours") or 0),
        )


@dataclass
class SponsorLevel:
    level: int
    percentage: Decimal
    qualification: Qualification = field(default_factory=Qualification)


@dataclass
class SponsorMatchingConfig:
    enabled: bool = False
    levels: List[SponsorLevel] = field(default_factory=list)
    autoDisableIfInactive: bool = False
    inactiveDays: Optional[int] = None

    @classmethod
    def fromDict(cls, data: Optional[Dict[str, Any]]) -> "SponsorMatchingConfig":
        data = data or {}
        levels = [
            SponsorLevel(
                level=int(item["level"]),
                percentage=toDecimal(item.get("percentage")),
                qualification=Qualification.fromDict(item.get("qualification")),
            )
            for item in data.get("levels") or []
            if item.get("level")
        ]
        inactiveDays = data.get("inactiveDays")
        return cls(
            enabled=bool(data.get("enabled", False)),
            levels=sorted(levels, key=lambda level: level.level),
            autoDisableIfInactive=bool(data.get("autoDisableIfInactive", False)),
            inactiveDays=int(inactiveDays) if inactiveDays else None,
        )

    @property
    def maxLevel(self) -> int:
        return max((level.level for level in self.levels), default=0)


@dataclass
class RepurchaseConfig:
    enabled: bool = False
    repurchaseBV: Decimal = Decimal("0")  # minimum BV that triggers income
    incomePercentage: Decimal = Decimal("0")
    eligibleLevels: List[int] = field(default_factory=list)
    monthlyQualification: bool = False

    @classmethod
    def fromDict(cls, data: Optional[Dict[str, Any]]) -> "RepurchaseConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            repurchaseBV=toDecimal(data.get("repurchaseBV")),
            incomePercentage=toDecimal(data.get("incomePercentage")),
            eligibleLevels=sorted({int(level) for level in data.get("eligibleLevels") or [] if int(level) > 0}),
            monthlyQualification=bool(data.get("monthlyQualification", False)),
        )


@dataclass
class RankConfig:
    id: str
    name: str
    level: int
    qualification: Qualification
    cashReward: Optional[Decimal] = None
    autoAssign: bool = False

    @classmethod
    def fromDict(cls, data: Dict[str, Any]) -> "RankConfig":
        rewards = data.get("rewards") or {}
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            level=int(data.get("level") or 0),
            qualification=Qualification.fromDict(data.get("qualification")),
            cashReward=_optionalDecimal(rewards.get("cash")),
            autoAssign=bool(data.get("autoAssign", False)),
        )


@dataclass
class MLMConfig:
    tenantId: str
    binaryMatching: BinaryMatchingConfig = field(default_factory=BinaryMatchingConfig)
    directIncome: DirectIncomeConfig = field(default_factory=DirectIncomeConfig)
    sponsorMatching: SponsorMatchingConfig = field(default_factory=SponsorMatchingConfig)
    repurchaseIncome: RepurchaseConfig = field(default_factory=RepurchaseConfig)
    ranks: List[RankConfig] = field(default_factory=list)
    binaryPlanEnabled: bool = True

    @classmethod
    def fromDict(cls, tenantId: str, data: Dict[str, Any]) -> "MLMConfig":
        binaryPlan = data.get("binaryPlan")
        return cls(
            tenantId=tenantId,
            binaryMatching=BinaryMatchingConfig.fromDict(data.get("binaryMatching")),
            directIncome=DirectIncomeConfig.fromDict(data.get("directIncome")),
            sponsorMatching=SponsorMatchingConfig.fromDict(data.get("sponsorMatching")),
            repurchaseIncome=RepurchaseConfig.fromDict(data.get("repurchaseIncome")),
            ranks=[RankConfig.fromDict(rank) for rank in data.get("ranks") or [] if rank.get("id")],
            # Older configs carry no binaryPlan section: the plan is on by default
            binaryPlanEnabled=bool(binaryPlan.get("enabled", True)) if isinstance(binaryPlan, dict) else True,
        )


def loadConfig(store, tenantId: str) -> Optional[MLMConfig]:
    """Read and parse the tenant's MLM config; None when absent."""
    data = store.get(paths.mlmConfigDoc(tenantId))
    if data is None:
        return None
    return MLMConfig.fromDict(tenantId, data)
