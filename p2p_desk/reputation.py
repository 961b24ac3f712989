"""
Trade Desk - Reputation Classifier.

Maps a numeric score to a trust tier through a single ordered
threshold table:

    score <   0  -> PROBLEMATIC
      0 ..  49   -> NOVICE
     50 ..  99   -> BRONZE
    100 .. 199   -> SILVER
    200 .. 499   -> GOLD
    >= 500       -> P2P_MASTER
"""

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class ReputationTier(Enum):
    PROBLEMATIC = "Problematic"
    NOVICE = "Novice"
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    P2P_MASTER = "P2P Master"


# Lower bound (inclusive) of every tier after the first.
TIER_THRESHOLDS: List[int] = [0, 50, 100, 200, 500]

TIERS_IN_ORDER: List[ReputationTier] = [
    ReputationTier.PROBLEMATIC,
    ReputationTier.NOVICE,
    ReputationTier.BRONZE,
    ReputationTier.SILVER,
    ReputationTier.GOLD,
    ReputationTier.P2P_MASTER,
]

TIER_ICONS: Dict[ReputationTier, str] = {
    ReputationTier.PROBLEMATIC: "🔴",
    ReputationTier.NOVICE: "🔰",
    ReputationTier.BRONZE: "🥉",
    ReputationTier.SILVER: "🥈",
    ReputationTier.GOLD: "🥇",
    ReputationTier.P2P_MASTER: "🏆",
}


@dataclass(frozen=True)
class ReputationLevel:
    tier: ReputationTier
    icon: str
    score: int

    @property
    def label(self) -> str:
        return f"{self.icon} {self.tier.value}"


def classify(score: int) -> ReputationLevel:
    """Classify a score. Total over all integers."""
    tier = TIERS_IN_ORDER[bisect_right(TIER_THRESHOLDS, score)]
    return ReputationLevel(tier=tier, icon=TIER_ICONS[tier], score=score)
