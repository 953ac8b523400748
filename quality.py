"""
quality.py – Weighted corn quality score.

Four sub-scores (0–100), combined with fixed weights:
  condition (classifier label) 30%, length 30%, seed resistance 20%, soil 20%.
"""

import logging
from enum import Enum

log = logging.getLogger("cornsizer.quality")

WEIGHT_CONDITION = 0.30
WEIGHT_LENGTH = 0.30
WEIGHT_SEED = 0.20
WEIGHT_SOIL = 0.20

# Used when the photo could not be measured
DEFAULT_CORN_LENGTH_CM = 18.0

# English and Indonesian label keywords
_GOOD_KEYWORDS = ("good", "healthy", "baik")
_DAMAGED_KEYWORDS = ("damaged", "rusak")


class SeedResistance(str, Enum):
    STRONG = "strong"
    MEDIUM = "medium"
    WEAK = "weak"


class SoilCondition(str, Enum):
    MOIST = "moist"
    DRY = "dry"
    VERY_DRY = "very_dry"


_SEED_SCORES = {
    SeedResistance.STRONG: 100,
    SeedResistance.MEDIUM: 50,
    SeedResistance.WEAK: 0,
}

_SOIL_SCORES = {
    SoilCondition.MOIST: 100,
    SoilCondition.DRY: 50,
    SoilCondition.VERY_DRY: 0,
}


class QualityResult:
    def __init__(self, label: str, length_cm: float, condition: int, length: int, seed: int, soil: int):
        self.label = label
        self.length_cm = length_cm
        self.condition_score = condition
        self.length_score = length
        self.seed_score = seed
        self.soil_score = soil
        self.final_score = (
            condition * WEIGHT_CONDITION
            + length * WEIGHT_LENGTH
            + seed * WEIGHT_SEED
            + soil * WEIGHT_SOIL
        )

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "length_cm": self.length_cm,
            "condition_score": self.condition_score,
            "length_score": self.length_score,
            "seed_score": self.seed_score,
            "soil_score": self.soil_score,
            "final_score": round(self.final_score, 2),
        }


def condition_score(label: str) -> int:
    """100 for good/healthy, 50 for damaged, 0 for fungus/disease or anything unknown."""
    label = label.lower()
    if any(k in label for k in _GOOD_KEYWORDS):
        return 100
    if any(k in label for k in _DAMAGED_KEYWORDS):
        return 50
    return 0


def length_score(length_cm: float) -> int:
    if length_cm > 20:
        return 100
    if length_cm >= 15:
        return 75
    if length_cm >= 12:
        return 50
    if length_cm >= 7:
        return 25
    return 0


def calculate_quality(
    label: str,
    length_cm: float,
    seed: SeedResistance = SeedResistance.STRONG,
    soil: SoilCondition = SoilCondition.MOIST,
) -> QualityResult:
    result = QualityResult(
        label=label,
        length_cm=length_cm,
        condition=condition_score(label),
        length=length_score(length_cm),
        seed=_SEED_SCORES[SeedResistance(seed)],
        soil=_SOIL_SCORES[SoilCondition(soil)],
    )
    log.info("Quality: label=%s length=%.2fcm → %d/%d/%d/%d = %.1f",
             label, length_cm, result.condition_score, result.length_score,
             result.seed_score, result.soil_score, result.final_score)
    return result
