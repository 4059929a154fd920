"""Inspiration data models."""
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

CATEGORY_WORK = "work"
CATEGORY_LIFE = "life"
CATEGORY_CREATION = "creation"
CATEGORY_LEARNING = "learning"

# Order matters: category counts are reported in this order
VALID_CATEGORIES = (CATEGORY_WORK, CATEGORY_LIFE, CATEGORY_CREATION, CATEGORY_LEARNING)
DEFAULT_CATEGORY = CATEGORY_CREATION

CATEGORY_DESCRIPTIONS = {
    CATEGORY_WORK: "work, business ideas, career development, project plans",
    CATEGORY_LIFE: "life reflections, personal experiences, everyday thoughts, feelings",
    CATEGORY_CREATION: "creative work, artistic inspiration, design ideas, creative plans",
    CATEGORY_LEARNING: "study notes, knowledge summaries, skill building, education",
}


@dataclass
class InspirationAnalysis:
    """
    Structured record distilled from a conversation.

    Attributes:
        title: Short non-empty title
        summary: Core points of the inspiration
        categories: Non-empty subset of VALID_CATEGORIES
        tags: Free-text keywords, insertion order preserved
    """
    title: str
    summary: str
    categories: List[str] = field(default_factory=lambda: [DEFAULT_CATEGORY])
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
