"""
Topic catalog.

Static knowledge about topics that the analytics cannot infer from activity
data: prerequisites, difficulty, complexity, importance weighting and which
topics are adjacent ("next level") to one another.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field


class TopicInfo(BaseModel):
    """Catalog entry for one topic."""

    name: str
    difficulty: int = Field(default=5, ge=1, le=10)
    prerequisites: list[str] = Field(default_factory=list)
    adjacent: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    complexity_factor: int = Field(default=0, ge=-3, le=4)
    importance: float = Field(default=1.0, gt=0)
    base_minutes: float | None = Field(default=None, gt=0)


class TopicCatalog(BaseModel):
    topics: dict[str, TopicInfo] = Field(default_factory=dict)

    @classmethod
    def from_topics(cls, topics: list[TopicInfo]) -> TopicCatalog:
        return cls(topics={t.name: t for t in topics})

    @classmethod
    def load(cls, path: str | Path) -> TopicCatalog:
        """Load a catalog from a JSON file holding a list of topic entries."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict) and "topics" in data:
            data = data["topics"]
        if isinstance(data, dict):
            data = [{"name": name, **info} for name, info in data.items()]
        catalog = cls.from_topics([TopicInfo.model_validate(item) for item in data])
        logger.info("Loaded topic catalog with {} topics from {}", len(catalog.topics), path)
        return catalog

    def get(self, topic: str) -> TopicInfo | None:
        return self.topics.get(topic)

    def importance(self, topic: str) -> float:
        info = self.topics.get(topic)
        return info.importance if info else 1.0

    def complexity_factor(self, topic: str) -> int:
        info = self.topics.get(topic)
        return info.complexity_factor if info else 0

    def difficulty(self, topic: str) -> int:
        info = self.topics.get(topic)
        return info.difficulty if info else 5

    def prerequisites(self, topic: str) -> list[str]:
        info = self.topics.get(topic)
        return list(info.prerequisites) if info else []

    def next_level(self, topic: str) -> list[str]:
        """Adjacent topics that are harder than ``topic``."""
        info = self.topics.get(topic)
        if info is None:
            return []
        candidates = set(info.adjacent)
        # Topics that list this one as a prerequisite are adjacent as well
        candidates.update(
            other.name for other in self.topics.values() if topic in other.prerequisites
        )
        harder = [
            name for name in candidates
            if name != topic and self.difficulty(name) > info.difficulty
        ]
        return sorted(harder, key=lambda name: (self.difficulty(name), name))

    def match(self, text: str) -> list[str]:
        """Topics whose name or alias appears in free text."""
        lowered = text.lower()
        matches = []
        for info in self.topics.values():
            needles = [info.name, *info.aliases]
            if any(needle.lower() in lowered for needle in needles if needle):
                matches.append(info.name)
        return sorted(matches)
