"""
Goal Decomposer.

Splits a learning goal into prerequisite-ordered sub-objectives, each with a
topic reference, a numeric success metric and a personalized time estimate.

A goal names its topics in any of three ways:
- explicit sub-objectives with their own prerequisite lists
- target topics from the catalog
- free text, matched against catalog topic names and aliases

Prerequisites from the catalog are expanded transitively. The order is a
topological sort with lexicographic tie-breaking; cycles and references to
unknown topics are rejected as input errors.

Time estimate per sub-objective:

    minutes = base_minutes × (0.1 + 0.9 × (100 - mastery) / 100)
                           × exp(-velocity_factor × average_improvement_rate)

which is strictly decreasing in mastery level.
"""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from config import Settings, get_settings
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.errors import InputValidationError
from mastery_sprint.core.models import MasteryModel


class SubObjectiveInput(BaseModel):
    topic: str = Field(min_length=1)
    prerequisites: list[str] = Field(default_factory=list)
    target_accuracy: float | None = Field(default=None, ge=0, le=100)
    description: str | None = None


class GoalInput(BaseModel):
    """A learning goal as submitted by the caller."""

    text: str = ""
    target_topics: list[str] = Field(default_factory=list)
    sub_objectives: list[SubObjectiveInput] = Field(default_factory=list)
    include_prerequisites: bool = True


@dataclass
class SubObjective:
    topic: str
    description: str
    metric: str  # "mastery_level" or "accuracy"
    target: float
    estimated_minutes: float
    current_mastery: float
    prerequisites: list[str] = field(default_factory=list)

    @property
    def achieved(self) -> bool:
        return self.metric == "mastery_level" and self.current_mastery >= self.target

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "description": self.description,
            "metric": self.metric,
            "target": self.target,
            "estimated_minutes": self.estimated_minutes,
            "current_mastery": self.current_mastery,
            "prerequisites": list(self.prerequisites),
        }


@dataclass
class GoalPlan:
    goal: str
    sub_objectives: list[SubObjective]

    @property
    def total_minutes(self) -> float:
        return round(sum(s.estimated_minutes for s in self.sub_objectives), 1)

    @property
    def topics(self) -> list[str]:
        return [s.topic for s in self.sub_objectives]

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal": self.goal,
            "sub_objectives": [s.to_dict() for s in self.sub_objectives],
            "total_minutes": self.total_minutes,
        }


def topological_order(graph: dict[str, set[str]]) -> list[str]:
    """
    Kahn's algorithm over ``node -> prerequisites``; smallest name first among ready nodes.

    Raises:
        InputValidationError: the graph contains a cycle
    """
    dependents: dict[str, set[str]] = {node: set() for node in graph}
    remaining = {node: len(prereqs) for node, prereqs in graph.items()}
    for node, prereqs in graph.items():
        for prereq in prereqs:
            dependents[prereq].add(node)

    ready = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(graph):
        cyclic = sorted(node for node, count in remaining.items() if count > 0)
        raise InputValidationError(
            "Goal prerequisites contain a cycle",
            field_errors={"prerequisites": f"cycle among: {', '.join(cyclic)}"},
        )
    return order


class GoalDecomposer:
    """Builds GoalPlans from goals, the catalog and the user's mastery."""

    def __init__(self, settings: Settings | None = None, catalog: TopicCatalog | None = None):
        self.settings = settings or get_settings()
        self.catalog = catalog or TopicCatalog()

    def estimate_minutes(self, topic: str, mastery: float, improvement_rate: float) -> float:
        info = self.catalog.get(topic)
        base = info.base_minutes if info and info.base_minutes else self.settings.goal_base_minutes
        mastery = min(100.0, max(0.0, mastery))
        remaining = 0.1 + 0.9 * (100.0 - mastery) / 100.0
        pace = math.exp(-self.settings.goal_velocity_factor * improvement_rate)
        return round(base * remaining * pace, 1)

    def _graph(self, goal: GoalInput) -> tuple[dict[str, set[str]], dict[str, SubObjectiveInput]]:
        explicit = {s.topic: s for s in goal.sub_objectives}
        graph: dict[str, set[str]] = {}
        unknown: list[str] = []

        seeds = list(explicit)
        seeds += [t for t in goal.target_topics if t not in explicit]
        if goal.text:
            seeds += [t for t in self.catalog.match(goal.text) if t not in seeds]
        for topic in goal.target_topics:
            if topic not in explicit and self.catalog.get(topic) is None:
                unknown.append(topic)

        pending = list(dict.fromkeys(seeds))
        while pending:
            topic = pending.pop(0)
            if topic in graph:
                continue
            if topic in explicit:
                prereqs = set(explicit[topic].prerequisites)
            else:
                prereqs = set(self.catalog.prerequisites(topic))
            for prereq in sorted(prereqs):
                if prereq not in explicit and self.catalog.get(prereq) is None:
                    unknown.append(prereq)
                elif goal.include_prerequisites or prereq in explicit:
                    pending.append(prereq)
            graph[topic] = prereqs

        if unknown:
            raise InputValidationError(
                "Goal references unknown topics",
                field_errors={"topics": ", ".join(sorted(set(unknown)))},
            )
        if not graph:
            raise InputValidationError(
                "Goal does not reference any known topic",
                field_errors={"text": "no catalog topic matched"},
            )
        # Without prerequisite expansion, drop edges to topics outside the goal
        graph = {topic: {p for p in prereqs if p in graph} for topic, prereqs in graph.items()}
        return graph, explicit

    def decompose(
        self,
        goal: GoalInput | dict[str, Any] | str,
        model: MasteryModel | None = None,
    ) -> GoalPlan:
        """
        Decompose a goal for one user.

        Args:
            goal: GoalInput, its dict form, or plain goal text
            model: The user's mastery model (None treats every topic as unlearned)

        Raises:
            InputValidationError: malformed goal, unknown topic, or a prerequisite cycle
        """
        if isinstance(goal, str):
            goal = {"text": goal}
        if isinstance(goal, dict):
            try:
                goal = GoalInput.model_validate(goal)
            except ValidationError as e:
                raise InputValidationError(
                    "Invalid goal",
                    field_errors={".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()},
                ) from e

        graph, explicit = self._graph(goal)
        order = topological_order(graph)
        rate = model.learning_patterns.average_improvement_rate if model else 0.0

        sub_objectives = []
        for topic in order:
            entry = model.get_topic(topic) if model else None
            mastery = entry.mastery_level if entry else 0.0
            requested = explicit.get(topic)
            if requested is not None and requested.target_accuracy is not None:
                metric, target = "accuracy", requested.target_accuracy
            else:
                metric, target = "mastery_level", self.settings.goal_target_mastery
            description = requested.description if requested and requested.description else None
            sub_objectives.append(
                SubObjective(
                    topic=topic,
                    description=description or f"Reach {target:.0f} {metric.replace('_', ' ')} in {topic}",
                    metric=metric,
                    target=target,
                    estimated_minutes=self.estimate_minutes(topic, mastery, rate),
                    current_mastery=mastery,
                    prerequisites=sorted(graph[topic]),
                )
            )

        plan = GoalPlan(
            goal=goal.text or ", ".join(goal.target_topics or list(explicit)),
            sub_objectives=sub_objectives,
        )
        logger.info(
            "Decomposed goal into {} sub-objectives ({} min)",
            len(plan.sub_objectives),
            plan.total_minutes,
        )
        return plan
