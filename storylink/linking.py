"""Task↔story link analysis shared by the validation, hierarchy and dashboard views."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from storylink.models import Story, Task


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(part: int, whole: int) -> int:
    """Integer percentage in [0, 100]; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return max(0, min(100, round_half_up(part * 100 / whole)))


def story_ref(task: Task) -> str:
    return (task.storyId or "").strip()


@dataclass
class BrokenLink:
    task_id: str
    story_id: str


@dataclass
class LinkResult:
    """Partition of tasks by story reference.

    ``linked_tasks`` holds every task that carries a story reference, valid or
    not; references that match no story are also listed in ``broken_links``.
    """

    linked_tasks: list[Task] = field(default_factory=list)
    unlinked_tasks: list[Task] = field(default_factory=list)
    broken_links: list[BrokenLink] = field(default_factory=list)
    orphaned_stories: list[Story] = field(default_factory=list)
    linked_story_ids: list[str] = field(default_factory=list)

    @property
    def tasks_with_reference(self) -> int:
        return len(self.linked_tasks)

    @property
    def valid_links(self) -> list[Task]:
        broken = {link.task_id for link in self.broken_links}
        return [task for task in self.linked_tasks if task.id not in broken]

    @property
    def missing_story_ids(self) -> list[str]:
        seen: list[str] = []
        for link in self.broken_links:
            if link.story_id not in seen:
                seen.append(link.story_id)
        return seen


def link_tasks_to_stories(tasks: list[Task], stories: list[Story]) -> LinkResult:
    story_ids = {story.id for story in stories}
    result = LinkResult()
    referenced: set[str] = set()

    for task in tasks:
        ref = story_ref(task)
        if not ref:
            result.unlinked_tasks.append(task)
            continue
        result.linked_tasks.append(task)
        if ref in story_ids:
            referenced.add(ref)
        else:
            result.broken_links.append(BrokenLink(task_id=task.id, story_id=ref))

    for story in stories:
        if story.id in referenced:
            if story.id not in result.linked_story_ids:
                result.linked_story_ids.append(story.id)
        else:
            result.orphaned_stories.append(story)
    return result


def compute_health_score(result: LinkResult, total_tasks: int, total_stories: int) -> int:
    total_connections = total_tasks + total_stories
    if total_connections <= 0:
        return 100
    valid_connections = result.tasks_with_reference + len(result.linked_story_ids)
    return percentage(valid_connections, total_connections)


def _task_info(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "status": task.status,
        "storyId": task.storyId,
    }


def _story_info(story: Story) -> dict[str, Any]:
    return {
        "id": story.id,
        "title": story.title,
        "status": story.status,
        "epic": story.epicId,
    }


def build_recommendations(
    result: LinkResult,
    health_score: int,
) -> list[dict[str, Any]]:
    recommendations: list[dict[str, Any]] = []
    unlinked = len(result.unlinked_tasks)
    orphaned = len(result.orphaned_stories)
    missing = result.missing_story_ids

    if unlinked > 0:
        recommendations.append({
            "type": "unlinked-tasks",
            "priority": "medium",
            "message": f"{unlinked} tasks are not linked to stories. Consider creating stories or linking them to existing ones.",
            "count": unlinked,
        })
    if orphaned > 0:
        recommendations.append({
            "type": "orphaned-stories",
            "priority": "low",
            "message": f"{orphaned} stories have no associated tasks. Consider creating implementation tasks.",
            "count": orphaned,
        })
    if result.broken_links:
        recommendations.append({
            "type": "broken-links",
            "priority": "high",
            "message": f"{len(result.broken_links)} tasks reference non-existent stories. Please create these stories or fix the references.",
            "count": len(result.broken_links),
            "storyIds": missing,
        })

    if health_score >= 90:
        recommendations.append({
            "type": "health-excellent",
            "priority": "info",
            "message": "Excellent task-story linkage health! Your project has strong traceability.",
        })
    elif health_score >= 70:
        recommendations.append({
            "type": "health-good",
            "priority": "info",
            "message": "Good task-story linkage health. Consider addressing the recommendations to improve further.",
        })
    else:
        recommendations.append({
            "type": "health-poor",
            "priority": "high",
            "message": "Poor task-story linkage health. Immediate attention needed to improve project traceability.",
        })
    return recommendations


def build_validation_report(tasks: list[Task], stories: list[Story]) -> dict[str, Any]:
    """Return {summary, taskAnalysis, storyAnalysis, recommendations}."""
    result = link_tasks_to_stories(tasks, stories)
    health_score = compute_health_score(result, len(tasks), len(stories))
    broken_by_task = {link.task_id: link.story_id for link in result.broken_links}

    return {
        "summary": {
            "totalTasks": len(tasks),
            "tasksWithStories": result.tasks_with_reference,
            "tasksWithoutStories": len(result.unlinked_tasks),
            "totalStories": len(stories),
            "storiesWithTasks": len(result.linked_story_ids),
            "storiesWithoutTasks": len(result.orphaned_stories),
            "validLinks": len(result.valid_links),
            "brokenLinks": len(result.broken_links),
            "healthScore": health_score,
        },
        "taskAnalysis": {
            "linked": [_task_info(task) for task in result.valid_links],
            "unlinked": [_task_info(task) for task in result.unlinked_tasks],
            "brokenLinks": [
                {
                    **_task_info(task),
                    "storyId": broken_by_task[task.id],
                    "issue": "Story not found in project",
                }
                for task in result.linked_tasks
                if task.id in broken_by_task
            ],
        },
        "storyAnalysis": {
            "withTasks": [_story_info(story) for story in stories if story.id in result.linked_story_ids],
            "orphaned": [_story_info(story) for story in result.orphaned_stories],
            "missingFromProject": [
                {
                    "id": story_id,
                    "title": f"Story {story_id}",
                    "status": "unknown",
                    "issue": "Referenced by tasks but not found in project stories",
                }
                for story_id in result.missing_story_ids
            ],
        },
        "recommendations": build_recommendations(result, health_score),
    }
