"""Epic → story → task aggregation and the statistics derived from it."""
from __future__ import annotations

from typing import Any

from storylink.linking import LinkResult, link_tasks_to_stories, percentage, round_half_up, story_ref
from storylink.models import Epic, Story, Task

_STATUS_KEYS = {
    "completed": "completed",
    "in_progress": "inProgress",
    "pending": "pending",
}


def _empty_metrics() -> dict[str, int]:
    return {"taskCount": 0, "completedTasks": 0, "completionRate": 0}


def placeholder_epic(epic_id: str) -> dict[str, Any]:
    return {
        "id": epic_id,
        "title": f"Epic {epic_id}",
        "description": f"Stories for Epic {epic_id}",
        "status": "Unknown",
        "priority": "medium",
        "filePath": "",
        "placeholder": True,
    }


def _epic_node(epic: dict[str, Any]) -> dict[str, Any]:
    return {
        "epic": epic,
        "stories": {},
        "metrics": {"storyCount": 0, **_empty_metrics()},
    }


def build_hierarchy(tasks: list[Task], stories: list[Story], epics: list[Epic]) -> dict[str, dict[str, Any]]:
    """Build ``{epicId: {epic, stories: {storyId: {story, tasks, metrics}}, metrics}}``.

    A story whose epic is unknown gets a placeholder epic so it stays
    browsable. Stories without an epic id and tasks referencing unknown
    stories stay outside the tree.
    """
    hierarchy: dict[str, dict[str, Any]] = {}
    for epic in epics:
        hierarchy[epic.id] = _epic_node({**epic.model_dump(), "placeholder": False})

    for story in stories:
        epic_id = (story.epicId or "").strip()
        if not epic_id:
            continue
        if epic_id not in hierarchy:
            hierarchy[epic_id] = _epic_node(placeholder_epic(epic_id))
        node = hierarchy[epic_id]
        node["stories"][story.id] = {
            "story": story.model_dump(),
            "tasks": [],
            "metrics": _empty_metrics(),
        }
        node["metrics"]["storyCount"] += 1

    for task in tasks:
        ref = story_ref(task)
        if not ref:
            continue
        for epic_id, node in hierarchy.items():
            story_node = node["stories"].get(ref)
            if story_node is None:
                continue
            story_node["tasks"].append({**task.model_dump(), "epicId": epic_id})
            story_node["metrics"]["taskCount"] += 1
            if task.status == "completed":
                story_node["metrics"]["completedTasks"] += 1
            break

    # Epic rates come from summed counts, never from averaged story rates.
    for node in hierarchy.values():
        epic_total = 0
        epic_completed = 0
        for story_node in node["stories"].values():
            metrics = story_node["metrics"]
            metrics["completionRate"] = percentage(metrics["completedTasks"], metrics["taskCount"])
            epic_total += metrics["taskCount"]
            epic_completed += metrics["completedTasks"]
        node["metrics"]["taskCount"] = epic_total
        node["metrics"]["completedTasks"] = epic_completed
        node["metrics"]["completionRate"] = percentage(epic_completed, epic_total)

    return hierarchy


def hierarchy_metrics(
    tasks: list[Task],
    stories: list[Story],
    hierarchy: dict[str, dict[str, Any]],
    link_result: LinkResult | None = None,
) -> dict[str, int]:
    result = link_result or link_tasks_to_stories(tasks, stories)
    completed = sum(1 for task in tasks if task.status == "completed")
    return {
        "totalEpics": len(hierarchy),
        "totalStories": len(stories),
        "totalTasks": len(tasks),
        "tasksWithStories": result.tasks_with_reference,
        "storiesWithTasks": len(result.linked_story_ids),
        "epicsWithStories": sum(1 for node in hierarchy.values() if node["metrics"]["storyCount"] > 0),
        "completedTasks": completed,
        "completionRate": percentage(completed, len(tasks)),
    }


def empty_hierarchy_metrics() -> dict[str, int]:
    return hierarchy_metrics([], [], {})


def _average(part: int, whole: int) -> float:
    if whole <= 0:
        return 0
    return round_half_up(part / whole * 10) / 10


def build_dashboard_stats(tasks: list[Task], stories: list[Story], epics: list[Epic]) -> dict[str, Any]:
    """Return {taskStats, storyStats, epicStats, agentStats}."""
    total = len(tasks)
    completed = sum(1 for task in tasks if task.status == "completed")
    task_stats = {
        "total": total,
        "completed": completed,
        "inProgress": sum(1 for task in tasks if task.status == "in_progress"),
        "pending": sum(1 for task in tasks if task.status == "pending"),
        "completionRate": percentage(completed, total),
    }

    agents: dict[str, dict[str, int]] = {}
    assigned = 0
    for task in tasks:
        agent = (task.agent or "").strip()
        if not agent:
            continue
        assigned += 1
        bucket = agents.setdefault(agent, {"total": 0, "completed": 0, "inProgress": 0, "pending": 0})
        bucket["total"] += 1
        status_key = _STATUS_KEYS.get(task.status)
        if status_key:
            bucket[status_key] += 1
    agent_stats = {
        "assigned": assigned,
        "unassigned": total - assigned,
        "agents": agents,
    }

    result = link_tasks_to_stories(tasks, stories)
    stories_with_tasks = len(result.linked_story_ids)
    story_stats = {
        "total": len(stories),
        "withTasks": stories_with_tasks,
        "withoutTasks": len(stories) - stories_with_tasks,
        "avgTasksPerStory": _average(result.tasks_with_reference, len(stories)),
    }

    story_epic_ids = {story.epicId for story in stories if story.epicId}
    epics_with_stories = sum(1 for epic in epics if epic.id in story_epic_ids)
    epic_stats = {
        "total": len(epics),
        "withStories": epics_with_stories,
        "withoutStories": len(epics) - epics_with_stories,
        "avgStoriesPerEpic": _average(len(stories), len(epics)),
    }

    return {
        "taskStats": task_stats,
        "storyStats": story_stats,
        "epicStats": epic_stats,
        "agentStats": agent_stats,
    }


def build_story_context(tasks: list[Task], stories: list[Story], epics: list[Epic]) -> dict[str, Any]:
    """Return the tasks-with-stories enrichment: storyContext, epicHierarchy, aggregatedStats."""
    story_context: dict[str, dict[str, Any]] = {
        story.id: {
            "id": story.id,
            "title": story.title,
            "epic": story.epicId,
            "status": story.status,
            "verified": story.verified,
            "verificationStatus": story.verificationStatus,
            "acceptanceCriteria": list(story.acceptanceCriteria),
            "tasks": [],
        }
        for story in stories
    }
    epic_hierarchy: dict[str, dict[str, Any]] = {
        epic.id: {
            "id": epic.id,
            "title": epic.title,
            "description": epic.description,
            "status": epic.status,
            "stories": [],
        }
        for epic in epics
    }

    tasks_with_stories = 0
    for task in tasks:
        ref = story_ref(task)
        if ref and ref in story_context:
            story_context[ref]["tasks"].append(task.id)
            tasks_with_stories += 1

    for story in stories:
        if story.epicId and story.epicId in epic_hierarchy:
            epic_hierarchy[story.epicId]["stories"].append(story.id)

    stories_with_tasks = sum(1 for entry in story_context.values() if entry["tasks"])
    return {
        "storyContext": story_context,
        "epicHierarchy": epic_hierarchy,
        "aggregatedStats": {
            "totalTasks": len(tasks),
            "tasksWithStories": tasks_with_stories,
            "tasksWithoutStories": len(tasks) - tasks_with_stories,
            "storiesWithTasks": stories_with_tasks,
            "storiesWithoutTasks": len(story_context) - stories_with_tasks,
            "totalStories": len(stories),
            "totalEpics": len(epics),
        },
    }
