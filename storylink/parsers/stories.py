"""Parse epic and story markdown documents into Epic/Story models."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from storylink import config
from storylink.errors import MalformedDocumentError
from storylink.models import Epic, Story
from storylink.observability import record_parser_failure

logger = logging.getLogger("storylink.parser")

DEFAULT_STORY_EPIC_ID = "001"

EPIC_FILE_PATTERN = r"^EPIC-\d+.*\.md$"
STORY_FILE_PATTERN = r"^STORY-\d+.*\.md$"

_EPIC_FILENAME_RE = re.compile(r"^EPIC-(\d+)", re.IGNORECASE)
_STORY_FILENAME_RE = re.compile(r"^STORY-(\d+)", re.IGNORECASE)
_EPIC_HEADING_ID_RE = re.compile(r"^#\s+Epic\s+(\d+)", re.IGNORECASE | re.MULTILINE)
_STORY_HEADING_ID_RE = re.compile(r"^#\s+Story\s+(?:\d+\.)?(\d+)", re.IGNORECASE | re.MULTILINE)
_H1_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_EPIC_PREFIX_RE = re.compile(r"^Epic\s+\d+\s*:\s*", re.IGNORECASE)
_STORY_PREFIX_RE = re.compile(r"^Story\s+[\d.]+\s*:\s*", re.IGNORECASE)
_STATUS_RE = re.compile(r"^##\s*Status:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_PRIORITY_RE = re.compile(r"^##\s*Priority:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*+])\s+(?:\[[ xX]\]\s*)?(.+?)\s*$")


def _extract_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    match = re.match(r"^---\s*\n(.*?)\n---\s*\n?(.*)", text, re.DOTALL)
    if not match:
        return {}, text
    try:
        fm = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise MalformedDocumentError("Invalid YAML front matter") from exc
    if not isinstance(fm, dict):
        raise MalformedDocumentError("Front matter is not a mapping")
    return fm, match.group(2)


def _split_document(text: str, filename: str) -> tuple[dict[str, Any], str]:
    try:
        return _extract_frontmatter(text)
    except MalformedDocumentError as exc:
        logger.warning(f"Ignoring front matter in {filename}: {exc}")
        body = re.sub(r"^---\s*\n.*?\n---\s*\n?", "", text, count=1, flags=re.DOTALL)
        return {}, body


def _section(body: str, heading_pattern: str) -> str:
    """Return the text under a level-2 heading, up to the next heading."""
    match = re.search(
        rf"^##\s*{heading_pattern}[:\s]*\n+([\s\S]*?)(?=^#|\Z)",
        body,
        re.IGNORECASE | re.MULTILINE,
    )
    return match.group(1).strip() if match else ""


def _list_items(section: str) -> list[str]:
    items: list[str] = []
    for line in section.splitlines():
        match = _LIST_ITEM_RE.match(line)
        if match:
            items.append(match.group(1).strip())
    return items


def _fm_string(fm: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = fm.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _fm_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on", "verified"}
    return default


def _first_heading(body: str) -> str:
    match = _H1_RE.search(body)
    return match.group(1).strip() if match else ""


def parse_epic_document(text: str, filename: str) -> Epic | None:
    """Parse an epic document. Returns None when no numeric id can be found."""
    fm, body = _split_document(text or "", filename)

    id_match = _EPIC_FILENAME_RE.match(filename) or _EPIC_HEADING_ID_RE.search(body)
    if not id_match:
        return None
    epic_id = id_match.group(1)

    heading = _first_heading(body)
    title = _fm_string(fm, "title") or _EPIC_PREFIX_RE.sub("", heading).strip() or f"Epic {epic_id}"

    status_match = _STATUS_RE.search(body)
    priority_match = _PRIORITY_RE.search(body)

    return Epic(
        id=epic_id,
        title=title,
        description=_section(body, r"Epic\s*(?:Description|Goal)"),
        status=_fm_string(fm, "status") or (status_match.group(1).strip() if status_match else "Unknown"),
        priority=(_fm_string(fm, "priority") or (priority_match.group(1).strip() if priority_match else "medium")).lower(),
        filePath=filename,
    )


def parse_story_document(
    text: str,
    filename: str,
    default_epic_id: str = DEFAULT_STORY_EPIC_ID,
) -> Story | None:
    """Parse a story document. Returns None when no numeric id can be found."""
    fm, body = _split_document(text or "", filename)

    id_match = _STORY_FILENAME_RE.match(filename) or _STORY_HEADING_ID_RE.search(body)
    if not id_match:
        return None
    story_num = id_match.group(1)
    epic_id = _fm_string(fm, "epic", "epic_id", "epicId") or default_epic_id

    heading = _first_heading(body)
    title = _fm_string(fm, "title") or _STORY_PREFIX_RE.sub("", heading).strip() or Path(filename).stem

    status_match = _STATUS_RE.search(body)

    criteria_raw = fm.get("acceptance_criteria")
    if isinstance(criteria_raw, list):
        criteria = [str(item).strip() for item in criteria_raw if str(item).strip()]
    else:
        criteria = _list_items(_section(body, r"Acceptance Criteria"))

    return Story(
        id=f"{epic_id}.{story_num}",
        epicId=epic_id,
        title=title,
        description=_section(body, r"User Story"),
        status=_fm_string(fm, "status") or (status_match.group(1).strip() if status_match else "Unknown"),
        verified=_fm_bool(fm.get("verified")),
        verificationStatus=_fm_string(fm, "verification_status", "verificationStatus") or "pending",
        acceptanceCriteria=criteria,
        filePath=filename,
    )


def _sort_key_numeric(value: str) -> tuple[int, str]:
    try:
        return int(value), value
    except ValueError:
        return 0, value


async def _read_or_skip(documents, path: Path, parser: str, project_id: str) -> str | None:
    try:
        return await documents.read_document(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.error(f"Error reading {parser} file {path.name}: {exc}")
        record_parser_failure(parser, project_id=project_id)
        return None


async def scan_planning_documents(
    documents,
    project_root: Path,
    *,
    search_roots: tuple[str, ...] = config.EPIC_SEARCH_ROOTS,
    project_id: str = "",
) -> tuple[list[Epic], list[Story]]:
    """Collect epics and stories from every search root.

    Roots are tried in order; when an id appears under more than one root the
    first one wins. Unreadable documents are skipped.
    """
    epics: dict[str, Epic] = {}
    stories: dict[str, Story] = {}

    for root_name in search_roots:
        epics_dir = project_root / root_name
        stories_dir = epics_dir / "stories"

        for filename in await documents.list_documents(epics_dir, EPIC_FILE_PATTERN):
            text = await _read_or_skip(documents, epics_dir / filename, "epic", project_id)
            if text is None:
                continue
            epic = parse_epic_document(text, filename)
            if epic and epic.id not in epics:
                epic.filePath = f"{root_name}/{filename}"
                epics[epic.id] = epic

        for filename in await documents.list_documents(stories_dir, STORY_FILE_PATTERN):
            text = await _read_or_skip(documents, stories_dir / filename, "story", project_id)
            if text is None:
                continue
            story = parse_story_document(text, filename)
            if story and story.id not in stories:
                story.filePath = f"{root_name}/stories/{filename}"
                stories[story.id] = story

    sorted_epics = sorted(epics.values(), key=lambda e: _sort_key_numeric(e.id))
    sorted_stories = sorted(
        stories.values(),
        key=lambda s: (_sort_key_numeric(s.epicId or ""), _sort_key_numeric(s.id.rsplit(".", 1)[-1])),
    )
    return sorted_epics, sorted_stories


def has_planning_roots(project_root: Path, search_roots: tuple[str, ...] = config.EPIC_SEARCH_ROOTS) -> bool:
    return any((project_root / root_name).is_dir() for root_name in search_roots)
