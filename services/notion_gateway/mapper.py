"""Mapping of Notion page objects onto task snapshots."""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from shared.dates import ensure_aware, tokyo_midnight, utc_now
from shared.models import TaskPriority, TaskSnapshot, TaskStatus, TaskTimeslot, TaskType
from shared.scope_matcher import PropertyName

logger = logging.getLogger(__name__)


def parse_notion_date(value: Any) -> Optional[datetime]:
    """
    Parse a Notion date ``start`` string.

    Full timestamps carry an offset (fractional seconds optional); a bare
    ``yyyy-MM-dd`` is read as midnight in Tokyo. Naive timestamps are read
    as Tokyo wall time.

    Returns:
        Aware datetime, or None when the value is not a parseable string
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if "T" in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return ensure_aware(parsed)
    try:
        return tokyo_midnight(date.fromisoformat(text))
    except ValueError:
        return None


def parse_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        parts = urlsplit(text)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return text


@dataclass(frozen=True)
class PropertyValue:
    """A Notion page property: its declared type and the raw JSON under it."""
    type: str
    raw: Any

    @classmethod
    def from_property(cls, prop: Any) -> Optional["PropertyValue"]:
        if not isinstance(prop, dict) or not isinstance(prop.get("type"), str):
            return None
        prop_type = prop["type"]
        return cls(type=prop_type, raw=prop.get(prop_type))

    @property
    def plain_text(self) -> Optional[str]:
        raw = self.raw
        if isinstance(raw, list):
            parts = [
                item["plain_text"] for item in raw
                if isinstance(item, dict) and isinstance(item.get("plain_text"), str)
            ]
            return "\n".join(parts) if parts else None
        if isinstance(raw, str):
            return raw
        if isinstance(raw, dict) and isinstance(raw.get("plain_text"), str):
            return raw["plain_text"]
        return None

    @property
    def select_name(self) -> Optional[str]:
        if isinstance(self.raw, dict) and isinstance(self.raw.get("name"), str):
            return self.raw["name"]
        return None

    @property
    def multi_select_names(self) -> List[str]:
        if not isinstance(self.raw, list):
            return []
        return [
            item["name"] for item in self.raw
            if isinstance(item, dict) and isinstance(item.get("name"), str)
        ]

    @property
    def relation_ids(self) -> List[str]:
        if not isinstance(self.raw, list):
            return []
        return [
            item["id"] for item in self.raw
            if isinstance(item, dict) and isinstance(item.get("id"), str)
        ]

    @property
    def date_value(self) -> Optional[datetime]:
        if not isinstance(self.raw, dict):
            return None
        return parse_notion_date(self.raw.get("start"))

    @property
    def url_value(self) -> Optional[str]:
        return parse_url(self.raw)


def _enum_of(enum_cls) -> Callable[[PropertyValue], Any]:
    def extract(prop: PropertyValue):
        name = prop.select_name
        if name is None:
            return None
        try:
            return enum_cls(name)
        except ValueError:
            logger.debug(f"Unmapped {enum_cls.__name__} option: {name!r}")
            return None
    return extract


# snapshot field -> (property name, extractor, value when the property is absent)
FIELD_EXTRACTORS: Dict[str, tuple] = {
    "memo": (PropertyName.MEMO, lambda p: p.plain_text, None),
    "status": (PropertyName.STATUS, _enum_of(TaskStatus), None),
    "timestamp": (PropertyName.TIMESTAMP, lambda p: p.date_value, None),
    "timeslot": (PropertyName.TIMESLOT, _enum_of(TaskTimeslot), None),
    "end_time": (PropertyName.END_TIME, lambda p: p.date_value, None),
    "start_time": (PropertyName.START_TIME, lambda p: p.date_value, None),
    "priority": (PropertyName.PRIORITY, _enum_of(TaskPriority), None),
    "project_ids": (PropertyName.PROJECT, lambda p: p.relation_ids, []),
    "type": (PropertyName.TYPE, _enum_of(TaskType), None),
    "note_type": (PropertyName.NOTE_TYPE, lambda p: p.select_name, None),
    "article_genres": (PropertyName.ARTICLE_GENRE, lambda p: p.multi_select_names, []),
    "permanent_tags": (PropertyName.PERMANENT_TAGS, lambda p: p.multi_select_names, []),
    "deadline": (PropertyName.DEADLINE, lambda p: p.date_value, None),
    "space_name": (PropertyName.SPACE_NAME, lambda p: p.plain_text, None),
    "url": (PropertyName.URL, lambda p: p.url_value, None),
}


class NotionTaskMapper:
    """Translates Notion database pages into ``TaskSnapshot`` objects."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    def to_snapshot(self, page: Dict[str, Any]) -> Optional[TaskSnapshot]:
        """
        Map one page object.

        A page without a resolvable title is dropped; every other property is
        optional. ``bookmark_url`` is left empty because it lives in the page
        content, not in its properties.

        Args:
            page: Raw page object from a database query

        Returns:
            TaskSnapshot or None
        """
        page_id = page.get("id") if isinstance(page, dict) else None
        if not isinstance(page_id, str) or not page_id:
            logger.warning("Skipping Notion result without an id")
            return None

        properties = page.get("properties") or {}
        values = {
            key: PropertyValue.from_property(prop)
            for key, prop in properties.items()
        }

        title = values.get(PropertyName.NAME)
        name = title.plain_text if title is not None else None
        if name is None:
            logger.debug(f"Page {page_id} has no title; skipping")
            return None

        fields: Dict[str, Any] = {}
        for field_name, (prop_name, extract, absent) in FIELD_EXTRACTORS.items():
            prop = values.get(prop_name)
            fields[field_name] = extract(prop) if prop is not None else absent
            if fields[field_name] is None and absent is not None:
                fields[field_name] = absent

        if fields["status"] is None:
            fields["status"] = TaskStatus.TODO

        now = self.clock()
        return TaskSnapshot(
            notion_id=page_id,
            name=name,
            updated_at=parse_notion_date(page.get("last_edited_time")) or now,
            created_at=parse_notion_date(page.get("created_time")) or now,
            bookmark_url=None,
            **fields
        )

    def to_snapshots(self, pages: List[Dict[str, Any]]) -> List[TaskSnapshot]:
        snapshots = []
        for page in pages:
            snapshot = self.to_snapshot(page)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots
