"""
Schema mapping from raw Notion pages to local records.

Each resource gets a ResourceSchema: a table of FieldSpec(local_field, remote_property,
extractor) built once from the configured property names. Property names are user
configurable, so nothing here hard-codes them.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .clock import format_timestamp, parse_timestamp
from .errors import MalformedRecordError

logger = logging.getLogger(__name__)

Extractor = Callable[[Dict[str, Any]], Any]


class PropertyTypeError(ValueError):
    pass


def _expect(prop: Dict[str, Any], *types: str) -> str:
    prop_type = prop.get("type")
    if prop_type not in types:
        raise PropertyTypeError(f"expected {'/'.join(types)}, got {prop_type}")
    return prop_type


def _plain_text(segments) -> str:
    return "".join(segment.get("plain_text", "") for segment in segments or [])


# ============ EXTRACTORS ============

def extract_title(prop):
    _expect(prop, "title")
    return _plain_text(prop.get("title"))


def extract_rich_text(prop):
    _expect(prop, "rich_text")
    return _plain_text(prop.get("rich_text"))


def extract_option_name(prop):
    prop_type = _expect(prop, "status", "select")
    option = prop.get(prop_type)
    return option.get("name") if option else None


def extract_date_start(prop):
    _expect(prop, "date")
    date = prop.get("date")
    return date.get("start") if date else None


def extract_date_end(prop):
    _expect(prop, "date")
    date = prop.get("date")
    return date.get("end") if date else None


def extract_number(prop):
    prop_type = _expect(prop, "number", "formula")
    if prop_type == "number":
        value = prop.get("number")
    else:
        value = (prop.get("formula") or {}).get("number")
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else None


def extract_relation_ids(prop):
    _expect(prop, "relation")
    return [entry["id"] for entry in prop.get("relation") or [] if "id" in entry]


def extract_multi_select(prop):
    _expect(prop, "multi_select")
    return [option["name"] for option in prop.get("multi_select") or [] if "name" in option]


def extract_unique_id(prop):
    _expect(prop, "unique_id")
    unique_id = prop.get("unique_id") or {}
    number = unique_id.get("number")
    if not isinstance(number, int):
        return None
    prefix = unique_id.get("prefix") or ""
    return f"{prefix}-{number}" if prefix else str(number)


def flag_extractor(active_label: str) -> Extractor:
    """Checkbox properties map directly, status/select properties match a label."""
    def extract(prop):
        prop_type = _expect(prop, "checkbox", "status", "select")
        if prop_type == "checkbox":
            return bool(prop.get("checkbox"))
        return extract_option_name(prop) == active_label
    return extract


# ============ SCHEMA ============

class FieldSpec(BaseModel):
    local_field: str
    remote_property: str
    extractor: Extractor
    required: bool = False


class MappedRecord(BaseModel):
    external_id: str
    title: str
    last_edited_time: str  # canonical UTC
    unique_id: Optional[str] = None
    url: Optional[str] = None
    archived: bool = False
    fields: Dict[str, Any] = Field(default_factory=dict)


class ResourceSchema:
    def __init__(self, resource: str, title_property: str, fields: List[FieldSpec] = (),
                 unique_id_property: Optional[str] = None):
        self.resource = resource
        self.title_property = title_property
        self.fields = [f for f in fields if f.remote_property]
        self.unique_id_property = unique_id_property

    def _extract(self, properties, spec: FieldSpec, external_id: str):
        prop = properties.get(spec.remote_property)
        if prop is None:
            if spec.required:
                raise MalformedRecordError(
                    f"{self.resource} {external_id}: missing property {spec.remote_property!r}", external_id
                )
            return None
        try:
            return spec.extractor(prop)
        except (PropertyTypeError, KeyError, TypeError, AttributeError) as e:
            raise MalformedRecordError(
                f"{self.resource} {external_id}: property {spec.remote_property!r} unreadable ({e})", external_id
            ) from e

    def map(self, raw: Dict[str, Any]) -> MappedRecord:
        if not isinstance(raw, dict):
            raise MalformedRecordError(f"{self.resource}: record is not an object")

        external_id = raw.get("id")
        if not external_id or not isinstance(external_id, str):
            raise MalformedRecordError(f"{self.resource}: record without id")

        edited = raw.get("last_edited_time")
        try:
            last_edited_time = format_timestamp(parse_timestamp(edited))
        except (TypeError, ValueError, AttributeError) as e:
            raise MalformedRecordError(
                f"{self.resource} {external_id}: bad last_edited_time {edited!r}", external_id
            ) from e

        properties = raw.get("properties") or {}
        title = self._extract(
            properties, FieldSpec(local_field="title", remote_property=self.title_property,
                                  extractor=extract_title, required=True), external_id
        )
        if not title or not title.strip():
            raise MalformedRecordError(f"{self.resource} {external_id}: empty title", external_id)

        unique_id = None
        if self.unique_id_property:
            unique_id = self._extract(
                properties, FieldSpec(local_field="unique_id", remote_property=self.unique_id_property,
                                      extractor=extract_unique_id), external_id
            )

        fields = {spec.local_field: self._extract(properties, spec, external_id) for spec in self.fields}

        return MappedRecord(
            external_id=external_id,
            title=title,
            last_edited_time=last_edited_time,
            unique_id=unique_id,
            url=raw.get("url"),
            archived=bool(raw.get("archived") or raw.get("in_trash")),
            fields=fields,
        )


def build_schemas(settings) -> Dict[str, ResourceSchema]:
    """Resolve configured property names into one schema per resource."""
    tasks = ResourceSchema(
        "tasks",
        title_property=settings.TASK_TITLE_PROPERTY,
        unique_id_property=settings.TASK_ID_PROPERTY,
        fields=[
            FieldSpec(local_field="status", remote_property=settings.TASK_STATUS_PROPERTY, extractor=extract_option_name),
            FieldSpec(local_field="due_date", remote_property=settings.TASK_DATE_PROPERTY, extractor=extract_date_start),
            FieldSpec(local_field="due_date_end", remote_property=settings.TASK_DATE_PROPERTY, extractor=extract_date_end),
            FieldSpec(local_field="urgent", remote_property=settings.TASK_URGENT_PROPERTY or "",
                      extractor=flag_extractor(settings.TASK_URGENT_ACTIVE_VALUE)),
            FieldSpec(local_field="important", remote_property=settings.TASK_IMPORTANT_PROPERTY or "",
                      extractor=flag_extractor(settings.TASK_IMPORTANT_ACTIVE_VALUE)),
            FieldSpec(local_field="project_ids", remote_property=settings.TASK_PROJECT_RELATION_PROPERTY or "",
                      extractor=extract_relation_ids),
            FieldSpec(local_field="parent_task_ids", remote_property=settings.TASK_PARENT_PROPERTY or "",
                      extractor=extract_relation_ids),
        ],
    )
    projects = ResourceSchema(
        "projects",
        title_property=settings.PROJECT_TITLE_PROPERTY,
        unique_id_property=settings.PROJECT_ID_PROPERTY,
        fields=[
            FieldSpec(local_field="status", remote_property=settings.PROJECT_STATUS_PROPERTY or "", extractor=extract_option_name),
            FieldSpec(local_field="description", remote_property=settings.PROJECT_DESCRIPTION_PROPERTY or "",
                      extractor=extract_rich_text),
            FieldSpec(local_field="start_date", remote_property=settings.PROJECT_START_DATE_PROPERTY or "",
                      extractor=extract_date_start),
            FieldSpec(local_field="end_date", remote_property=settings.PROJECT_END_DATE_PROPERTY or "",
                      extractor=extract_date_start),
            FieldSpec(local_field="tags", remote_property=settings.PROJECT_TAGS_PROPERTY or "", extractor=extract_multi_select),
        ],
    )
    time_logs = ResourceSchema(
        "time_logs",
        title_property=settings.TIME_LOG_TITLE_PROPERTY,
        unique_id_property=settings.TIME_LOG_ID_PROPERTY,
        fields=[
            FieldSpec(local_field="status", remote_property=settings.TIME_LOG_STATUS_PROPERTY or "", extractor=extract_option_name),
            FieldSpec(local_field="start_time", remote_property=settings.TIME_LOG_START_PROPERTY or "", extractor=extract_date_start),
            FieldSpec(local_field="end_time", remote_property=settings.TIME_LOG_END_PROPERTY or "", extractor=extract_date_start),
            FieldSpec(local_field="task_ids", remote_property=settings.TIME_LOG_TASK_PROPERTY or "", extractor=extract_relation_ids),
        ],
    )
    return {schema.resource: schema for schema in (tasks, projects, time_logs)}
