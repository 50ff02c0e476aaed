"""Turn an extraction result into a document update."""

import re
from typing import Any, Dict, List

from loguru import logger

from ..errors import DocumentStoreError
from ..models import WorkflowDefinition
from ..utils.json_utils import safe_dumps

_PLACEHOLDER = re.compile(r"{(\w+)}")
_MARKDOWN_EXCLUDED = {"line_items", "suggested_tags", "conversions", "title", "summary"}


def interpolate_template(template: str, data: Dict[str, Any]) -> str:
    """Replace `{field}` placeholders; unknown fields are left as written."""
    def substitute(match):
        value = data.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)


def data_to_markdown(data: Dict[str, Any], workflow_name: str) -> str:
    entries = "\n".join(
        f"**{key[:1].upper()}{key[1:]}:** {value}"
        for key, value in data.items()
        if key not in _MARKDOWN_EXCLUDED
    )
    content = f"### **{workflow_name} Data**\n{entries}"

    if data.get("summary"):
        content = f"### **Summary**\n{data['summary']}\n\n---\n\n{content}"

    line_items = data.get("line_items")
    if isinstance(line_items, list) and line_items:
        lines = [
            f"* {item.get('quantity') or 1} x **{item.get('name')}** - "
            f"{item.get('totalPrice') or item.get('unitPrice') or '?'}"
            for item in line_items
            if isinstance(item, dict)
        ]
        content += "\n\n**Items:**\n" + "\n".join(lines)

    suggested = data.get("suggested_tags")
    if isinstance(suggested, list) and suggested:
        content += f"\n\n**Suggested Tags:** {', '.join(str(tag) for tag in suggested)}"

    return content


def build_note(data: Dict[str, Any], workflow_name: str) -> str:
    summary = data.get("summary") or "Data extracted successfully."
    return f"## Workflow: {workflow_name}\n\n{summary}\n\n---\n\n```json\n{safe_dumps(data, indent=True)}\n```"


def build_document_update(
    connector,
    document: Dict[str, Any],
    workflow: WorkflowDefinition,
    data: Dict[str, Any],
    update_content: bool = True,
) -> Dict[str, Any]:
    """Build the PATCH payload for a processed document.

    Resolves correspondent, tag and custom-field names to IDs through the
    connector, creating them when missing.
    """
    mapping = workflow.output_mapping
    doc_id = document.get("id")
    updates: Dict[str, Any] = {}

    if workflow.title_template:
        updates["title"] = interpolate_template(workflow.title_template, data)
    elif data.get("title"):
        updates["title"] = str(data["title"])

    if mapping.date_field and data.get(mapping.date_field):
        updates["created"] = str(data[mapping.date_field])

    if mapping.correspondent_field and data.get(mapping.correspondent_field):
        updates["correspondent"] = connector.get_or_create_correspondent(str(data[mapping.correspondent_field]))

    tags: List[int] = list(document.get("tags") or [])

    def add_tag(name: str):
        tag_id = connector.get_or_create_tag(name)
        if tag_id not in tags:
            tags.append(tag_id)

    add_tag(workflow.processed_tag)
    for name in mapping.tags_to_apply:
        add_tag(name)
    for field_name in mapping.tag_fields:
        if data.get(field_name):
            add_tag(str(data[field_name]))
    suggested = data.get("suggested_tags")
    if isinstance(suggested, list):
        for name in suggested:
            if isinstance(name, str) and name.strip():
                add_tag(name.strip())
    updates["tags"] = tags

    custom_fields = []
    for paperless_field, extracted_field in mapping.custom_fields.items():
        value = safe_dumps(data) if extracted_field == "*" else str(data.get(extracted_field) or "")
        if not value:
            continue
        try:
            custom_fields.append({"field": connector.ensure_custom_field(paperless_field), "value": value})
        except DocumentStoreError as exc:
            logger.warning(f"[doc:{doc_id}] could not set custom field '{paperless_field}': {exc}")
    if custom_fields:
        updates["custom_fields"] = custom_fields

    if update_content:
        markdown = data_to_markdown(data, workflow.name)
        existing = document.get("content")
        updates["content"] = f"{markdown}\n\n---\n\n{existing}" if existing else markdown

    return updates
