from conftest import MockPaperless

from receipt_worker.src.models import OutputMapping, SchemaField, WorkflowDefinition
from receipt_worker.src.processing.output_mapping import (
    build_document_update,
    build_note,
    data_to_markdown,
    interpolate_template,
)
from receipt_worker.src.utils.json_utils import safe_loads

DATA = {
    "vendor": "Corner Shop",
    "amount": 12.5,
    "date": "2025-02-28",
    "category": "groceries",
    "summary": "Weekly shopping",
    "line_items": [{"name": "Bread", "quantity": 2, "totalPrice": 5}],
    "suggested_tags": ["food", " "],
}


def make_workflow(**overrides):
    values = dict(
        name="Receipt",
        trigger_tag="receipt",
        fields=[SchemaField(name="vendor")],
        processed_tag="receipt-processed",
        output_mapping=OutputMapping(
            correspondent_field="vendor",
            date_field="date",
            tags_to_apply=["finance"],
            tag_fields=["category"],
            custom_fields={"json_payload": "*", "shop": "vendor", "empty": "missing"},
        ),
    )
    values.update(overrides)
    return WorkflowDefinition(**values)


def test_interpolate_template_keeps_unknown_placeholders():
    assert interpolate_template("{vendor} - {amount} {currency}", {"vendor": "A", "amount": 3}) == "A - 3 {currency}"


def test_markdown_lists_fields_items_and_tags():
    markdown = data_to_markdown(DATA, "Receipt")
    assert markdown.startswith("### **Summary**\nWeekly shopping")
    assert "**Vendor:** Corner Shop" in markdown
    assert "**Summary:**" not in markdown
    assert "* 2 x **Bread** - 5" in markdown
    assert "**Suggested Tags:** food" in markdown


def test_note_embeds_payload():
    note = build_note({"vendor": "A"}, "Receipt")
    assert note.startswith("## Workflow: Receipt\n\nData extracted successfully.")
    assert '"vendor": "A"' in note


def test_document_update_maps_every_output():
    connector = MockPaperless(tags={1: "receipt"})
    document = {"id": 7, "tags": [1], "content": "OCR text"}

    updates = build_document_update(connector, document, make_workflow(), DATA, update_content=True)

    assert "title" not in updates
    assert updates["created"] == "2025-02-28"
    assert connector.correspondents[updates["correspondent"]] == "Corner Shop"
    assert [connector.tags[tag_id] for tag_id in updates["tags"]] == [
        "receipt", "receipt-processed", "finance", "groceries", "food",
    ]
    fields = {connector.custom_fields[item["field"]]: item["value"] for item in updates["custom_fields"]}
    assert set(fields) == {"json_payload", "shop"}
    assert safe_loads(fields["json_payload"]) == DATA
    assert fields["shop"] == "Corner Shop"
    assert updates["content"].endswith("---\n\nOCR text")


def test_title_template_wins_over_extracted_title():
    connector = MockPaperless()
    workflow = make_workflow(title_template="{vendor} {date}")
    updates = build_document_update(connector, {"id": 1}, workflow, {**DATA, "title": "ignored"}, update_content=False)
    assert updates["title"] == "Corner Shop 2025-02-28"
    assert "content" not in updates


def test_extracted_title_used_without_template():
    connector = MockPaperless()
    workflow = make_workflow(output_mapping=OutputMapping())
    updates = build_document_update(connector, {"id": 1}, workflow, {"title": "Lunch"}, update_content=False)
    assert updates == {"title": "Lunch", "tags": [connector.get_or_create_tag("receipt-processed")]}
