from typing import Iterable, List, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..models import OutputMapping, SchemaField, WorkflowDefinition
from ..store import session_scope
from ..store.tables import WorkflowRow
from ..utils.json_utils import safe_dumps, safe_loads

DEFAULT_RECEIPT_FIELDS: List[SchemaField] = [
    SchemaField(name="date", description="Purchase date as YYYY-MM-DD"),
    SchemaField(name="vendor", description="Merchant or company name"),
    SchemaField(name="category", description="Spending category, e.g. groceries"),
    SchemaField(name="paymentMethod", description="cash, card, ..."),
    SchemaField(name="taxAmount", type="number"),
    SchemaField(name="amount", type="number", description="Total amount paid"),
    SchemaField(name="currency", description="ISO 4217 code"),
    SchemaField(name="title", required=False),
    SchemaField(name="summary", required=False),
    SchemaField(
        name="line_items",
        type="array",
        required=False,
        items=SchemaField(
            name="line_item",
            type="object",
            fields=[
                SchemaField(name="name"),
                SchemaField(name="quantity", type="number", required=False),
                SchemaField(name="unitPrice", type="number", required=False),
                SchemaField(name="totalPrice", type="number"),
            ],
        ),
    ),
    SchemaField(name="suggested_tags", type="array", required=False, items=SchemaField(name="tag")),
]


def _to_definition(row: WorkflowRow) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=row.id,
        name=row.name,
        enabled=row.enabled,
        priority=row.priority,
        trigger_tag=row.trigger_tag,
        fields=[SchemaField.model_validate(item) for item in safe_loads(row.schema_fields)],
        prompt_instructions=row.prompt_instructions,
        output_mapping=OutputMapping.model_validate(safe_loads(row.output_mapping or "{}")),
        title_template=row.title_template,
        processed_tag=row.processed_tag,
        failed_tag=row.failed_tag,
        skipped_tag=row.skipped_tag,
    )


def select_for_tags(workflows: Iterable[WorkflowDefinition], tag_names: Iterable[str]) -> Optional[WorkflowDefinition]:
    """First workflow (in the given priority order) whose trigger tag the document carries."""
    names = {name.lower() for name in tag_names}
    return next((workflow for workflow in workflows if workflow.trigger_tag.lower() in names), None)


class WorkflowRegistry:
    """Read access to the workflows configured from the dashboard."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def list_enabled(self) -> List[WorkflowDefinition]:
        """Enabled workflows, highest priority first (ties by creation order)."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(WorkflowRow)
                .where(WorkflowRow.enabled.is_(True))
                .order_by(WorkflowRow.priority.desc(), WorkflowRow.id)
            ).scalars()
            return [_to_definition(row) for row in rows]

    def get(self, workflow_id: int) -> Optional[WorkflowDefinition]:
        with session_scope(self.session_factory) as session:
            row = session.get(WorkflowRow, workflow_id)
            return _to_definition(row) if row else None

    def select_for_tags(self, tag_names: Iterable[str]) -> Optional[WorkflowDefinition]:
        return select_for_tags(self.list_enabled(), tag_names)

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with session_scope(self.session_factory) as session:
            row = WorkflowRow(
                name=definition.name,
                enabled=definition.enabled,
                priority=definition.priority,
                trigger_tag=definition.trigger_tag,
                schema_fields=safe_dumps([field.model_dump(exclude_none=True) for field in definition.fields]),
                prompt_instructions=definition.prompt_instructions,
                output_mapping=definition.output_mapping.model_dump_json(),
                title_template=definition.title_template,
                processed_tag=definition.processed_tag,
                failed_tag=definition.failed_tag,
                skipped_tag=definition.skipped_tag,
            )
            session.add(row)
            session.flush()
            return _to_definition(row)

    def seed_default(self) -> bool:
        """Create the built-in receipt workflow when no workflow exists yet."""
        with session_scope(self.session_factory) as session:
            if session.execute(select(func.count()).select_from(WorkflowRow)).scalar_one():
                return False
        self.create(
            WorkflowDefinition(
                name="Receipt",
                priority=0,
                trigger_tag=Config.DEFAULT_TRIGGER_TAG,
                fields=DEFAULT_RECEIPT_FIELDS,
                prompt_instructions="Extract the purchase details from this receipt or invoice.",
                output_mapping=OutputMapping(
                    correspondent_field="vendor",
                    date_field="date",
                    tag_fields=["category"],
                    custom_fields={"json_payload": "*"},
                ),
                processed_tag=Config.PROCESSED_TAG,
                failed_tag=Config.FAILED_TAG,
                skipped_tag=Config.SKIPPED_TAG,
            )
        )
        logger.info(f"[workflow] seeded default receipt workflow (trigger tag '{Config.DEFAULT_TRIGGER_TAG}')")
        return True
