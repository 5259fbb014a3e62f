"""
Conflict Presentation

Turns an open ConflictRecord into what the operator needs to decide:
a headline preview of both versions, the three options and the warnings.
Rendering itself is left to the UI.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from household_sync.models.records import EntityType
from household_sync.models.sync import ConflictRecord, ConflictStrategy


ENTITY_LABELS = {
    EntityType.INCOME: "Income",
    EntityType.EXPENSES: "Expenses",
    EntityType.ACCOUNTS: "Account",
    EntityType.SAVINGS: "Savings",
}

# (field, label, is_amount) shown per entity, in display order
PREVIEW_FIELDS = {
    EntityType.INCOME: [
        ("kyunghoon_salary", "경훈 salary", True),
        ("sunhwa_salary", "선화 salary", True),
        ("other_income", "Other income", True),
        ("total_income", "Total income", True),
    ],
    EntityType.EXPENSES: [
        ("housing", "Housing", True),
        ("food", "Food", True),
        ("transportation", "Transportation", True),
        ("total_expenses", "Total expenses", True),
    ],
    EntityType.ACCOUNTS: [
        ("account_name", "Account name", False),
        ("account_type", "Type", False),
        ("balance", "Balance", True),
    ],
    EntityType.SAVINGS: [
        ("target_amount", "Target", True),
        ("actual_amount", "Saved", True),
        ("savings_type", "Type", False),
        ("is_achieved", "Achieved", False),
    ],
}

CONFLICT_WARNINGS = [
    "Conflicts happen when the same data is edited on two devices or a save is delayed by the network.",
    "Keeping your version may discard the latest changes on the server.",
    "Using the server version discards what you just entered.",
    "Merging can produce unexpected results.",
]


class PreviewField(BaseModel):
    label: str
    value: str


class VersionPreview(BaseModel):
    title: str
    modified_at: Optional[datetime] = None
    fields: list[PreviewField]


class ResolutionOption(BaseModel):
    strategy: ConflictStrategy
    label: str
    description: str
    recommended: bool = True


class ConflictView(BaseModel):
    """Everything a resolution dialog shows for one conflict."""

    conflict_id: str
    entity_label: str
    summary: str
    local: VersionPreview
    remote: VersionPreview
    options: list[ResolutionOption]
    warnings: list[str]


RESOLUTION_OPTIONS = [
    ResolutionOption(
        strategy=ConflictStrategy.LOCAL,
        label="Keep my version",
        description="Use the data you entered",
    ),
    ResolutionOption(
        strategy=ConflictStrategy.REMOTE,
        label="Use server version",
        description="Use the latest data from the server",
    ),
    ResolutionOption(
        strategy=ConflictStrategy.MERGE,
        label="Merge",
        description="Combine both versions (not recommended)",
        recommended=False,
    ),
]


def entity_label(entity_type: EntityType) -> str:
    return ENTITY_LABELS.get(entity_type, entity_type.value)


def _as_dict(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, dict):
        return value
    return {"value": value}


def _format(value: Any, is_amount: bool) -> str:
    if value is None or value == "":
        return "0" if is_amount else "N/A"
    if hasattr(value, "value"):
        value = value.value
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return f"{value:,}"
    return str(value)


def preview(entity_type: EntityType, value: Any) -> list[PreviewField]:
    """Headline fields of one version; unknown entities show their first four fields."""
    data = _as_dict(value)
    if value is None:
        return [PreviewField(label="Record", value="deleted")]

    shown = PREVIEW_FIELDS.get(entity_type)
    if shown is None:
        return [
            PreviewField(label=name, value=_format(v, isinstance(v, (int, float))))
            for name, v in list(data.items())[:4]
        ]
    return [
        PreviewField(label=label, value=_format(data.get(name), is_amount))
        for name, label, is_amount in shown
    ]


def describe_conflict(record: ConflictRecord) -> ConflictView:
    label = entity_label(record.entity_type)
    return ConflictView(
        conflict_id=str(record.conflict_id),
        entity_label=label,
        summary=f"{label} for {record.key.year}-{record.key.month:02d} was changed elsewhere.",
        local=VersionPreview(
            title="Your version",
            modified_at=record.local_modified_at,
            fields=preview(record.entity_type, record.local_value),
        ),
        remote=VersionPreview(
            title="Server version",
            modified_at=record.remote_modified_at,
            fields=preview(record.entity_type, record.remote_value),
        ),
        options=list(RESOLUTION_OPTIONS),
        warnings=list(CONFLICT_WARNINGS),
    )
