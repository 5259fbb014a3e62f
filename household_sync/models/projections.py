"""
Optimistic Projections

DESIGN DECISION: What the operator sees right after pressing "save" is
computed locally and deterministically from the submitted form:
- identity fields are kept from the previous value (or a temp id is issued)
- derived fields (totals, achievement flags) are recomputed
- nothing else is guessed

The same rules are used to merge two diverged versions of a record and
to describe which aggregates depend on a record.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from household_sync.models.records import (
    Account,
    AccountFormData,
    EntityType,
    ExpenseFormData,
    FinancialRecord,
    IncomeFormData,
    MonthlyExpenses,
    MonthlyIncome,
    MonthlySavings,
    SavingsFormData,
)
from household_sync.models.sync import CacheKey, utc_now


RECORD_MODELS: dict[EntityType, type[FinancialRecord]] = {
    EntityType.INCOME: MonthlyIncome,
    EntityType.EXPENSES: MonthlyExpenses,
    EntityType.ACCOUNTS: Account,
    EntityType.SAVINGS: MonthlySavings,
}

FORM_MODELS: dict[EntityType, type[BaseModel]] = {
    EntityType.INCOME: IncomeFormData,
    EntityType.EXPENSES: ExpenseFormData,
    EntityType.ACCOUNTS: AccountFormData,
    EntityType.SAVINGS: SavingsFormData,
}

EXPENSE_CATEGORIES = (
    "housing",
    "food",
    "transportation",
    "utilities",
    "healthcare",
    "entertainment",
    "other_expenses",
)


# =============================================================================
# DERIVED FIELDS
# =============================================================================

def _derive_income(fields: dict) -> None:
    fields["total_income"] = (
        fields.get("kyunghoon_salary", 0)
        + fields.get("sunhwa_salary", 0)
        + (fields.get("other_income") or 0)
    )


def _derive_expenses(fields: dict) -> None:
    fields["total_expenses"] = sum(
        fields.get(category) or 0 for category in EXPENSE_CATEGORIES
    )


def _derive_account(fields: dict) -> None:
    fields.setdefault("is_active", True)


def _derive_savings(fields: dict) -> None:
    target = fields.get("target_amount") or 0
    fields["is_achieved"] = target > 0 and (fields.get("actual_amount") or 0) >= target


DERIVERS: dict[EntityType, Callable[[dict], None]] = {
    EntityType.INCOME: _derive_income,
    EntityType.EXPENSES: _derive_expenses,
    EntityType.ACCOUNTS: _derive_account,
    EntityType.SAVINGS: _derive_savings,
}


# =============================================================================
# PAYLOADS AND RECORDS
# =============================================================================

def require_record_type(entity_type: EntityType) -> None:
    if not entity_type.is_record:
        raise ValueError(
            f"invalid mutation target: '{entity_type.value}' is a read-only aggregate"
        )


def parse_payload(entity_type: EntityType, payload: Any) -> BaseModel:
    """
    Validate a submitted payload against the entity's form model.

    Accepts the form model itself, another model, or a plain dict
    (Korean field names are accepted for income).

    Raises:
        pydantic.ValidationError: If the payload is out of bounds or incomplete
    """
    require_record_type(entity_type)
    form_model = FORM_MODELS[entity_type]
    if isinstance(payload, form_model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return form_model.model_validate(payload)


def coerce_record(entity_type: EntityType, data: Any) -> Any:
    """Turn raw server data into the entity's record model (aggregates pass through)."""
    if data is None or not entity_type.is_record:
        return data
    record_model = RECORD_MODELS[entity_type]
    if isinstance(data, record_model):
        return data
    return record_model.model_validate(data)


def project_record(
    key: CacheKey,
    form: BaseModel,
    previous: Any = None,
    now: Optional[datetime] = None,
    record_id: Optional[str] = None,
) -> FinancialRecord:
    """
    Compute the record that will result from submitting `form` for `key`.

    Deterministic for a given (key, form, previous, now, record_id).
    """
    require_record_type(key.entity_type)
    now = now or utc_now()
    record_model = RECORD_MODELS[key.entity_type]
    if not isinstance(previous, record_model):
        previous = None

    fields = previous.model_dump() if previous is not None else {}
    fields.update(form.model_dump())
    fields.update(user_id=key.owner_id, year=key.year, month=key.month)

    if previous is not None and previous.id:
        fields["id"] = previous.id
    else:
        fields["id"] = record_id or key.sub_id or f"temp-{int(now.timestamp() * 1000)}"
    fields["created_at"] = (
        previous.created_at if previous is not None and previous.created_at else now
    )
    fields["updated_at"] = now

    DERIVERS[key.entity_type](fields)
    return record_model.model_validate(fields)


def editable_fields(entity_type: EntityType, value: Any) -> dict:
    """The operator-editable fields of a record (python field names)."""
    if value is None:
        return {}
    form_model = FORM_MODELS[entity_type]
    data = value.model_dump() if isinstance(value, BaseModel) else dict(value)
    return {name: data[name] for name in form_model.model_fields if name in data}


def form_from_record(entity_type: EntityType, value: Any) -> BaseModel:
    """Rebuild the form payload that would produce this record."""
    return FORM_MODELS[entity_type].model_validate(editable_fields(entity_type, value))


# =============================================================================
# MERGE
# =============================================================================

def _is_default(value: Any, default: Any) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0:
        return True
    return default is not None and value == default


def _local_is_newer(
    local_modified_at: Optional[datetime],
    remote_modified_at: Optional[datetime],
) -> bool:
    if local_modified_at is None:
        return remote_modified_at is None
    if remote_modified_at is None:
        return True
    return local_modified_at >= remote_modified_at


def merge_forms(
    entity_type: EntityType,
    local_value: Any,
    remote_value: Any,
    local_modified_at: Optional[datetime],
    remote_modified_at: Optional[datetime],
) -> BaseModel:
    """
    Combine two versions of a record field by field.

    Rule: for every editable field the value of the more recently modified
    version wins, unless it is a default (0, empty, None or the form's
    declared default); then the other version's value is kept. Ties in
    modification time count the local version as newer. Derived fields are
    not merged; they are recomputed from the merged form.

    NOT RECOMMENDED: this can silently combine unrelated edits.
    """
    form_model = FORM_MODELS[entity_type]
    local_fields = editable_fields(entity_type, local_value)
    remote_fields = editable_fields(entity_type, remote_value)
    if _local_is_newer(local_modified_at, remote_modified_at):
        newer, older = local_fields, remote_fields
    else:
        newer, older = remote_fields, local_fields

    merged = {}
    for name, field in form_model.model_fields.items():
        default = None if field.is_required() else field.default
        candidate = newer.get(name)
        if _is_default(candidate, default) and name in older:
            candidate = older[name]
        if candidate is not None:
            merged[name] = candidate
    return form_model.model_validate(merged)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def dependent_keys(key: CacheKey) -> list[Union[CacheKey, tuple]]:
    """
    Aggregates whose value is derived from the record at `key`.

    Financial metrics compare a month with the one before it, so a change
    also affects the following month's metrics.
    """
    entity_type = key.entity_type
    if entity_type in (EntityType.INCOME, EntityType.EXPENSES):
        return [
            key.related(EntityType.DASHBOARD),
            key.related(EntityType.FINANCIAL_METRICS),
            key.related(EntityType.FINANCIAL_METRICS, months_ahead=1),
        ]
    if entity_type == EntityType.ACCOUNTS:
        return [key.related(EntityType.DASHBOARD)]
    if entity_type == EntityType.SAVINGS:
        return [
            key.related(EntityType.SAVINGS_STATISTICS),
            key.related(EntityType.DASHBOARD),
        ]
    return []


def invalidate_dependents(cache, key: CacheKey) -> list[CacheKey]:
    """Mark every cached aggregate derived from `key` stale."""
    invalidated: list[CacheKey] = []
    for dependent in dependent_keys(key):
        invalidated.extend(cache.invalidate(dependent))
    return invalidated
