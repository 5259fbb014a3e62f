"""
Tests for optimistic projections, merges and dependent keys.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from household_sync.cache import ReadCache
from household_sync.models import (
    CacheKey,
    EntityType,
    IncomeFormData,
    MonthlyIncome,
    SavingsFormData,
)
from household_sync.models.projections import (
    coerce_record,
    dependent_keys,
    form_from_record,
    invalidate_dependents,
    merge_forms,
    parse_payload,
    project_record,
)


NOW = datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc)


def key_of(entity_type, month=9, year=2025, sub_id=None) -> CacheKey:
    return CacheKey(entity_type=entity_type, owner_id="household", year=year, month=month, sub_id=sub_id)


class TestProjectRecord:
    """The optimistic value is a deterministic function of the form."""

    def test_income_total_and_temp_id(self):
        """A first income entry gets its total computed and a temporary id."""
        form = parse_payload(EntityType.INCOME, {"경훈_월급": 5_000_000, "선화_월급": 6_000_000})
        record = project_record(key_of(EntityType.INCOME), form, now=NOW)

        assert isinstance(record, MonthlyIncome)
        assert record.total_income == 11_000_000
        assert record.id == f"temp-{int(NOW.timestamp() * 1000)}"
        assert (record.user_id, record.year, record.month) == ("household", 2025, 9)
        assert record.created_at == NOW

    def test_projection_is_deterministic(self):
        """Same inputs give the same record."""
        key = key_of(EntityType.INCOME)
        form = IncomeFormData(kyunghoon_salary=1, sunhwa_salary=2, other_income=3)
        assert project_record(key, form, now=NOW) == project_record(key, form, now=NOW)

    def test_keeps_identity_of_previous(self):
        """Id and creation time come from the previous value."""
        key = key_of(EntityType.INCOME)
        created = NOW - timedelta(days=3)
        previous = MonthlyIncome(
            id="inc-42", user_id="household", year=2025, month=9,
            kyunghoon_salary=1, created_at=created,
        )
        form = IncomeFormData(kyunghoon_salary=4_000_000, sunhwa_salary=0)
        record = project_record(key, form, previous=previous, now=NOW)

        assert record.id == "inc-42"
        assert record.created_at == created
        assert record.updated_at == NOW
        assert record.total_income == 4_000_000

    def test_sub_id_becomes_record_id(self):
        """Records addressed by sub id keep it as their id."""
        key = key_of(EntityType.ACCOUNTS, sub_id="acc-1")
        form = parse_payload(EntityType.ACCOUNTS, {
            "account_name": "Main", "account_type": "checking", "balance": 10,
        })
        record = project_record(key, form, now=NOW)
        assert record.id == "acc-1"
        assert record.is_active

    def test_expense_total(self):
        """Expenses total every category."""
        form = parse_payload(EntityType.EXPENSES, {
            "housing": 1_000_000, "food": 500_000, "transportation": 100_000,
            "utilities": 50_000, "healthcare": 0, "entertainment": 20_000,
            "other_expenses": 5_000,
        })
        record = project_record(key_of(EntityType.EXPENSES), form, now=NOW)
        assert record.total_expenses == 1_675_000

    def test_savings_achievement(self):
        """is_achieved needs a positive target that was reached."""
        key = key_of(EntityType.SAVINGS)
        reached = SavingsFormData(target_amount=100, actual_amount=100, savings_type="goal")
        missed = SavingsFormData(target_amount=100, actual_amount=99, savings_type="goal")
        no_target = SavingsFormData(target_amount=0, actual_amount=50, savings_type="goal")

        assert project_record(key, reached, now=NOW).is_achieved
        assert not project_record(key, missed, now=NOW).is_achieved
        assert not project_record(key, no_target, now=NOW).is_achieved

    def test_aggregate_target_rejected(self):
        """Aggregates cannot be projected."""
        with pytest.raises(ValueError, match="invalid mutation target"):
            project_record(key_of(EntityType.DASHBOARD), IncomeFormData(kyunghoon_salary=0, sunhwa_salary=0))


class TestPayloads:
    """Payload validation and record coercion."""

    def test_parse_rejects_out_of_bounds(self):
        """Amounts above the monthly cap are rejected."""
        with pytest.raises(ValidationError):
            parse_payload(EntityType.INCOME, {"경훈_월급": 200_000_000, "선화_월급": 0})

    def test_parse_rejects_missing_fields(self):
        """Required form fields must be present."""
        with pytest.raises(ValidationError):
            parse_payload(EntityType.INCOME, {"경훈_월급": 1})

    def test_parse_aggregate_rejected(self):
        """Aggregates are not valid mutation targets."""
        with pytest.raises(ValueError, match="invalid mutation target"):
            parse_payload(EntityType.FINANCIAL_METRICS, {})

    def test_coerce_record(self):
        """Raw server dicts become record models; aggregates pass through."""
        record = coerce_record(EntityType.INCOME, {
            "user_id": "household", "year": 2025, "month": 9, "경훈_월급": 1,
        })
        assert isinstance(record, MonthlyIncome)
        assert record.kyunghoon_salary == 1
        assert coerce_record(EntityType.DASHBOARD, {"total": 1}) == {"total": 1}
        assert coerce_record(EntityType.INCOME, None) is None

    def test_form_from_record(self):
        """A record yields the form that would produce it."""
        record = MonthlyIncome(
            user_id="household", year=2025, month=9,
            kyunghoon_salary=1, sunhwa_salary=2, other_income=3, total_income=6,
        )
        form = form_from_record(EntityType.INCOME, record)
        assert form == IncomeFormData(kyunghoon_salary=1, sunhwa_salary=2, other_income=3)


class TestMerge:
    """Field-by-field merge of two diverged versions."""

    def income(self, **fields) -> MonthlyIncome:
        return MonthlyIncome(user_id="household", year=2025, month=9, **fields)

    def test_newer_non_default_wins(self):
        """The newer version's values win where they are set."""
        local = self.income(kyunghoon_salary=5_000_000, sunhwa_salary=6_000_000)
        remote = self.income(kyunghoon_salary=5_000_000, sunhwa_salary=5_800_000, other_income=300_000)

        merged = merge_forms(EntityType.INCOME, local, remote, NOW, NOW - timedelta(minutes=1))

        assert merged.sunhwa_salary == 6_000_000
        assert merged.other_income == 300_000

    def test_remote_newer(self):
        """When the remote is newer, its set values win."""
        local = self.income(kyunghoon_salary=1, sunhwa_salary=2, notes="local")
        remote = self.income(kyunghoon_salary=10, sunhwa_salary=0)

        merged = merge_forms(EntityType.INCOME, local, remote, NOW - timedelta(minutes=1), NOW)

        assert merged.kyunghoon_salary == 10
        assert merged.sunhwa_salary == 2
        assert merged.notes == "local"

    def test_tie_counts_local_as_newer(self):
        """Equal modification times favour local."""
        local = self.income(kyunghoon_salary=1, sunhwa_salary=1)
        remote = self.income(kyunghoon_salary=2, sunhwa_salary=2)
        merged = merge_forms(EntityType.INCOME, local, remote, NOW, NOW)
        assert (merged.kyunghoon_salary, merged.sunhwa_salary) == (1, 1)

    def test_merge_is_deterministic(self):
        """The same inputs always merge the same way."""
        local = self.income(kyunghoon_salary=1, sunhwa_salary=0, other_income=7)
        remote = self.income(kyunghoon_salary=0, sunhwa_salary=3)
        args = (EntityType.INCOME, local, remote, None, NOW)
        assert merge_forms(*args) == merge_forms(*args)

    def test_merged_total_is_recomputed(self):
        """Derived fields come from the merged form, not from either side."""
        local = self.income(kyunghoon_salary=5_000_000, sunhwa_salary=6_000_000, total_income=11_000_000)
        remote = self.income(kyunghoon_salary=5_000_000, sunhwa_salary=5_800_000, total_income=10_800_000)
        merged = merge_forms(EntityType.INCOME, local, remote, NOW, NOW - timedelta(minutes=1))
        record = project_record(key_of(EntityType.INCOME), merged, previous=remote, now=NOW)
        assert record.total_income == 11_000_000


class TestDependencies:
    """Which aggregates a record feeds."""

    def test_income_dependents(self):
        """Income feeds the dashboard and this and next month's metrics."""
        deps = dependent_keys(key_of(EntityType.INCOME, month=12))
        assert key_of(EntityType.DASHBOARD, month=12) in deps
        assert key_of(EntityType.FINANCIAL_METRICS, month=12) in deps
        assert key_of(EntityType.FINANCIAL_METRICS, month=1, year=2026) in deps

    def test_savings_dependents(self):
        """Savings feed the statistics and the dashboard."""
        deps = dependent_keys(key_of(EntityType.SAVINGS))
        assert set(deps) == {key_of(EntityType.SAVINGS_STATISTICS), key_of(EntityType.DASHBOARD)}

    def test_aggregates_have_no_dependents(self):
        """Nothing depends on an aggregate."""
        assert dependent_keys(key_of(EntityType.DASHBOARD)) == []

    def test_invalidate_dependents_only_touches_cached(self):
        """Only cached aggregates are invalidated, and the record itself is not."""
        cache = ReadCache()
        income = key_of(EntityType.INCOME)
        dashboard = key_of(EntityType.DASHBOARD)
        cache.set(income, 1)
        cache.set(dashboard, {"total": 1})

        assert invalidate_dependents(cache, income) == [dashboard]
        assert cache.is_stale(dashboard)
        assert not cache.is_stale(income)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
