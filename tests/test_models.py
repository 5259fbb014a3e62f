"""
Tests for Household Sync models

Test strategy:
1. Unit tests for individual components (models, cache, projections)
2. Flow tests for the pipeline and resolver against the in-memory backend
3. No real network calls in tests (in-memory backend, httpx.MockTransport)
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from household_sync.models import (
    AccountFormData,
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    CacheEntry,
    CacheKey,
    EntityType,
    IncomeFormData,
    MonthlyIncome,
    MutationStatus,
)


class TestCacheKey:
    """Tests for the key model."""

    def test_equal_keys_hash_the_same(self):
        """Keys built from the same parts are interchangeable as dict keys."""
        a = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        b = CacheKey(entity_type="income", owner_id="household", year=2025, month=9)
        assert a == b
        assert {a: 1}[b] == 1

    def test_sub_id_distinguishes_keys(self):
        """A sub id makes a different key."""
        base = CacheKey(entity_type=EntityType.ACCOUNTS, owner_id="household", year=2025, month=9)
        with_id = base.model_copy(update={"sub_id": "acc-1"})
        assert base != with_id
        assert with_id.parts == ("accounts", "household", 2025, 9, "acc-1")

    def test_key_is_frozen(self):
        """Keys cannot be mutated after creation."""
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        with pytest.raises(ValidationError):
            key.month = 10

    def test_prefix_matching(self):
        """Prefixes may use EntityType members or their values."""
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        assert key.matches((EntityType.INCOME,))
        assert key.matches(("income", "household", 2025))
        assert not key.matches(("income", "household", 2024))
        assert not key.matches(("expenses",))

    def test_related_rolls_over_the_year(self):
        """The month after December is January of the next year."""
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=12)
        nxt = key.related(EntityType.FINANCIAL_METRICS, months_ahead=1)
        assert (nxt.entity_type, nxt.year, nxt.month) == (EntityType.FINANCIAL_METRICS, 2026, 1)
        assert nxt.owner_id == "household"

    def test_string_form(self):
        """Keys render as a path for logs and audit."""
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        assert str(key) == "income/household/2025/9"

    def test_month_bounds(self):
        """Month must be 1-12."""
        with pytest.raises(ValidationError):
            CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=13)


class TestRecordModels:
    """Tests for entity record and form models."""

    def test_income_accepts_korean_field_names(self):
        """Income salaries are addressed by their Korean names on the wire."""
        form = IncomeFormData.model_validate({"경훈_월급": 5_000_000, "선화_월급": 6_000_000})
        assert form.kyunghoon_salary == 5_000_000
        assert form.sunhwa_salary == 6_000_000
        assert form.model_dump(by_alias=True)["경훈_월급"] == 5_000_000

    def test_income_accepts_python_field_names(self):
        """Python names work too."""
        form = IncomeFormData(kyunghoon_salary=1, sunhwa_salary=2)
        assert form.other_income == 0

    def test_amount_upper_bound(self):
        """Monthly amounts are capped at 100,000,000."""
        with pytest.raises(ValidationError):
            IncomeFormData.model_validate({"경훈_월급": 100_000_001, "선화_월급": 0})

    def test_negative_amount_rejected(self):
        """Amounts cannot be negative."""
        with pytest.raises(ValidationError):
            IncomeFormData.model_validate({"경훈_월급": -1, "선화_월급": 0})

    def test_notes_length(self):
        """Notes are limited to 500 characters."""
        with pytest.raises(ValidationError):
            IncomeFormData.model_validate({"경훈_월급": 0, "선화_월급": 0, "notes": "x" * 501})

    def test_account_currency_and_balance(self):
        """Currency is a 3-letter code (KRW by default); balances go up to 100 billion."""
        form = AccountFormData(account_name="  Main  ", account_type="checking", balance=100_000_000_000)
        assert form.currency == "KRW"
        assert form.account_name == "Main"
        with pytest.raises(ValidationError):
            AccountFormData(account_name="Main", account_type="checking", balance=0, currency="WON!")

    def test_record_year_bounds(self):
        """Records are kept for 2020-2030."""
        with pytest.raises(ValidationError):
            MonthlyIncome(user_id="household", year=2019, month=1)

    def test_only_records_are_mutable(self):
        """Aggregates cannot be written."""
        assert EntityType.INCOME.is_record
        assert EntityType.SAVINGS.is_record
        assert not EntityType.DASHBOARD.is_record
        assert not EntityType.SAVINGS_STATISTICS.is_record


class TestSyncModels:
    """Tests for cache entries and mutation state."""

    def test_entry_stale_after_horizon(self):
        """An entry is stale once its staleness horizon passes."""
        now = datetime(2025, 9, 1, tzinfo=timezone.utc)
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        entry = CacheEntry(
            key=key,
            value=1,
            fetched_at=now,
            stale_at=now + timedelta(minutes=5),
            evict_at=now + timedelta(minutes=10),
        )
        assert not entry.is_stale(now)
        assert entry.is_stale(now + timedelta(minutes=5))
        assert not entry.is_expired(now + timedelta(minutes=9))
        assert entry.is_expired(now + timedelta(minutes=10))

    def test_invalidated_entry_is_stale(self):
        """Invalidation makes an entry stale regardless of time."""
        now = datetime(2025, 9, 1, tzinfo=timezone.utc)
        key = CacheKey(entity_type=EntityType.INCOME, owner_id="household", year=2025, month=9)
        entry = CacheEntry(
            key=key,
            value=1,
            fetched_at=now,
            stale_at=now + timedelta(minutes=5),
            evict_at=now + timedelta(minutes=10),
            invalidated=True,
        )
        assert entry.is_stale(now)

    def test_only_applied_is_non_terminal(self):
        """Every status but APPLIED is terminal."""
        assert not MutationStatus.APPLIED.is_terminal
        assert MutationStatus.COMMITTED.is_terminal
        assert MutationStatus.ROLLED_BACK.is_terminal
        assert MutationStatus.CONFLICTED.is_terminal


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.MUTATION_STARTED,
            description="Test event",
        )
        assert event.event_type == AuditEventType.MUTATION_STARTED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        mutation_id = uuid4()
        event = AuditEventBuilder.mutation_committed(
            entity_type="income",
            entity_id="income/household/2025/9",
            mutation_id=mutation_id,
            version="v2",
            invalidated=["dashboard/household/2025/9"],
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "mutation_committed"
        assert log_dict["correlation_id"] == str(mutation_id)
        assert log_dict["details"]["invalidated_keys"] == ["dashboard/household/2025/9"]

    def test_audit_event_to_row(self):
        """Rows have the fixed 11-column layout."""
        event = AuditEvent(
            event_type=AuditEventType.FETCH_FAILED,
            description="Test",
        )
        row = event.to_row()
        assert len(row) == 11
        assert row[2] == "fetch_failed"

    def test_conflict_resolved_is_user_action(self):
        """Resolutions are operator decisions."""
        event = AuditEventBuilder.conflict_resolved(
            entity_type="income",
            entity_id="income/household/2025/9",
            mutation_id=uuid4(),
            strategy="remote",
        )
        assert event.is_user_action
        assert event.details == {"strategy": "remote"}

    def test_terminal_resolution_failure_is_an_error(self):
        """A resolution failure that closes the conflict is logged as an error."""
        event = AuditEventBuilder.conflict_resolution_failed(
            entity_type="income",
            entity_id="income/household/2025/9",
            mutation_id=uuid4(),
            strategy="local",
            error_kind="validation",
            error_message="invalid",
            terminal=True,
        )
        assert event.severity == AuditSeverity.ERROR
        assert event.error_code == "validation"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
