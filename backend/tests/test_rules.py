"""
Tests for the Rule Evaluator — Severity Classification and Candidates.

Covers:
  - Stock severity classification
  - Expiry severity classification
  - Derived reorder thresholds
  - evaluate() determinism and ordering
  - Dashboard summary counts
"""

from alerts.rules import (
    AlertCandidate,
    ExpiryFact,
    HealthCheckFacts,
    RuleKind,
    Severity,
    StockFact,
    classify_expiry_severity,
    classify_stock_severity,
    compute_dedup_key,
    effective_reorder_threshold,
    evaluate,
    summarize,
)

# ── Stock Severity ─────────────────────────────────────────────────────


class TestStockSeverity:
    def test_zero_is_critical(self):
        assert classify_stock_severity(0, 80) == Severity.CRITICAL

    def test_half_threshold_is_high(self):
        assert classify_stock_severity(40, 80) == Severity.HIGH

    def test_below_half_is_high(self):
        assert classify_stock_severity(30, 80) == Severity.HIGH

    def test_above_half_is_medium(self):
        assert classify_stock_severity(60, 80) == Severity.MEDIUM

    def test_at_threshold_is_medium(self):
        assert classify_stock_severity(80, 80) == Severity.MEDIUM


# ── Expiry Severity ────────────────────────────────────────────────────


class TestExpirySeverity:
    def test_today_is_critical(self):
        assert classify_expiry_severity(0) == Severity.CRITICAL

    def test_one_week_is_critical(self):
        assert classify_expiry_severity(7) == Severity.CRITICAL

    def test_two_weeks_is_high(self):
        assert classify_expiry_severity(14) == Severity.HIGH

    def test_month_is_medium(self):
        assert classify_expiry_severity(30) == Severity.MEDIUM

    def test_beyond_month_is_low(self):
        assert classify_expiry_severity(45) == Severity.LOW


# ── Thresholds ─────────────────────────────────────────────────────────


class TestReorderThreshold:
    def test_configured_threshold_wins(self):
        assert effective_reorder_threshold(100, 80) == 80

    def test_missing_threshold_uses_fifth_of_stock(self):
        assert effective_reorder_threshold(100, None) == 20

    def test_missing_threshold_has_floor(self):
        assert effective_reorder_threshold(10, None) == 5


# ── Evaluation ─────────────────────────────────────────────────────────


class TestEvaluate:
    def test_low_stock_thirty_of_eighty(self):
        facts = HealthCheckFacts(stock=[StockFact(subject_id="p-1", current_quantity=30, reorder_threshold=80)])

        candidates = evaluate(facts)

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.rule_kind == RuleKind.LOW_STOCK
        assert candidate.severity == Severity.HIGH
        assert candidate.facts["stock_ratio"] == 0.375
        assert candidate.category == "inventory"

    def test_out_of_stock_is_critical_stock_only(self):
        facts = HealthCheckFacts(stock=[StockFact(subject_id="p-2", current_quantity=0, reorder_threshold=20)])

        candidates = evaluate(facts)

        assert [c.rule_kind for c in candidates] == [RuleKind.CRITICAL_STOCK]
        assert candidates[0].severity == Severity.CRITICAL

    def test_negative_stock_treated_as_out_of_stock(self):
        facts = HealthCheckFacts(stock=[StockFact(subject_id="p-3", current_quantity=-4, reorder_threshold=20)])

        candidates = evaluate(facts)

        assert candidates[0].rule_kind == RuleKind.CRITICAL_STOCK
        assert candidates[0].facts["current_quantity"] == 0

    def test_above_threshold_produces_nothing(self):
        facts = HealthCheckFacts(stock=[StockFact(subject_id="p-4", current_quantity=81, reorder_threshold=80)])
        assert evaluate(facts) == []

    def test_expired_and_out_of_window_are_ignored(self):
        facts = HealthCheckFacts(
            expiring=[
                ExpiryFact(subject_id="e-1", days_until_expiry=-1),
                ExpiryFact(subject_id="e-2", days_until_expiry=31),
            ]
        )
        assert evaluate(facts, expiry_window_days=30) == []

    def test_expiry_window_is_inclusive(self):
        facts = HealthCheckFacts(expiring=[ExpiryFact(subject_id="e-3", days_until_expiry=30)])

        candidates = evaluate(facts, expiry_window_days=30)

        assert len(candidates) == 1
        assert candidates[0].rule_kind == RuleKind.EXPIRING_SOON
        assert candidates[0].category == "expiry"

    def test_same_facts_same_candidates(self):
        facts = HealthCheckFacts(
            stock=[
                StockFact(subject_id="b", current_quantity=3, reorder_threshold=10),
                StockFact(subject_id="a", current_quantity=0, reorder_threshold=10),
            ],
            expiring=[ExpiryFact(subject_id="c", days_until_expiry=2)],
        )

        first = evaluate(facts)
        second = evaluate(facts)

        assert first == second
        assert [c.rule_kind for c in first] == [
            RuleKind.CRITICAL_STOCK,
            RuleKind.LOW_STOCK,
            RuleKind.EXPIRING_SOON,
        ]

    def test_empty_snapshot(self):
        assert evaluate(HealthCheckFacts()) == []


class TestDedupKey:
    def test_key_ignores_severity_and_quantity(self):
        a = AlertCandidate(RuleKind.LOW_STOCK, "p-1", Severity.HIGH, {"current_quantity": 30})
        b = AlertCandidate(RuleKind.LOW_STOCK, "p-1", Severity.MEDIUM, {"current_quantity": 60})
        assert a.dedup_key == b.dedup_key

    def test_key_differs_by_rule(self):
        assert compute_dedup_key(RuleKind.LOW_STOCK, "p-1") != compute_dedup_key(RuleKind.CRITICAL_STOCK, "p-1")

    def test_key_accepts_plain_string_kind(self):
        assert compute_dedup_key("low_stock", "p-1") == compute_dedup_key(RuleKind.LOW_STOCK, "p-1")


class TestSummarize:
    def test_counts_by_bucket(self):
        facts = HealthCheckFacts(
            stock=[
                StockFact(subject_id="out", current_quantity=0, reorder_threshold=10),
                StockFact(subject_id="crit", current_quantity=3, reorder_threshold=10),
                StockFact(subject_id="low", current_quantity=8, reorder_threshold=10),
                StockFact(subject_id="ok", current_quantity=50, reorder_threshold=10),
            ],
            expiring=[
                ExpiryFact(subject_id="soon", days_until_expiry=3),
                ExpiryFact(subject_id="later", days_until_expiry=90),
            ],
        )

        counts = summarize(facts)

        assert counts == {
            "total": 4,
            "out_of_stock": 1,
            "critical_low_stock": 1,
            "low_stock": 1,
            "healthy": 1,
            "expiring_soon": 1,
        }
