"""
Rule Evaluator — Pure mapping from a facts snapshot to alert candidates.

Alert Types:
  - low_stock: 0 < quantity <= reorder threshold
  - critical_stock: quantity == 0
  - expiring_soon: 0 <= days until expiry <= expiry window

No I/O, no recipients, no cooldowns. Same facts in, same candidates out.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RuleKind(str, Enum):
    LOW_STOCK = "low_stock"
    CRITICAL_STOCK = "critical_stock"
    EXPIRING_SOON = "expiring_soon"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}
_RULE_ORDER = {RuleKind.CRITICAL_STOCK: 0, RuleKind.LOW_STOCK: 1, RuleKind.EXPIRING_SOON: 2}

# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_THRESHOLDS = {
    "stock_ratio": {
        "high": 0.5,  # At or below half the reorder threshold
    },
    "expiry_days": {
        "critical": 7,
        "high": 14,
        "medium": 30,
    },
}

DEFAULT_EXPIRY_WINDOW_DAYS = 30
MIN_DERIVED_REORDER_LEVEL = 5
DERIVED_REORDER_FRACTION = 0.2


@dataclass(frozen=True)
class StockFact:
    subject_id: str
    current_quantity: int
    reorder_threshold: int | None
    name: str = ""


@dataclass(frozen=True)
class ExpiryFact:
    subject_id: str
    days_until_expiry: int
    expiry_date: str | None = None
    name: str = ""


@dataclass
class HealthCheckFacts:
    """Snapshot handed to evaluate(). Either list may be empty when its rule family is not being checked."""

    stock: list[StockFact] = field(default_factory=list)
    expiring: list[ExpiryFact] = field(default_factory=list)


@dataclass(frozen=True)
class AlertCandidate:
    rule_kind: RuleKind
    subject_id: str
    severity: Severity
    facts: dict[str, Any]

    @property
    def dedup_key(self) -> str:
        return compute_dedup_key(self.rule_kind, self.subject_id)

    @property
    def category(self) -> str:
        return "expiry" if self.rule_kind == RuleKind.EXPIRING_SOON else "inventory"

    @property
    def title(self) -> str:
        return _TITLES[self.rule_kind](self)

    @property
    def summary(self) -> str:
        name = self.facts.get("name") or f"Product {self.subject_id}"
        if self.rule_kind == RuleKind.CRITICAL_STOCK:
            return f"{name} is out of stock."
        if self.rule_kind == RuleKind.LOW_STOCK:
            return (
                f"{name} is running low: {self.facts['current_quantity']} remaining "
                f"(reorder at {self.facts['reorder_threshold']})."
            )
        days = self.facts["days_until_expiry"]
        when = "today" if days == 0 else f"in {days} day{'s' if days != 1 else ''}"
        expiry = f" ({self.facts['expiry_date']})" if self.facts.get("expiry_date") else ""
        return f"{name} expires {when}{expiry}."


_TITLES = {
    RuleKind.CRITICAL_STOCK: lambda c: "Out of Stock",
    RuleKind.LOW_STOCK: lambda c: "Low Stock Alert" if c.severity != Severity.HIGH else "Stock Running Very Low",
    RuleKind.EXPIRING_SOON: lambda c: "Product Expiring Soon"
    if c.severity in (Severity.CRITICAL, Severity.HIGH)
    else "Product Expiry Warning",
}


def compute_dedup_key(rule_kind: RuleKind | str, subject_id: str) -> str:
    """Deterministic identity of an alert condition, independent of when it fires."""
    kind = rule_kind.value if isinstance(rule_kind, RuleKind) else str(rule_kind)
    return hashlib.sha256(f"{kind}|{subject_id}".encode()).hexdigest()


def effective_reorder_threshold(current_quantity: int, reorder_threshold: int | None) -> int:
    """Configured threshold, or max(20% of stock, 5) when none is set."""
    if reorder_threshold is not None:
        return reorder_threshold
    return max(int(max(current_quantity, 0) * DERIVED_REORDER_FRACTION), MIN_DERIVED_REORDER_LEVEL)


def classify_stock_severity(current_quantity: int, reorder_threshold: int) -> Severity:
    """Severity for a positive quantity at or below threshold: HIGH as the ratio shrinks, else MEDIUM."""
    if current_quantity <= 0:
        return Severity.CRITICAL
    ratio = current_quantity / reorder_threshold
    if ratio <= SEVERITY_THRESHOLDS["stock_ratio"]["high"]:
        return Severity.HIGH
    return Severity.MEDIUM


def classify_expiry_severity(days_until_expiry: int) -> Severity:
    """Classify alert severity based on days until expiry."""
    thresholds = SEVERITY_THRESHOLDS["expiry_days"]
    if days_until_expiry <= thresholds["critical"]:
        return Severity.CRITICAL
    elif days_until_expiry <= thresholds["high"]:
        return Severity.HIGH
    elif days_until_expiry <= thresholds["medium"]:
        return Severity.MEDIUM
    return Severity.LOW


# ──────────────────────────────────────────────────────────────────────────
# Evaluation
# ──────────────────────────────────────────────────────────────────────────


def _evaluate_stock(fact: StockFact) -> AlertCandidate | None:
    quantity = max(fact.current_quantity, 0)
    threshold = effective_reorder_threshold(quantity, fact.reorder_threshold)

    if quantity == 0:
        return AlertCandidate(
            rule_kind=RuleKind.CRITICAL_STOCK,
            subject_id=fact.subject_id,
            severity=Severity.CRITICAL,
            facts={"name": fact.name, "current_quantity": 0, "reorder_threshold": threshold},
        )

    if threshold <= 0 or quantity > threshold:
        return None

    return AlertCandidate(
        rule_kind=RuleKind.LOW_STOCK,
        subject_id=fact.subject_id,
        severity=classify_stock_severity(quantity, threshold),
        facts={
            "name": fact.name,
            "current_quantity": quantity,
            "reorder_threshold": threshold,
            "stock_ratio": round(quantity / threshold, 4),
        },
    )


def _evaluate_expiry(fact: ExpiryFact, expiry_window_days: int) -> AlertCandidate | None:
    days = fact.days_until_expiry
    if days < 0 or days > expiry_window_days:
        return None
    return AlertCandidate(
        rule_kind=RuleKind.EXPIRING_SOON,
        subject_id=fact.subject_id,
        severity=classify_expiry_severity(days),
        facts={
            "name": fact.name,
            "days_until_expiry": days,
            "expiry_date": fact.expiry_date,
            "expiry_window_days": expiry_window_days,
        },
    )


def evaluate(facts: HealthCheckFacts, expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS) -> list[AlertCandidate]:
    """Map a facts snapshot to alert candidates, ordered by rule then subject."""
    candidates: list[AlertCandidate] = []
    for stock_fact in facts.stock:
        candidate = _evaluate_stock(stock_fact)
        if candidate is not None:
            candidates.append(candidate)
    for expiry_fact in facts.expiring:
        candidate = _evaluate_expiry(expiry_fact, expiry_window_days)
        if candidate is not None:
            candidates.append(candidate)

    candidates.sort(key=lambda c: (_RULE_ORDER[c.rule_kind], c.subject_id))
    return candidates


def summarize(facts: HealthCheckFacts, expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS) -> dict[str, int]:
    """Stock-health counts for dashboards: out of stock, critical low, low, healthy, expiring soon."""
    counts = {"total": len(facts.stock), "out_of_stock": 0, "critical_low_stock": 0, "low_stock": 0, "healthy": 0}
    for fact in facts.stock:
        candidate = _evaluate_stock(fact)
        if candidate is None:
            counts["healthy"] += 1
        elif candidate.rule_kind == RuleKind.CRITICAL_STOCK:
            counts["out_of_stock"] += 1
        elif candidate.severity == Severity.HIGH:
            counts["critical_low_stock"] += 1
        else:
            counts["low_stock"] += 1
    counts["expiring_soon"] = sum(
        1 for fact in facts.expiring if _evaluate_expiry(fact, expiry_window_days) is not None
    )
    return counts
