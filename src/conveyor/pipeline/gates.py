"""Quality gate evaluation — pass/fail decisions on stage-emitted metrics.

Provides a registry of named comparison operators and the evaluator that
checks a metrics mapping against a :class:`QualityGateSpec`.

Built-in operators:
    - ``>=``, ``>``, ``<=``, ``<`` — numeric comparisons
    - ``==``, ``!=`` — equality (numeric when both sides are numbers)

Evaluation is fail-closed: a metric missing from the supplied set is a
violation. Violations are collected, never short-circuited, so the caller
sees every failing criterion.
"""

from __future__ import annotations

import importlib
import logging
import math
import operator as _op
from typing import Any, Callable, Mapping

from conveyor.pipeline.models import (
    GateVerdict,
    GateViolation,
    MetricValue,
    QualityGateSpec,
    Threshold,
)

logger = logging.getLogger(__name__)

Comparator = Callable[[MetricValue, MetricValue], bool]

# Operator shown in a violation message, e.g. "coverage: 75 < 80" for ">=".
_NEGATED: dict[str, str] = {
    ">=": "<",
    ">": "<=",
    "<=": ">",
    "<": ">=",
    "==": "!=",
    "!=": "==",
}

_NUMERIC_OPERATORS = frozenset({">=", ">", "<=", "<"})


# ── Operator Registry ────────────────────────────────────────────────────────


class OperatorRegistry:
    """Registry mapping operator symbols to comparison functions.

    Usage::

        registry = OperatorRegistry()

        @registry.register("~=")
        def roughly(observed, threshold) -> bool:
            ...

    Built-in operators are pre-registered at construction time.
    """

    def __init__(self) -> None:
        self._operators: dict[str, Comparator] = {}
        self._register_builtin_operators()

    def register(self, symbol: str) -> Callable[[Comparator], Comparator]:
        """Decorator to register a comparison function under ``symbol``."""

        def decorator(fn: Comparator) -> Comparator:
            self._operators[symbol] = fn
            logger.debug("Registered gate operator: %s", symbol)
            return fn

        return decorator

    def register_fn(self, symbol: str, fn: Comparator) -> None:
        """Directly register a comparison function by symbol."""
        self._operators[symbol] = fn

    def load_plugin(self, module_path: str) -> int:
        """Load operators from a module exposing ``register_operators(registry)``.

        Returns:
            Number of operators registered from the module.
        """
        before = len(self._operators)
        module = importlib.import_module(module_path)
        if hasattr(module, "register_operators"):
            module.register_operators(self)
        added = len(self._operators) - before
        logger.info("Loaded %d gate operators from plugin: %s", added, module_path)
        return added

    def get(self, symbol: str) -> Comparator | None:
        return self._operators.get(symbol)

    def has(self, symbol: str) -> bool:
        return symbol in self._operators

    def list_operators(self) -> list[str]:
        return sorted(self._operators.keys())

    def _register_builtin_operators(self) -> None:
        self.register_fn(">=", _op.ge)
        self.register_fn(">", _op.gt)
        self.register_fn("<=", _op.le)
        self.register_fn("<", _op.lt)
        self.register_fn("==", _equals)
        self.register_fn("!=", lambda a, b: not _equals(a, b))


def _equals(observed: MetricValue, threshold: MetricValue) -> bool:
    a, b = _as_number(observed), _as_number(threshold)
    if a is not None and b is not None:
        return math.isclose(a, b, rel_tol=0.0, abs_tol=1e-9)
    return str(observed) == str(threshold)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


# ── Evaluator ────────────────────────────────────────────────────────────────


class QualityGateEvaluator:
    """Pure, deterministic gate evaluation.

    Each threshold entry is checked independently against the corresponding
    metric. Missing metrics and non-numeric values for numeric operators are
    violations.
    """

    def __init__(self, operators: OperatorRegistry | None = None) -> None:
        self._operators = operators or OperatorRegistry()

    @property
    def operators(self) -> OperatorRegistry:
        return self._operators

    def evaluate(
        self,
        metrics: Mapping[str, MetricValue],
        spec: QualityGateSpec,
        *,
        gate_name: str = "",
    ) -> GateVerdict:
        """Check every threshold; return a pass or a reject listing all violations."""
        violations: list[GateViolation] = []
        for metric, threshold in spec.thresholds.items():
            violation = self._check(metric, metrics, threshold)
            if violation is not None:
                violations.append(violation)

        verdict = GateVerdict(gate=gate_name, passed=not violations, violations=violations)
        if verdict.passed:
            logger.info("Gate '%s' passed (%d thresholds)", gate_name, len(spec.thresholds))
        else:
            logger.warning("Gate '%s' rejected: %s", gate_name, verdict.summary)
        return verdict

    def _check(
        self,
        metric: str,
        metrics: Mapping[str, MetricValue],
        threshold: Threshold,
    ) -> GateViolation | None:
        symbol = threshold.operator
        expected = threshold.value

        if metric not in metrics:
            return GateViolation(
                metric=metric,
                operator=threshold.operator,
                threshold=expected,
                observed=None,
                message=f"{metric}: missing (required {symbol} {_fmt(expected)})",
            )

        observed = metrics[metric]
        comparator = self._operators.get(symbol)
        if comparator is None:
            return GateViolation(
                metric=metric,
                operator=threshold.operator,
                threshold=expected,
                observed=observed,
                message=f"{metric}: unknown operator '{symbol}'",
            )

        left: MetricValue = observed
        right: MetricValue = expected
        if symbol in _NUMERIC_OPERATORS:
            left_num, right_num = _as_number(observed), _as_number(expected)
            if left_num is None or right_num is None:
                return GateViolation(
                    metric=metric,
                    operator=threshold.operator,
                    threshold=expected,
                    observed=observed,
                    message=f"{metric}: non-numeric value {observed!r} for '{symbol}'",
                )
            left, right = left_num, right_num

        try:
            passed = comparator(left, right)
        except TypeError as exc:
            return GateViolation(
                metric=metric,
                operator=threshold.operator,
                threshold=expected,
                observed=observed,
                message=f"{metric}: cannot compare {observed!r} {symbol} {expected!r} ({exc})",
            )

        if passed:
            return None
        shown = _NEGATED.get(symbol, f"not {symbol}")
        return GateViolation(
            metric=metric,
            operator=threshold.operator,
            threshold=expected,
            observed=observed,
            message=f"{metric}: {_fmt(observed)} {shown} {_fmt(expected)}",
        )


def _fmt(value: MetricValue) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_gate_specs(raw: Mapping[str, Any]) -> dict[str, QualityGateSpec]:
    """Parse the ``quality_gates`` config section into named specs."""
    return {name: QualityGateSpec.from_config(body or {}) for name, body in raw.items()}
