"""Metric expression syntax: ``${ID}`` / ``${ID.modifier}`` references."""

import re
from collections.abc import Iterator

from kpi_engine.domain.enums import TimeModifier

KPI_ID_PATTERN = re.compile(r"K[DCYM]\d{4}")

# ${KD1001} or ${KD1001.lastYear}
VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_]*)(?:\.([A-Za-z]+))?\}")

# KD1001 or KD1001.lastYear outside of ${...}
_BARE_REFERENCE_PATTERN = re.compile(r"(?<![\w{.$])(K[DCYM]\d{4})(?:\.([A-Za-z]+))?(?![\w}])")

_OPERATOR_PATTERN = re.compile(r"[+\-*/()]")


def normalize_expression(expression: str) -> str:
    """Rewrite bare metric ids into ``${ID.modifier}`` form (``current`` when absent)."""

    def _wrap(match: re.Match[str]) -> str:
        modifier = match.group(2) or TimeModifier.CURRENT.value
        return f"${{{match.group(1)}.{modifier}}}"

    return _BARE_REFERENCE_PATTERN.sub(_wrap, expression)


def iter_references(expression: str) -> Iterator[tuple[str, str]]:
    """Yield (metric_id, modifier) for every reference, in order of appearance."""
    for match in VARIABLE_PATTERN.finditer(normalize_expression(expression)):
        yield match.group(1), match.group(2) or TimeModifier.CURRENT.value


def is_adhoc_expression(kpi_input: str) -> bool:
    """Return True when a requested id is a formula rather than a metric id."""
    if not kpi_input:
        return False
    if "${" in kpi_input:
        return True
    return bool(_OPERATOR_PATTERN.search(kpi_input))


def split_shorthand(kpi_input: str) -> tuple[str, str] | None:
    """Split ``ID.modifier`` shorthand into (metric_id, modifier), else None."""
    if "." not in kpi_input or "${" in kpi_input:
        return None
    metric_id, _, modifier = kpi_input.partition(".")
    return metric_id, modifier or TimeModifier.CURRENT.value
