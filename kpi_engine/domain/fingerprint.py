"""Canonical cache keys for query results and partition files."""

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

from kpi_engine.domain.entities import PhysicalTableRef
from kpi_engine.domain.enums import CacheEntryKind

KEY_PREFIX = "kpi:v2:"
_SECTION_PREFIX = {
    CacheEntryKind.QUERY_RESULT: "query:",
    CacheEntryKind.FILE_PATH: "file:",
}
_FIELDS = ("kpis", "times", "dims", "conds", "hist", "target", "kind")


def _encode(values: tuple[str, ...]) -> str:
    # Every item is percent-encoded, so ',', '|', ':' and glob characters never leak
    return ",".join(quote(value, safe="") for value in values)


def _decode(raw: str) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(unquote(value) for value in raw.split(","))


def _encode_condition(dim_code: str, values: list[str] | tuple[str, ...]) -> str:
    return f"{dim_code}=" + ";".join(sorted(str(v) for v in values))


@dataclass(frozen=True)
class CacheFingerprint:
    """Order-independent identity of a cacheable query or partition file.

    Two requests that differ only in the order of their metric ids, time
    points, dimension codes or condition values produce the same canonical
    string.
    """

    metric_ids: tuple[str, ...]
    time_points: tuple[str, ...]
    dim_codes: tuple[str, ...] = ()
    conditions: tuple[str, ...] = ()
    include_historical: bool = False
    include_target: bool = False
    kind: CacheEntryKind = CacheEntryKind.QUERY_RESULT

    @classmethod
    def for_query(
        cls,
        metric_ids: list[str],
        time_points: list[str],
        dim_codes: list[str] | None = None,
        dim_conditions: dict[str, list[str]] | None = None,
        include_historical: bool = False,
        include_target: bool = False,
    ) -> "CacheFingerprint":
        conditions = tuple(
            sorted(_encode_condition(code, values) for code, values in (dim_conditions or {}).items() if values)
        )
        return cls(
            metric_ids=tuple(sorted(set(metric_ids))),
            time_points=tuple(sorted(set(time_points))),
            dim_codes=tuple(sorted(set(dim_codes or []))),
            conditions=conditions,
            include_historical=include_historical,
            include_target=include_target,
            kind=CacheEntryKind.QUERY_RESULT,
        )

    @classmethod
    def for_file(cls, ref: PhysicalTableRef) -> "CacheFingerprint":
        return cls(
            metric_ids=(ref.metric_id,),
            time_points=(ref.time_point,),
            dim_codes=(ref.dim_combination_code,),
            kind=CacheEntryKind.FILE_PATH,
        )

    def canonical(self) -> str:
        """Return the canonical string form used as the L1/L2 key."""
        sections = [
            f"kpis:{_encode(self.metric_ids)}",
            f"times:{_encode(self.time_points)}",
            f"dims:{_encode(self.dim_codes)}",
            f"conds:{_encode(self.conditions)}",
            f"hist:{str(self.include_historical).lower()}",
            f"target:{str(self.include_target).lower()}",
            f"kind:{self.kind.value}",
        ]
        return KEY_PREFIX + _SECTION_PREFIX[self.kind] + "|".join(sections)

    @classmethod
    def parse(cls, canonical: str) -> "CacheFingerprint":
        """Rebuild a fingerprint from its canonical string.

        Raises:
            ValueError: If the string is not a canonical fingerprint.
        """
        if not canonical.startswith(KEY_PREFIX):
            raise ValueError(f"Not a fingerprint key: {canonical}")
        body = canonical[len(KEY_PREFIX):]
        for prefix in _SECTION_PREFIX.values():
            if body.startswith(prefix):
                body = body[len(prefix):]
                break
        else:
            raise ValueError(f"Unknown fingerprint section: {canonical}")

        parts: dict[str, str] = {}
        for section in body.split("|"):
            name, sep, value = section.partition(":")
            if not sep or name not in _FIELDS:
                raise ValueError(f"Malformed fingerprint section '{section}' in {canonical}")
            parts[name] = value
        if set(parts) != set(_FIELDS):
            raise ValueError(f"Incomplete fingerprint: {canonical}")

        return cls(
            metric_ids=_decode(parts["kpis"]),
            time_points=_decode(parts["times"]),
            dim_codes=_decode(parts["dims"]),
            conditions=_decode(parts["conds"]),
            include_historical=parts["hist"] == "true",
            include_target=parts["target"] == "true",
            kind=CacheEntryKind(parts["kind"]),
        )

    def references(self, metric_id: str, time_point: str) -> bool:
        """Return True when this entry depends on metric_id at time_point.

        A requested id matches when it is the metric itself or mentions it as
        a whole token (``KD1001.lastYear`` or an ad-hoc expression over it).
        """
        if time_point not in self.time_points:
            return False
        token = re.compile(rf"(?<![A-Za-z0-9_]){re.escape(metric_id)}(?![A-Za-z0-9_])")
        return any(requested == metric_id or token.search(requested) for requested in self.metric_ids)

    @staticmethod
    def l2_pattern(metric_id: str, time_point: str) -> str:
        """Redis SCAN MATCH pattern that over-approximates references()."""
        return (
            f"{KEY_PREFIX}*kpis:*{quote(metric_id, safe='')}*"
            f"|times:*{quote(time_point, safe='')}*"
        )
