"""Unit tests for cache fingerprints."""

import fnmatch

import pytest

from kpi_engine.domain.entities import PhysicalTableRef
from kpi_engine.domain.enums import CacheEntryKind
from kpi_engine.domain.fingerprint import CacheFingerprint


def test_canonical_is_order_independent():
    a = CacheFingerprint.for_query(
        ["KD1002", "KD1001"],
        ["20251202", "20251201"],
        ["county_id", "city_id"],
        {"city_id": ["10", "4"]},
    )
    b = CacheFingerprint.for_query(
        ["KD1001", "KD1002"],
        ["20251201", "20251202"],
        ["city_id", "county_id"],
        {"city_id": ["4", "10"]},
    )

    assert a.canonical() == b.canonical()


def test_canonical_format():
    fp = CacheFingerprint.for_query(["KD1001"], ["20251201"])

    assert fp.canonical() == (
        "kpi:v2:query:kpis:KD1001|times:20251201|dims:|conds:|hist:false|target:false|kind:QUERY_RESULT"
    )


def test_flags_change_identity():
    base = CacheFingerprint.for_query(["KD1001"], ["20251201"])
    hist = CacheFingerprint.for_query(["KD1001"], ["20251201"], include_historical=True)
    target = CacheFingerprint.for_query(["KD1001"], ["20251201"], include_target=True)
    filtered = CacheFingerprint.for_query(["KD1001"], ["20251201"], dim_conditions={"city_id": ["4"]})

    assert len({base.canonical(), hist.canonical(), target.canonical(), filtered.canonical()}) == 4


def test_duplicates_collapse():
    a = CacheFingerprint.for_query(["KD1001", "KD1001"], ["20251201", "20251201"])
    b = CacheFingerprint.for_query(["KD1001"], ["20251201"])
    assert a.canonical() == b.canonical()


def test_parse_round_trips_expression_ids():
    fp = CacheFingerprint.for_query(
        ["${KD1001}/${KD1002}", "KD1001.lastYear"],
        ["20251201"],
        ["city_id"],
        {"city_id": ["4"]},
        include_historical=True,
    )

    assert CacheFingerprint.parse(fp.canonical()) == fp


def test_file_fingerprint():
    fp = CacheFingerprint.for_file(PhysicalTableRef("KD1001", "20251201", "CD003"))

    assert fp.kind == CacheEntryKind.FILE_PATH
    assert fp.canonical().startswith("kpi:v2:file:kpis:KD1001|")
    assert CacheFingerprint.parse(fp.canonical()) == fp


@pytest.mark.parametrize(
    "key",
    ["other:v2:query:kpis:A", "kpi:v2:bogus:kpis:A", "kpi:v2:query:kpis:A|times:B"],
)
def test_parse_rejects_malformed_keys(key):
    with pytest.raises(ValueError):
        CacheFingerprint.parse(key)


def test_references_requires_metric_and_time_point():
    fp = CacheFingerprint.for_query(["KD1001", "KD1002"], ["20251201", "20251202"])

    assert fp.references("KD1001", "20251201")
    assert fp.references("KD1002", "20251202")
    assert not fp.references("KD1001", "20251203")
    assert not fp.references("KD1003", "20251201")


def test_references_matches_whole_tokens_in_derived_ids():
    fp = CacheFingerprint.for_query(["${KD1001}/${KD1002}", "KD2001.lastYear"], ["20251201"])

    assert fp.references("KD1001", "20251201")
    assert fp.references("KD2001", "20251201")
    assert not fp.references("KD100", "20251201")


def test_l2_pattern_matches_referencing_keys():
    hit = CacheFingerprint.for_query(["KD1001", "KD1002"], ["20251201"]).canonical()
    other_time = CacheFingerprint.for_query(["KD1001"], ["20251202"]).canonical()
    other_metric = CacheFingerprint.for_query(["KD1002"], ["20251201"]).canonical()
    pattern = CacheFingerprint.l2_pattern("KD1001", "20251201")

    assert fnmatch.fnmatchcase(hit, pattern)
    assert not fnmatch.fnmatchcase(other_time, pattern)
    assert not fnmatch.fnmatchcase(other_metric, pattern)
