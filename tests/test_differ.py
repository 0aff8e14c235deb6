import pytest

from differ import MISSING, VALUE, compare, describe_difference
from fanout import ResultSet, run_fanout
from rpc_types import Envelope, FailureKind, InconsistentRequestError, Outcome, Record, RpcCall
from tests import fakes

A = Envelope.single(RpcCall("a"))
BATCH = Envelope.batch([RpcCall("x"), RpcCall("y"), RpcCall("z")])


def _results(label, outcomes_by_id, envelope=A):
    records = {}
    for seq_id, outcomes in outcomes_by_id.items():
        if isinstance(outcomes, Outcome):
            outcomes = (outcomes,)
        records[seq_id] = Record(envelope, tuple(outcomes), 0.01)
    return ResultSet(label, records)


def _ok(value):
    return Outcome.success(value)


def _request(i):
    return {"jsonrpc": "2.0", "id": i, "method": "eth_getBlockByNumber", "params": [hex(i), False]}


def _run(handlers, count=5):
    providers = [fakes.make_provider(h, url=f"http://node-{i}") for i, h in enumerate(handlers)]
    result = run_fanout(providers, fakes.lines_of(*(_request(i) for i in range(count))), max_count=100)
    return compare(result.results[0], result.results[1:])


@pytest.mark.parametrize("n", [2, 3, 5])
def test_identical_providers_fully_agree(n):
    report = _run([fakes.node() for _ in range(n)])

    assert report.mismatches == []
    assert report.matched
    assert report.fully_consistent
    assert len(report.tallies) == 5
    assert all(sum(t.successes.values()) == n for t in report.tallies.values())


def test_single_divergent_body_gives_one_mismatch():
    report = _run([fakes.node(), fakes.node(), fakes.node(overrides={3: {"number": "0xdead"}})])

    assert len(report.mismatches) == 1
    mismatch = report.mismatches[0]
    assert mismatch.seq_id == 3
    assert mismatch.provider == "http://node-2"
    assert mismatch.kind == VALUE
    assert report.inconsistent_ids() == [3]
    assert not report.fully_consistent


def test_success_versus_failure_is_a_mismatch_both_ways():
    baseline = _results("base", {1: _ok("0x1"), 2: Outcome.fail(FailureKind.STATUS, "HTTP 500")})
    other = _results("other", {1: Outcome.fail(FailureKind.TRANSPORT, "transport error: Timeout"), 2: _ok("0x2")})

    report = compare(baseline, [other])

    assert [(m.seq_id, m.kind) for m in report.mismatches] == [(1, VALUE), (2, VALUE)]
    assert "provider failed (transport)" in report.mismatches[0].detail
    assert "baseline failed (status)" in report.mismatches[1].detail


def test_failures_compare_by_message():
    same = Outcome.fail(FailureKind.RPC_ERROR, '{"code":-32000,"message":"header not found"}')
    different = Outcome.fail(FailureKind.RPC_ERROR, '{"code":-32000,"message":"unknown block"}')

    report = compare(_results("base", {1: same, 2: same}), [_results("other", {1: same, 2: different})])

    assert [m.seq_id for m in report.mismatches] == [2]
    assert report.mismatches[0].detail == "error messages differ"
    # Agreeing on an error is not a mismatch, but it isn't fully consistent either
    assert not report.fully_consistent
    assert report.tallies[1].errors[same.message] == 2


def test_structural_equality_is_strict_about_json_types():
    report = compare(_results("base", {1: _ok(1)}), [_results("other", {1: _ok(True)})])

    assert len(report.mismatches) == 1


def test_dict_key_order_does_not_matter():
    report = compare(_results("base", {1: _ok({"a": 1, "b": 2})}), [_results("other", {1: _ok({"b": 2, "a": 1})})])

    assert report.matched
    assert report.fully_consistent


def test_missing_entries_are_reported_separately():
    baseline = _results("base", {1: _ok(1), 2: _ok(2)})
    other = _results("other", {1: _ok(1), 3: _ok(3)})

    report = compare(baseline, [other])

    assert [(m.seq_id, m.provider, m.kind) for m in report.mismatches] == [
        (2, "other", MISSING),
        (3, "base", MISSING),
    ]


def test_request_mismatch_is_fatal():
    baseline = _results("base", {1: _ok(1)})
    other = _results("other", {1: _ok(1)}, envelope=Envelope.single(RpcCall("b")))

    with pytest.raises(InconsistentRequestError) as exc_info:
        compare(baseline, [other])

    assert exc_info.value.seq_id == 1
    assert exc_info.value.provider == "other"


def test_batch_compares_as_one_unit():
    baseline = _results("base", {1: (_ok(1), _ok(2), _ok(3))}, envelope=BATCH)
    same = _results("same", {1: (_ok(1), _ok(2), _ok(3))}, envelope=BATCH)
    off = _results("off", {1: (_ok(1), _ok(9), _ok(8))}, envelope=BATCH)

    report = compare(baseline, [same, off])

    assert len(report.mismatches) == 1
    assert report.mismatches[0].provider == "off"
    assert report.mismatches[0].detail.startswith("call 1 (y):")
    assert report.tallies[1].successes == {"[1,2,3]": 2, "[1,9,8]": 1}


def test_batch_through_fanout_records_all_sub_responses():
    batch = [{"method": "m0"}, {"method": "m1"}, {"method": "m2"}]
    providers = [fakes.make_provider(fakes.node(), url=f"http://node-{i}") for i in range(2)]

    result = run_fanout(providers, fakes.lines_of(batch), max_count=10)
    report = compare(result.results[0], result.results[1:])

    record = result.results[0].records[1]
    assert [o.value["method"] for o in record.outcomes] == ["m0", "m1", "m2"]
    assert report.fully_consistent
    assert len(report.tallies) == 1


def test_same_scenario_twice_gives_same_report():
    def handlers():
        return [fakes.node(), fakes.node(overrides={2: "0xbeef"}), fakes.node()]

    def mismatches(report):
        return [(m.seq_id, m.provider, m.kind, m.detail) for m in report.mismatches]

    first = _run(handlers())
    second = _run(handlers())

    assert first.to_dict()["tallies"] == second.to_dict()["tallies"]
    assert mismatches(first) == mismatches(second)
    assert mismatches(first) == [(2, "http://node-1", VALUE, "type differs (str vs dict)")]


def test_report_to_dict():
    report = compare(_results("base", {1: _ok("0x1")}), [_results("other", {1: _ok("0x2")})])

    data = report.to_dict()

    assert data["matched"] is False
    assert data["providers"] == ["base", "other"]
    assert data["mismatches"][0]["baseline"] == [{"result": "0x1"}]
    assert data["mismatches"][0]["compared"] == [{"result": "0x2"}]
    assert data["tallies"]["1"]["successes"] == {'"0x1"': 1, '"0x2"': 1}


def test_report_keeps_per_request_timings():
    baseline = _results("base", {1: _ok("0x1"), 2: _ok("0x2")})
    other = _results("other", {1: _ok("0x1"), 2: _ok("0x3")})
    other.records[2] = Record(A, (_ok("0x3"),), 0.25)

    data = compare(baseline, [other]).to_dict()

    assert data["elapsed"] == {"1": {"base": 0.01, "other": 0.01}, "2": {"base": 0.01, "other": 0.25}}
    assert data["mismatches"][0]["baseline_elapsed"] == 0.01
    assert data["mismatches"][0]["compared_elapsed"] == 0.25


def test_missing_entry_has_no_compared_timing():
    report = compare(_results("base", {1: _ok(1)}), [_results("other", {})])

    data = report.mismatches[0].to_dict()

    assert data["baseline_elapsed"] == 0.01
    assert data["compared_elapsed"] is None
    assert report.elapsed == {1: {"base": 0.01}}


def test_nothing_sent_is_not_fully_consistent():
    providers = [fakes.make_provider(fakes.node(), url=f"http://node-{i}") for i in range(2)]

    result = run_fanout(providers, ["garbage", "{bad"], max_count=10)
    report = compare(result.results[0], result.results[1:])

    assert result.stats.sent == 0
    assert report.tallies == {}
    assert report.matched
    assert not report.fully_consistent


def test_no_others_is_just_tallies():
    report = compare(_results("base", {1: _ok(1)}), [])

    assert report.matched
    assert report.providers == ["base"]


@pytest.mark.parametrize(
    "value,baseline,expected",
    [
        ([1, 2], [1], "list length differs (2 vs 1)"),
        ([1, 2], [1, 3], "item[1] differs: `2` vs `3`"),
        ({"a": 1}, {"a": 1, "b": 2}, "missing keys: ['b']"),
        ({"a": 1, "c": 3}, {"a": 1}, "extra keys: ['c']"),
        ({"a": 1, "b": 2}, {"a": 1, "b": 3}, "key `b` differs"),
        ("0xABC", "0xabc", "case differs (e.g., hex casing)"),
        ("0x1", "0x10", "string length differs (3 vs 4)"),
        ("0x1", 1, "type differs (str vs int)"),
    ],
)
def test_describe_difference(value, baseline, expected):
    assert describe_difference(value, baseline) == expected
