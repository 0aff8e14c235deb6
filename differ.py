"""Compare every provider's results against the baseline provider's."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from fanout import ResultSet
from rpc_types import InconsistentRequestError, Outcome, Record

logger = logging.getLogger(__name__)

MISSING = "missing"
VALUE = "value"


def format_value(val: Any, max_len: int = 100) -> str:
    """Format a value for display, truncating if necessary."""
    if val is None:
        return "None"
    if isinstance(val, (dict, list)):
        s = json.dumps(val, sort_keys=True)
    else:
        s = str(val)

    if len(s) > max_len:
        return s[:max_len] + "..."
    return s


def describe_difference(value: Any, baseline: Any) -> str:
    """Describe what's different between a compared value and the baseline value."""
    if isinstance(value, list) and isinstance(baseline, list):
        if len(value) != len(baseline):
            return f"list length differs ({len(value)} vs {len(baseline)})"
        for i, (v, b) in enumerate(zip(value, baseline)):
            if json.dumps(v, sort_keys=True) != json.dumps(b, sort_keys=True):
                return f"item[{i}] differs: `{format_value(v, 20)}` vs `{format_value(b, 20)}`"
        return "values differ"

    if isinstance(value, dict) and isinstance(baseline, dict):
        keys = set(value)
        baseline_keys = set(baseline)
        if keys != baseline_keys:
            parts = []
            if baseline_keys - keys:
                parts.append(f"missing keys: {sorted(baseline_keys - keys)}")
            if keys - baseline_keys:
                parts.append(f"extra keys: {sorted(keys - baseline_keys)}")
            return "; ".join(parts)
        for key in sorted(keys):
            if json.dumps(value[key], sort_keys=True) != json.dumps(baseline[key], sort_keys=True):
                return f"key `{key}` differs"
        return "values differ"

    if isinstance(value, str) and isinstance(baseline, str):
        if value.lower() == baseline.lower():
            return "case differs (e.g., hex casing)"
        if len(value) != len(baseline):
            return f"string length differs ({len(value)} vs {len(baseline)})"
        return "string content differs"

    if type(value) != type(baseline):
        return f"type differs ({type(value).__name__} vs {type(baseline).__name__})"

    return "values differ"


def describe_outcomes(outcome: Outcome, baseline: Outcome) -> str:
    if outcome.ok and baseline.ok:
        return describe_difference(outcome.value, baseline.value)
    if outcome.ok:
        return f"baseline failed ({baseline.failure.value}), provider succeeded"
    if baseline.ok:
        return f"provider failed ({outcome.failure.value}), baseline succeeded"
    return "error messages differ"


@dataclass(frozen=True)
class Mismatch:
    seq_id: int
    provider: str
    kind: str
    baseline: Record | None
    compared: Record | None
    detail: str

    def to_dict(self) -> dict:
        def outcomes(record):
            if record is None:
                return None
            return [o.to_dict() for o in record.outcomes]

        def elapsed(record):
            return None if record is None else record.elapsed

        return {
            "id": self.seq_id,
            "provider": self.provider,
            "kind": self.kind,
            "detail": self.detail,
            "baseline": outcomes(self.baseline),
            "baseline_elapsed": elapsed(self.baseline),
            "compared": outcomes(self.compared),
            "compared_elapsed": elapsed(self.compared),
        }


@dataclass
class Tally:
    """How many providers returned each distinct body / error for one request."""

    successes: Counter = field(default_factory=Counter)
    errors: Counter = field(default_factory=Counter)

    def add(self, record: Record) -> None:
        if record.ok:
            self.successes[record.body()] += 1
        else:
            for message in record.error_messages():
                self.errors[message] += 1

    @property
    def consistent(self) -> bool:
        return len(self.successes) == 1 and not self.errors


@dataclass
class ComparisonReport:
    baseline: str
    providers: list[str]
    mismatches: list[Mismatch] = field(default_factory=list)
    tallies: dict[int, Tally] = field(default_factory=dict)
    # seq id -> provider -> seconds spent on that request
    elapsed: dict[int, dict[str, float]] = field(default_factory=dict)

    @property
    def matched(self) -> bool:
        return not self.mismatches

    @property
    def fully_consistent(self) -> bool:
        """True only if something was compared and every request agreed."""
        return bool(self.tallies) and all(t.consistent for t in self.tallies.values())

    def inconsistent_ids(self) -> list[int]:
        return [seq_id for seq_id, t in self.tallies.items() if not t.consistent]

    def to_dict(self) -> dict:
        return {
            "baseline": self.baseline,
            "providers": self.providers,
            "matched": self.matched,
            "fully_consistent": self.fully_consistent,
            "mismatches": [m.to_dict() for m in self.mismatches],
            "tallies": {
                str(seq_id): {"successes": dict(t.successes), "errors": dict(t.errors)}
                for seq_id, t in self.tallies.items()
            },
            "elapsed": {str(seq_id): timings for seq_id, timings in self.elapsed.items()},
        }


def compare_records(seq_id: int, label: str, baseline: Record, record: Record) -> Mismatch | None:
    """Compare one provider's record with the baseline's. Batches are one unit."""
    for index, (expected, got) in enumerate(zip(baseline.outcomes, record.outcomes)):
        if not got.same_as(expected):
            detail = describe_outcomes(got, expected)
            if baseline.envelope.is_batch:
                detail = f"call {index} ({baseline.envelope.calls[index].method}): {detail}"
            return Mismatch(seq_id, label, VALUE, baseline, record, detail)
    return None


def compare(baseline: ResultSet, others: list[ResultSet]) -> ComparisonReport:
    """
    Diff every result set against the baseline.

    Every id seen by any provider is checked, so an id missing on either side
    shows up as a ``missing`` mismatch. The same id carrying a different
    request on two providers means the fan-out itself is broken and raises
    InconsistentRequestError.
    """
    report = ComparisonReport(baseline.label, [baseline.label] + [o.label for o in others])
    all_ids = set(baseline.records)
    for other in others:
        all_ids.update(other.records)

    for seq_id in sorted(all_ids):
        tally = Tally()
        timings = {}
        expected = baseline.records.get(seq_id)
        if expected is None:
            report.mismatches.append(
                Mismatch(seq_id, baseline.label, MISSING, None, None, "no result recorded on baseline")
            )
        else:
            tally.add(expected)
            timings[baseline.label] = expected.elapsed

        for other in others:
            record = other.records.get(seq_id)
            if record is None:
                report.mismatches.append(
                    Mismatch(seq_id, other.label, MISSING, expected, None, "no result recorded")
                )
                continue
            tally.add(record)
            timings[other.label] = record.elapsed
            if expected is None:
                continue
            if record.envelope != expected.envelope:
                raise InconsistentRequestError(seq_id, other.label, expected.envelope, record.envelope)
            mismatch = compare_records(seq_id, other.label, expected, record)
            if mismatch is not None:
                report.mismatches.append(mismatch)

        report.tallies[seq_id] = tally
        report.elapsed[seq_id] = timings

    logger.debug(
        "compared %d request(s) across %d provider(s): %d mismatch(es)",
        len(all_ids), len(report.providers), len(report.mismatches),
    )
    return report
