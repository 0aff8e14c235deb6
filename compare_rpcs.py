#!/usr/bin/env python3
"""
Send the same JSON-RPC requests to multiple providers and compare responses.

This script:
1. Asks every provider for its chain id and drops the ones that disagree
2. Reads one request (or batch) per line from stdin or --input
3. Sends every request to every provider concurrently, in the same order
4. Diffs each provider's responses against the first provider's
5. Exits non-zero if any provider disagreed
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from differ import ComparisonReport, compare, format_value
from fanout import DEFAULT_MAX_COUNT, FanoutResult, ResultSet, run_fanout
from rpc_providers import DEFAULT_CHAIN_METHOD, DEFAULT_TIMEOUT, build_pool
from rpc_types import InconsistentRequestError

EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_ERROR = 2

logger = logging.getLogger("compare_rpcs")

_shutdown = threading.Event()
_abort = threading.Event()


def _signal_handler(signum, frame):
    """Stop reading new requests; a second signal exits immediately."""
    sig_name = signal.Signals(signum).name
    if _shutdown.is_set():
        print(f"\n\nForced exit (received {sig_name} again)", file=sys.stderr)
        _abort.set()
        sys.exit(EXIT_ERROR)
    print(f"\n\nShutdown requested ({sig_name}), finishing queued requests...", file=sys.stderr)
    _shutdown.set()


def configure_logging(level: int = logging.INFO) -> None:
    """Send diagnostics to stderr so stdout only carries the report."""
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # requests' connection pool is chatty at debug
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def parse_headers(parser: argparse.ArgumentParser, raw_headers: list[str] | None) -> dict[str, str]:
    headers = {}
    for header in raw_headers or []:
        if ":" not in header:
            parser.error(f"Invalid header format '{header}', expected 'Name: Value'")
        name, value = header.split(":", 1)
        headers[name.strip()] = value.strip()
    return headers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send the same query to multiple rpcs and compare responses")
    parser.add_argument("rpcs", nargs="+", metavar="RPC", help="Provider URLs; the first usable one is the baseline")
    parser.add_argument("--max-count", type=positive_int, default=DEFAULT_MAX_COUNT,
                        help=f"How many rpc calls to test (default: {DEFAULT_MAX_COUNT})")
    parser.add_argument("--input", type=str, default=None,
                        help="File with one JSON-RPC request or batch per line (default: stdin)")
    parser.add_argument("--chain-method", type=str, default=DEFAULT_CHAIN_METHOD,
                        help=f"Method used to check providers serve the same network (default: {DEFAULT_CHAIN_METHOD})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Per-call timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--capacity", type=positive_int, default=None,
                        help="Queued requests per provider before reading pauses (default: --max-count)")
    parser.add_argument("--header", "-H", action="append", metavar="NAME:VALUE",
                        help="Extra HTTP header sent to every provider (repeatable)")
    parser.add_argument("--report", type=str, default=None, help="Write the comparison report to this JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def print_timings(result: FanoutResult, max_count: int) -> None:
    print(f"\n{'='*80}")
    for results in result.results:
        line = (
            f"{results.label} completed {len(results.records)} request(s) in "
            f"{results.elapsed * 1000:.0f} ms ({results.busy_time * 1000:.0f} ms waiting on rpc)"
        )
        if results.lagged:
            line += f", lagged {results.lagged}"
        if results.crashed:
            line += f", CRASHED: {results.crashed}"
        print(line)
    print(f"sent {result.stats.sent}/{max_count} requests", end="")
    if result.stats.skipped:
        print(f" ({result.stats.skipped} malformed line(s) skipped)", end="")
    if result.stats.stopped_early:
        print(" (interrupted)", end="")
    print()


def print_echo(results: ResultSet) -> None:
    """Single-provider mode: nothing to compare, show what came back."""
    print(f"\nOnly one provider ({results.label}), echoing responses:")
    for seq_id, record in sorted(results.records.items()):
        for call, outcome in zip(record.envelope.calls, record.outcomes):
            print(f"  {seq_id} {call.method}: {outcome.summary()}")
        print(f"    completed in {record.elapsed * 1000:.0f} ms")


def print_report(report: ComparisonReport) -> None:
    """Print a human-readable summary of comparison results."""
    print(f"\n{'='*80}")
    print(f"Baseline: {report.baseline}")
    print(f"Providers compared: {', '.join(report.providers)}")

    if not report.tallies:
        print("\nNo requests were compared.")
    elif report.fully_consistent:
        print("\nall matched! yey!")
    else:
        inconsistent = report.inconsistent_ids()
        print(f"\nRequests without a single agreed response: {len(inconsistent)}/{len(report.tallies)}")
        for seq_id in inconsistent:
            tally = report.tallies[seq_id]
            print(f"  {seq_id}:")
            for body, count in tally.successes.most_common():
                print(f"    success x{count}: {format_value(body)}")
            for message, count in tally.errors.most_common():
                print(f"    error   x{count}: {format_value(message)}")

    if report.matched:
        if report.tallies and not report.fully_consistent:
            print("\nNo mismatches against the baseline.")
        return

    print(f"\nFound {len(report.mismatches)} mismatch(es):")
    for m in report.mismatches:
        print(f"\n  [{m.kind}] {m.seq_id} {m.provider}: {m.detail}")
        if m.baseline is not None:
            print(
                f"    baseline ({m.baseline.elapsed * 1000:.0f} ms): "
                f"{', '.join(o.summary() for o in m.baseline.outcomes)}"
            )
        if m.compared is not None:
            print(
                f"    compared ({m.compared.elapsed * 1000:.0f} ms): "
                f"{', '.join(o.summary() for o in m.compared.outcomes)}"
            )


def save_report(path: Path, report: ComparisonReport) -> None:
    """Save the comparison report to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(report.to_dict(), f, indent=2)


def run(args: argparse.Namespace, lines, headers: dict[str, str]) -> int:
    pool = build_pool(args.rpcs, chain_method=args.chain_method, headers=headers, timeout=args.timeout)
    if not pool.providers:
        print("\nERROR: No usable providers", file=sys.stderr)
        return EXIT_MISMATCH

    try:
        result = run_fanout(
            pool.providers, lines, args.max_count,
            capacity=args.capacity, stop_event=_shutdown, abort_event=_abort,
        )
    finally:
        for provider in pool.providers:
            provider.close()

    print_timings(result, args.max_count)

    if not pool.comparable:
        print_echo(result.results[0])
        return EXIT_OK

    try:
        report = compare(result.results[0], result.results[1:])
    except InconsistentRequestError as e:
        logger.critical("internal consistency failure, aborting: %s", e)
        return EXIT_ERROR

    print_report(report)
    if args.report:
        save_report(Path(args.report), report)
        print(f"\nReport written to {Path(args.report).absolute()}")

    return EXIT_OK if report.matched else EXIT_MISMATCH


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    headers = parse_headers(parser, args.header)
    source = sys.stdin
    if args.input:
        try:
            source = open(args.input)
        except OSError as e:
            parser.error(f"Cannot read --input '{args.input}': {e.strerror}")
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    _shutdown.clear()
    _abort.clear()
    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        return run(args, source, headers)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if source is not sys.stdin:
            source.close()


if __name__ == "__main__":
    sys.exit(main())
