#!/usr/bin/env python3
"""
Match: "new" engine vs "old" engine, every game played once per colour.

Usage:
  sprt-match --new ./engine --old ./engine_base --games 50
  sprt-match --new ./engine --old ./engine --new-option Hash=64 --tc 1+0.08 --concurrency 8
  sprt-match --new ./engine --old ./engine_base --openings openings.txt --samples-out data/texel_samples.jsonl
"""

import argparse
import json
import random
import sys
import threading
from pathlib import Path

from . import config
from .engines import uci_engine_factory
from .log import log
from .pool import TrialScheduler, build_trial_queue, elo_diff
from .position import Move
from .trial import TrialConfig, parse_time_control
from .worker import WorkerInitError

file_lock = threading.Lock()


def parse_option(text):
    """"Hash=64" -> ("Hash", 64); true/false become booleans."""
    name, sep, value = text.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    if value.lower() in ("true", "false"):
        return name, value.lower() == "true"
    try:
        return name, int(value)
    except ValueError:
        return name, value


def load_openings(path):
    moves = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            moves.append(Move.parse(line))
    return moves


def append_lines(path, lines):
    with file_lock:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            for line in lines:
                print(line, file=f)


def main():
    parser = argparse.ArgumentParser(description="Play new vs old engine match")
    parser.add_argument("--new", required=True, help="UCI command for the new engine")
    parser.add_argument("--old", required=True, help="UCI command for the old engine")
    parser.add_argument("--new-option", action="append", type=parse_option, default=[],
                        help="UCI option for the new engine (NAME=VALUE, repeatable)")
    parser.add_argument("--old-option", action="append", type=parse_option, default=[],
                        help="UCI option for the old engine (NAME=VALUE, repeatable)")
    parser.add_argument("--games", type=int, default=10,
                        help="Games per colour (total trials = 2 x games)")
    parser.add_argument("--concurrency", type=int, default=config.MAX_WORKERS)
    tc = parser.add_mutually_exclusive_group()
    tc.add_argument("--tc", default=None, help="Clock as base+inc seconds, e.g. 1+0.08")
    tc.add_argument("--movetime-ms", type=int, default=config.TIME_PER_MOVE_MS)
    parser.add_argument("--max-moves", type=int, default=config.MAX_MOVES)
    parser.add_argument("--material-threshold", type=int, default=None,
                        help=f"Adjudication threshold in cp (never below {config.MATERIAL_THRESHOLD_CP})")
    parser.add_argument("--openings", default=None, help="File with one opening move per line")
    parser.add_argument("--samples-out", default=None, help="Append Texel samples here (JSONL)")
    parser.add_argument("--log-out", default=None, help="Append game logs here")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--trial-timeout", type=float, default=config.TRIAL_TIMEOUT_S,
                        help="Seconds before a stuck trial is abandoned (0 disables)")
    args = parser.parse_args()

    base_ms, inc_ms = 0, 0
    if args.tc:
        try:
            base_ms, inc_ms = parse_time_control(args.tc)
        except ValueError as ex:
            parser.error(str(ex))

    openings = []
    if args.openings:
        try:
            openings = load_openings(args.openings)
        except (OSError, ValueError) as ex:
            print(f"Bad openings file {args.openings}: {ex}")
            sys.exit(1)

    base = TrialConfig(
        max_moves=args.max_moves,
        time_per_move_ms=args.movetime_ms,
        base_time_ms=base_ms,
        increment_ms=inc_ms,
        material_threshold_cp=args.material_threshold,
    )
    configs = build_trial_queue(args.games, base, openings, random.Random(args.seed))
    total = len(configs)

    samples_path = Path(args.samples_out) if args.samples_out else None
    log_path = Path(args.log_out) if args.log_out else None

    tc_desc = f"{args.tc} clock" if args.tc else f"{args.movetime_ms}ms/move"
    print(f"Match: {args.new} (new) vs {args.old} (old), {tc_desc}")
    print(f"{args.games} games per colour = {total} total games")
    print(f"Concurrency: {args.concurrency}")
    if config.overridden_params():
        print(f"Env overrides: {', '.join(f'{k}={v}' for k, _, v in config.overridden_params())}")
    print()

    def on_samples(samples):
        append_lines(samples_path, (json.dumps(s.to_dict(), separators=(",", ":")) for s in samples))

    def on_result(result, tally):
        if log_path is not None:
            colour = "white" if result.new_plays_white else "black"
            append_lines(log_path, [
                f"# Game {result.game_index} new={colour} result={result.result} "
                f"reason={result.reason} token={result.result_token}",
                result.log,
                "",
            ])
        return False

    factory = uci_engine_factory(args.new, args.old, dict(args.new_option), dict(args.old_option))
    scheduler = TrialScheduler(factory, concurrency=min(args.concurrency, total) or 1,
                               trial_timeout=args.trial_timeout)
    try:
        with scheduler:
            summary = scheduler.run(configs, on_result=on_result,
                                    on_samples=on_samples if samples_path is not None else None)
    except WorkerInitError as ex:
        print(f"Worker pool failed to start: {ex}")
        sys.exit(1)
    except KeyboardInterrupt:
        log("Interrupted")
        sys.exit(130)

    t = summary.tally
    games = t.games
    pct = t.score / games if games else 0.0

    reasons = {}
    for r in summary.results:
        reasons[r.reason] = reasons.get(r.reason, 0) + 1

    print(f"\n{'='*60}")
    print(f"{'NEW vs OLD':^60}")
    print(f"{'='*60}")
    print(f"  {'W':>4} {'D':>4} {'L':>4} {'Err':>4}  {'Score':>10}  {'Pct':>6}  {'Elo diff':>10}")
    print(f"  {'-'*52}")
    print(f"  {t.wins:>4} {t.draws:>4} {t.losses:>4} {t.errors:>4}  {t.score:>5.1f}/{games:<4}  "
          f"{pct*100:>5.1f}%  {elo_diff(pct) if games else 'n/a':>10}")
    print(f"{'='*60}")
    if reasons:
        print("  " + " ".join(f"{k}={v}" for k, v in sorted(reasons.items())))
    if summary.abandoned:
        print(f"  {summary.abandoned} trials abandoned: no live workers left")
    if samples_path is not None:
        print(f"\nSamples appended to: {samples_path}")
    if log_path is not None:
        print(f"Game logs appended to: {log_path}")


if __name__ == "__main__":
    main()
