#!/usr/bin/env python3
"""Write a tuned parameter artifact back into the evaluator's `const NAME: i32 = N;` lines."""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

from .. import config
from .texel_tune import load_artifact_params, to_const_name


def load_tuned_params(path: Path) -> dict[str, float]:
    if not path.exists():
        raise FileNotFoundError(f"params file not found: {path}")
    return load_artifact_params(path)


def replace_const(text: str, const_name: str, new_value: int) -> tuple[str, int]:
    pattern = rf"(const\s+{re.escape(const_name)}\s*:\s*i32\s*=\s*)(-?\d+)(\s*;)"
    repl = rf"\g<1>{new_value}\g<3>"
    return re.subn(pattern, repl, text, count=1)


def apply_params_to_source(text: str, params: dict[str, float]) -> tuple[str, list[str]]:
    """Updated source and one "NAME: old -> new" line per constant that changed.

    Values are truncated toward zero. Names without a matching constant are
    left alone.
    """
    changes: list[str] = []
    for name, value in params.items():
        const = to_const_name(name)
        m = re.search(rf"const\s+{re.escape(const)}\s*:\s*i32\s*=\s*(-?\d+)\s*;", text)
        if not m:
            continue
        old = int(m.group(1))
        new = int(value)
        if new == old:
            continue
        text, _ = replace_const(text, const, new)
        changes.append(f"{const}: {old} -> {new}")
    return text, changes


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply tuned Texel params to evaluator source")
    parser.add_argument("--params", default=str(config.TUNED_PARAMS_FILE), help="Artifact from sprt-texel")
    parser.add_argument("--eval-source", required=True, help="Evaluator source to patch")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    eval_path = Path(args.eval_source)
    try:
        params = load_tuned_params(Path(args.params))
        text = eval_path.read_text(encoding="utf-8")
    except (OSError, ValueError) as ex:
        print(f"[apply] Fatal: {ex}", flush=True)
        sys.exit(1)

    text, changes = apply_params_to_source(text, params)

    print("[apply] Applying tuned values:")
    if changes:
        for line in changes:
            print(f"  {line}")
    else:
        print("  (no effective changes)")

    if args.dry_run:
        print(f"[apply] Dry run; {eval_path} not written")
        return

    eval_path.write_text(text, encoding="utf-8")
    print(f"[apply] Updated {eval_path}")


if __name__ == "__main__":
    main()
