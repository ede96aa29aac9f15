#!/usr/bin/env python3
"""Texel tuning of evaluation constants by integer coordinate descent.

Input rows come from build_texel_dataset.py:
  {"features": {name: value, ...}, "result": white_score}

A position's score is the dot product of the parameter weights and its
features. The loss is the summed negative log-likelihood of the results
under sigmoid(score / cp_scale). Only parameters that appear as dataset
features and have a `const NAME: i32 = N;` in the eval source are tuned;
piece values are structural and never touched.
"""

from __future__ import annotations

import argparse
import json
import random
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import numpy as np

from .. import config
from .build_texel_dataset import DatasetMissing, load_feature_rows

# Match arms of get_piece_value(); shared arms give both names one value.
PIECE_VALUE_PATTERNS = {
    "pawn_value": r"PieceType::Pawn\s*=>\s*(\d+)",
    "knight_value": r"PieceType::Knight\s*=>\s*(\d+)",
    "bishop_value": r"PieceType::Bishop\s*=>\s*(\d+)",
    "rook_value": r"PieceType::Rook\s*=>\s*(\d+)",
    "queen_value": r"PieceType::Queen\s*\|\s*PieceType::RoyalQueen\s*=>\s*(\d+)",
    "royal_queen_value": r"PieceType::Queen\s*\|\s*PieceType::RoyalQueen\s*=>\s*(\d+)",
    "king_value": r"PieceType::King\s*\|\s*PieceType::Guard\s*=>\s*(\d+)",
    "guard_value": r"PieceType::King\s*\|\s*PieceType::Guard\s*=>\s*(\d+)",
    "camel_value": r"PieceType::Camel\s*=>\s*(\d+)",
    "giraffe_value": r"PieceType::Giraffe\s*=>\s*(\d+)",
    "zebra_value": r"PieceType::Zebra\s*=>\s*(\d+)",
    "knightrider_value": r"PieceType::Knightrider\s*=>\s*(\d+)",
    "amazon_value": r"PieceType::Amazon\s*=>\s*(\d+)",
    "hawk_value": r"PieceType::Hawk\s*=>\s*(\d+)",
    "chancellor_value": r"PieceType::Chancellor\s*=>\s*(\d+)",
    "archbishop_value": r"PieceType::Archbishop\s*=>\s*(\d+)",
    "centaur_value": r"PieceType::Centaur\s*=>\s*(\d+)",
    "royal_centaur_value": r"PieceType::RoyalCentaur\s*=>\s*(\d+)",
    "rose_value": r"PieceType::Rose\s*=>\s*(\d+)",
    "huygen_value": r"PieceType::Huygen\s*=>\s*(\d+)",
}

PARAM_DENYLIST = frozenset(PIECE_VALUE_PATTERNS)

# name -> {"step": int, "min": int, "max": int}; anything missing uses the heuristic.
PARAM_RANGE_OVERRIDES: dict[str, dict[str, int]] = {}


@dataclass(frozen=True)
class TunableParam:
    name: str
    step: int
    min: int
    max: int


def strip_comments(text: str) -> str:
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.S)
    text = re.sub(r"//.*", "", text)
    return text


def to_const_name(name: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", name.upper())


def extract_const_int(text: str, const_name: str) -> int:
    m = re.search(rf"const\s+{re.escape(const_name)}\s*:\s*i32\s*=\s*(-?\d+)\s*;", text)
    if not m:
        raise ValueError(f"missing const: {const_name}")
    return int(m.group(1))


def load_piece_values(text: str) -> dict[str, int]:
    text = strip_comments(text)
    values: dict[str, int] = {}
    for name, pattern in PIECE_VALUE_PATTERNS.items():
        m = re.search(pattern, text)
        if m:
            values[name] = int(m.group(1))
    return values


def load_eval_defaults(path: Path) -> tuple[dict[str, int], str]:
    """Piece values plus the comment-stripped source for const lookups."""
    if not path.exists():
        raise FileNotFoundError(f"eval source not found: {path}")
    raw = path.read_text(encoding="utf-8")
    return load_piece_values(raw), strip_comments(raw)


def heuristic_range(default: int) -> tuple[int, int, int]:
    magnitude = abs(default) or 1
    step = max(1, int(magnitude / 4 + 0.5))
    span = magnitude * 4
    if default >= 0:
        return step, 0, default + span
    return step, default - span, default + span


def build_tunable_params(
    params: dict[str, float],
    feature_names,
    eval_text: str | None,
    overrides: Mapping[str, Mapping[str, int]] | None = None,
) -> list[TunableParam]:
    """Parameters to tune, sorted by name. Seeds missing entries of ``params`` in place.

    Without eval source text the current value in ``params`` doubles as the
    default; features with neither are skipped.
    """
    overrides = PARAM_RANGE_OVERRIDES if overrides is None else overrides
    specs: list[TunableParam] = []
    for name in sorted(set(feature_names)):
        if name in PARAM_DENYLIST:
            continue
        default: int | None = None
        if eval_text is not None:
            try:
                default = extract_const_int(eval_text, to_const_name(name))
            except ValueError:
                default = None
        if default is None:
            if name not in params:
                continue
            default = int(params[name])
        params.setdefault(name, default)

        step, lo, hi = heuristic_range(default)
        override = overrides.get(name, {})
        specs.append(TunableParam(
            name=name,
            step=int(override.get("step", step)),
            min=int(override.get("min", lo)),
            max=int(override.get("max", hi)),
        ))
    return specs


@dataclass
class FeatureMatrix:
    names: list[str]
    x: np.ndarray
    labels: np.ndarray

    @classmethod
    def from_rows(cls, rows: list[dict[str, Any]], names: list[str]) -> FeatureMatrix:
        index = {name: j for j, name in enumerate(names)}
        x = np.zeros((len(rows), len(names)), dtype=np.float64)
        labels = np.zeros(len(rows), dtype=np.float64)
        for i, row in enumerate(rows):
            for name, value in row["features"].items():
                j = index.get(name)
                if j is not None:
                    x[i, j] = float(value)
            labels[i] = float(row["result"])
        return cls(list(names), x, labels)

    def __len__(self) -> int:
        return int(self.labels.shape[0])


def sigmoid(x: np.ndarray) -> np.ndarray:
    x = np.clip(x, -60.0, 60.0)
    return 1.0 / (1.0 + np.exp(-x))


def nll_from_scores(scores: np.ndarray, labels: np.ndarray, cp_scale: float) -> float:
    eps = config.TEXEL_PROB_CLAMP
    p = np.clip(sigmoid(scores / cp_scale), eps, 1.0 - eps)
    return float(-np.sum(labels * np.log(p) + (1.0 - labels) * np.log(1.0 - p)))


def evaluate_loss(weights: np.ndarray, x: np.ndarray, labels: np.ndarray,
                  cp_scale: float = config.TEXEL_CP_SCALE) -> float:
    return nll_from_scores(x @ weights, labels, cp_scale)


@dataclass
class TexelResult:
    params: dict[str, float]
    neg_log_likelihood: float
    samples: int
    timestamp: str
    rounds: int = 0
    changed: dict[str, tuple[float, float]] = field(default_factory=dict)

    def to_artifact(self) -> dict[str, Any]:
        return {
            "params": self.params,
            "negLogLikelihood": self.neg_log_likelihood,
            "samples": self.samples,
            "timestamp": self.timestamp,
        }

    def write_artifact(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_artifact(), indent=2) + "\n", encoding="utf-8")


def _as_number(value: float) -> float:
    v = float(value)
    return int(v) if v.is_integer() else v


class TexelTuner:
    def __init__(
        self,
        data: FeatureMatrix,
        specs: list[TunableParam],
        params: dict[str, float],
        cp_scale: float = config.TEXEL_CP_SCALE,
        rounds: int = config.TEXEL_ROUNDS,
    ):
        if not specs:
            raise ValueError("no tunable parameters")
        if data.names != [s.name for s in specs]:
            raise ValueError("feature matrix columns must match parameter order")
        self.data = data
        self.specs = specs
        self.base_params = dict(params)
        self.cp_scale = cp_scale
        self.rounds = rounds
        self.weights = np.array([float(params[s.name]) for s in specs], dtype=np.float64)
        self._scores = data.x @ self.weights

    def loss(self) -> float:
        return evaluate_loss(self.weights, self.data.x, self.data.labels, self.cp_scale)

    def _loss_at(self, j: int, value: float) -> float:
        scores = self._scores + (value - self.weights[j]) * self.data.x[:, j]
        return nll_from_scores(scores, self.data.labels, self.cp_scale)

    def tune_single_param(self, j: int, current_loss: float) -> tuple[bool, float]:
        """Line search on one parameter; returns (improved, best loss)."""
        spec = self.specs[j]
        best_value = self.weights[j]
        best_loss = current_loss
        step = spec.step
        min_step = max(1, int(spec.step * config.TEXEL_MIN_STEP_FRACTION))
        improved = False

        for _ in range(config.TEXEL_MAX_ITERATIONS):
            if step < min_step:
                break
            up = min(spec.max, best_value + step)
            down = max(spec.min, best_value - step)
            moved = False
            for candidate in (up, down):
                if candidate == best_value:
                    continue
                loss = self._loss_at(j, candidate)
                if loss + config.TEXEL_IMPROVEMENT_EPS < best_loss:
                    best_loss = loss
                    best_value = candidate
                    moved = True
            if moved:
                improved = True
            else:
                step //= 2

        if improved:
            self.weights[j] = best_value
            self._scores = self.data.x @ self.weights
        return improved, best_loss

    def run(self) -> TexelResult:
        n = len(self.data)
        loss = self.loss()
        print(f"[texel] baseline nll={loss:.6f} avg={loss / max(1, n):.6f} samples={n} params={len(self.specs)}",
              flush=True)

        rounds_run = 0
        for r in range(self.rounds):
            rounds_run += 1
            round_improved = False
            for j, spec in enumerate(self.specs):
                before = self.weights[j]
                improved, new_loss = self.tune_single_param(j, loss)
                if improved:
                    round_improved = True
                    loss = new_loss
                    print(f"[texel]   {spec.name}: {_as_number(before)} -> {_as_number(self.weights[j])} "
                          f"nll={loss:.6f}", flush=True)
            print(f"[texel] round={r + 1} nll={loss:.6f} avg={loss / max(1, n):.6f}", flush=True)
            if not round_improved:
                print("[texel] no improvement this round, stopping", flush=True)
                break

        final_loss = self.loss()
        params = dict(self.base_params)
        changed: dict[str, tuple[float, float]] = {}
        for spec, w in zip(self.specs, self.weights):
            value = _as_number(w)
            if float(params[spec.name]) != float(value):
                changed[spec.name] = (params[spec.name], value)
            params[spec.name] = value

        return TexelResult(
            params=params,
            neg_log_likelihood=final_loss,
            samples=n,
            timestamp=datetime.now(timezone.utc).isoformat(),
            rounds=rounds_run,
            changed=changed,
        )


def load_artifact_params(path: Path) -> dict[str, float]:
    """Parameter map from a tuner artifact or a bare {name: value} JSON object."""
    data = json.loads(path.read_text(encoding="utf-8"))
    params = data.get("params", data) if isinstance(data, dict) else None
    if not isinstance(params, dict):
        raise ValueError(f"{path}: expected an object of parameters")
    out: dict[str, float] = {}
    for name, value in params.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{path}: parameter {name!r} is not numeric")
        out[name] = value
    return out


def main() -> None:
    parser = argparse.ArgumentParser(description="Texel tune evaluation constants")
    parser.add_argument("--dataset", default=str(config.FEATURES_FILE), help="JSONL from build_texel_dataset.py")
    parser.add_argument("--eval-source", default=None, help="Evaluator source holding `const NAME: i32` values")
    parser.add_argument("--out", default=str(config.TUNED_PARAMS_FILE), help="Output artifact JSON path")
    parser.add_argument("--start-params", default=None, help="Previous artifact to start from")
    parser.add_argument("--rounds", type=int, default=config.TEXEL_ROUNDS)
    parser.add_argument("--cp-scale", type=float, default=config.TEXEL_CP_SCALE)
    parser.add_argument("--max-samples", type=int, default=None)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    try:
        rows, skipped = load_feature_rows(Path(args.dataset))
        print(f"[texel] loaded rows={len(rows)} skipped={skipped}", flush=True)
        if not rows:
            raise RuntimeError(f"no usable samples in {args.dataset}")

        random.Random(args.seed).shuffle(rows)
        if args.max_samples is not None and args.max_samples > 0:
            rows = rows[: args.max_samples]

        params: dict[str, float] = {}
        eval_text = None
        if args.eval_source:
            piece_values, eval_text = load_eval_defaults(Path(args.eval_source))
            params.update(piece_values)
        if args.start_params:
            params.update(load_artifact_params(Path(args.start_params)))

        feature_names = {name for row in rows for name in row["features"]}
        specs = build_tunable_params(params, feature_names, eval_text)
        if not specs:
            raise RuntimeError("no tunable parameters inferred from dataset features")

        data = FeatureMatrix.from_rows(rows, [s.name for s in specs])
        result = TexelTuner(data, specs, params, cp_scale=args.cp_scale, rounds=args.rounds).run()
    except (FileNotFoundError, ValueError, RuntimeError) as ex:
        print(f"[texel] Fatal: {ex}", flush=True)
        sys.exit(1)

    out = Path(args.out)
    result.write_artifact(out)
    print(f"[texel] final nll={result.neg_log_likelihood:.6f} changed={len(result.changed)} rounds={result.rounds}",
          flush=True)
    print(f"Wrote tuning result: {out}")


if __name__ == "__main__":
    main()
