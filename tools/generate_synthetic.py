#!/usr/bin/env python3
"""Generate a synthetic legacy export file for demos and import tests.

Usage:
    python tools/generate_synthetic.py --output data/SYN18D.13 --students 27 --assessments 6 --seed 42

Each block gets a title, an outOf line and one raw value per student,
preceded by the leading aggregate slot the legacy exporter writes. Raw values
follow the legacy encoding: 0 is no mark, -1 a counted zero, positive a score.
"""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, List

import numpy as np
import pandas as pd

TITLES = ["Quiz", "Test", "Lab", "Project", "Essay", "Presentation"]
OUT_OF_CHOICES = [10, 20, 25, 50, 100]


def _block_values(rng: np.random.Generator, n_students: int, out_of: int, ability: np.ndarray) -> List[float]:
    raw = np.clip(rng.normal(ability * out_of, 0.12 * out_of), 0.5, out_of).round(1)
    states = rng.random(n_students)
    raw = np.where(states < 0.05, 0.0, raw)
    raw = np.where((states >= 0.05) & (states < 0.08), -1.0, raw)
    return raw.tolist()


def generate_export_frame(n_students: int = 27, n_assessments: int = 6, seed: int = 42) -> pd.DataFrame:
    """One row per (block, student) with the raw legacy value."""
    if n_students < 1 or n_assessments < 1:
        raise ValueError("Need at least one student and one assessment")
    rng = np.random.default_rng(seed)
    ability = rng.beta(6, 2.5, size=n_students)

    rows = []
    for block_idx in range(n_assessments):
        title = f"{TITLES[block_idx % len(TITLES)]} {block_idx // len(TITLES) + 1}"
        out_of = int(rng.choice(OUT_OF_CHOICES))
        for student_idx, raw in enumerate(_block_values(rng, n_students, out_of, ability)):
            rows.append({"title": title, "out_of": out_of, "student": student_idx, "raw": raw})
    return pd.DataFrame(rows)


def render_export(frame: pd.DataFrame, n_students: int, folder: str = "SYNTH") -> str:
    lines = [
        '"[MarkBook]"',
        f'"This file belongs to Folder: {folder}"',
        '"[LastStudent]"',
        str(n_students),
        '"[Data]"',
    ]
    for title, block in frame.groupby("title", sort=False):
        scored = block.loc[block["raw"] > 0, "raw"]
        aggregate = round(float(scored.mean()), 1) if not scored.empty else 0.0
        lines.append(f'"{title}"')
        lines.append(f"{int(block['out_of'].iat[0])},0")
        lines.append(f"{aggregate:g}")
        lines.extend(f"{value:g}" for value in block.sort_values("student")["raw"])
    return "\n".join(lines) + "\n"


def generate_synthetic_export(output_path: Path, n_students: int = 27, n_assessments: int = 6, seed: int = 42) -> pd.DataFrame:
    frame = generate_export_frame(n_students, n_assessments, seed)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_export(frame, n_students), encoding="utf-8")
    return frame


def main(argv: Iterable[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Generate a synthetic legacy export file")
    parser.add_argument("--output", type=Path, default=Path("data/SYN18D.13"), help="Where to write the export file")
    parser.add_argument("--students", type=int, default=27, help="Number of synthetic students")
    parser.add_argument("--assessments", type=int, default=6, help="Number of score blocks")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args(list(argv) if argv is not None else None)

    generate_synthetic_export(args.output, n_students=args.students, n_assessments=args.assessments, seed=args.seed)
    print(f"Synthetic export written to {args.output}")


if __name__ == "__main__":
    main()
