"""Source-table loading and cohort hand-off helpers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

STEM_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
SOURCE_SUFFIXES = (".csv", ".dta", ".sas7bdat")


@dataclass
class SourceArtifact:
    name: str
    row_count: int
    path: Path | None = None


def validate_stem(stem: str) -> str:
    if not stem:
        raise ValueError("Source file stem is empty.")
    if not STEM_PATTERN.match(stem):
        raise ValueError(
            "Invalid source file stem. Allowed characters: letters, numbers, underscore, dot, hyphen."
        )
    return stem


def locate_source(data_dir: Path, stem: str) -> Path:
    validate_stem(stem)
    for suffix in SOURCE_SUFFIXES:
        for candidate in (data_dir / f"{stem}{suffix}", data_dir / f"{stem.upper()}{suffix}"):
            if candidate.exists():
                return candidate
    raise FileNotFoundError(f"No source table for '{stem}' in {data_dir} (looked for {', '.join(SOURCE_SUFFIXES)}).")


def read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path, low_memory=False)
    if suffix == ".dta":
        return pd.read_stata(path, convert_categoricals=False)
    if suffix == ".sas7bdat":
        return pd.read_sas(path, encoding="latin-1")
    raise ValueError(f"Unsupported source format: {path.suffix}")


def load_source_table(data_dir: Path, stem: str, *, job_name: str) -> pd.DataFrame:
    path = locate_source(Path(data_dir), stem)
    logging.info("Loading source table: %s (%s)", job_name, path.name)
    try:
        df = read_table(path)
    except (OSError, ValueError) as exc:
        logging.exception("Source table load failed: %s", job_name)
        raise RuntimeError(f"Source table load failed ({job_name}): {exc}") from exc
    logging.info("Finished loading: %s | rows=%s", job_name, len(df))
    return df


def write_cohort(df: pd.DataFrame, path: Path) -> SourceArtifact:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, lineterminator="\n")
    logging.info("Wrote cohort table: %s (%s rows)", path, len(df))
    return SourceArtifact(name=path.stem, row_count=int(len(df)), path=path)


def read_cohort(path: Path) -> pd.DataFrame:
    df = pd.read_csv(path, low_memory=False)
    logging.info("Read cohort table: %s (%s rows)", path, len(df))
    return df
