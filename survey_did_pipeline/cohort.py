"""Cohort assembly: stack harmonized survey years into one analysis table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import pandas as pd

from .errors import DataIntegrityError, SchemaDriftError
from .harmonize import YearOutcome, harmonize_years

FLOW_COLUMNS = [
    "year",
    "scheme",
    "coding_rows",
    "condition_persons",
    "person_rows",
    "retained_rows",
    "status",
    "error",
]


@dataclass
class CohortData:
    cohort: pd.DataFrame
    cohort_flow: pd.DataFrame
    failures: dict[int, DataIntegrityError]


def check_schema(table: pd.DataFrame, canonical_fields: list[str], *, year: int | None = None) -> None:
    columns = set(table.columns)
    expected = set(canonical_fields)
    if columns == expected:
        return
    extra = sorted(columns - expected)
    missing = sorted(expected - columns)
    raise SchemaDriftError(
        f"Schema drift{f' in {year}' if year is not None else ''}: "
        f"unexpected columns {extra or '[]'}, missing columns {missing or '[]'}.",
        year=year,
    )


def assemble_cohort(tables: Iterable[pd.DataFrame], canonical_fields: list[str]) -> pd.DataFrame:
    """Row-stack per-year tables whose schema is exactly ``canonical_fields``."""
    frames: list[pd.DataFrame] = []
    for table in tables:
        year = int(table["year"].iloc[0]) if "year" in table.columns and len(table) else None
        check_schema(table, canonical_fields, year=year)
        frames.append(table[canonical_fields])

    if not frames:
        return pd.DataFrame(columns=canonical_fields)
    non_empty = [f for f in frames if not f.empty]
    if not non_empty:
        return frames[0].iloc[0:0].reset_index(drop=True)
    return pd.concat(non_empty, ignore_index=True, sort=False)


def cohort_flow_table(outcomes: list[YearOutcome]) -> pd.DataFrame:
    rows = [outcome.flow for outcome in outcomes]
    return pd.DataFrame(rows, columns=FLOW_COLUMNS)


def build_cohort(data_dir: Path, config: dict) -> CohortData:
    canonical = [str(c) for c in config["canonical_fields"]]
    outcomes = harmonize_years(data_dir, config)

    failures = {o.year: o.error for o in outcomes if o.error is not None}
    succeeded = [o.result for o in outcomes if o.result is not None]
    if not succeeded:
        raise DataIntegrityError("No survey year could be harmonized; cohort is empty.")

    assembled: list[pd.DataFrame] = []
    for result in succeeded:
        try:
            check_schema(result.table, canonical, year=result.year)
        except SchemaDriftError as exc:
            logging.warning("%s: year excluded from cohort: %s", result.year, exc)
            failures[result.year] = exc
            result.flow.update({"status": "failed", "error": f"{type(exc).__name__}: {exc}", "retained_rows": 0})
            continue
        assembled.append(result.table)

    cohort = assemble_cohort(assembled, canonical)
    flow = cohort_flow_table(outcomes)

    if failures:
        logging.warning(
            "Cohort assembled without %s year(s): %s",
            len(failures),
            ", ".join(str(y) for y in sorted(failures)),
        )
    logging.info("Assembled cohort: %s rows across %s years.", len(cohort), len(assembled))
    return CohortData(cohort=cohort, cohort_flow=flow, failures=failures)
