"""Synthetic per-year survey source tables and shared fixtures."""

from __future__ import annotations

import copy
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from survey_did_pipeline.config import CONFIG, YEAR_SOURCES
from survey_did_pipeline.design import SurveyDesign

EXPENDITURES = ["TOTEXP", "TOTSLF", "OBVEXP", "OPTEXP", "ERTEXP", "IPTEXP", "RXEXP"]


def person_id(year: int, i: int) -> int:
    return year * 10000 + i


def make_year_tables(year: int, n_persons: int = 60, seed: int = 42) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Condition-coding table and consolidated person table for one survey year.

    Persons with ``i % 3 != 0`` carry a depression code (two rows each); the rest
    carry a hypertension code. Person 5 has a reserved -1 age.
    """
    rng = np.random.default_rng(seed + year)
    yy = f"{year % 100:02d}"
    modern = year >= 2016

    coding_rows = []
    for i in range(n_persons):
        pid = person_id(year, i)
        depressed = i % 3 != 0
        if modern:
            codes = ["F32", "F33"] if depressed else ["I10"]
            coding_rows.extend({"DUPERSID": pid, "ICD10CDX": c} for c in codes)
        else:
            codes = ["311", "296"] if depressed else ["401"]
            coding_rows.extend({"DUPERSID": pid, "ICD9CODX": c} for c in codes)
    coding_df = pd.DataFrame(coding_rows)

    race_field = "RACETHNX" if year < 2012 else "RACETHX"
    race_levels = [1, 2, 3, 4] if year < 2012 else [1, 2, 3, 4, 5]
    diab_field = "DIABDX" if year < 2018 else "DIABDX_M18"

    person = {
        "DUPERSID": [person_id(year, i) for i in range(n_persons)],
        f"AGE{yy}X": rng.integers(18, 86, size=n_persons),
        "SEX": rng.integers(1, 3, size=n_persons),
        race_field: [race_levels[i % len(race_levels)] for i in range(n_persons)],
        f"REGION{yy}": rng.integers(1, 5, size=n_persons),
        f"INSCOV{yy}": rng.integers(1, 4, size=n_persons),
        f"POVCAT{yy}": rng.integers(1, 6, size=n_persons),
        diab_field: rng.choice([1, 2, -1], size=n_persons, p=[0.8, 0.15, 0.05]),
        f"PERWT{yy}F": np.round(rng.uniform(500, 5000, size=n_persons), 2),
        "VARSTR": [i % 6 + 1 for i in range(n_persons)],
        "VARPSU": [(i // 6) % 2 + 1 for i in range(n_persons)],
    }
    person[f"AGE{yy}X"][5] = -1
    for name in EXPENDITURES:
        spend = np.round(rng.gamma(2.0, 1500.0, size=n_persons), 0)
        spend[rng.random(n_persons) < 0.3] = 0.0
        person[f"{name}{yy}"] = spend
    person_df = pd.DataFrame(person)
    return coding_df, person_df


def write_source_tables(data_dir: Path, years: list[int], n_persons: int = 60) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    for year in years:
        coding_df, person_df = make_year_tables(year, n_persons=n_persons)
        coding_df.to_csv(data_dir / f"{YEAR_SOURCES[year]['conditions']}.csv", index=False)
        person_df.to_csv(data_dir / f"{YEAR_SOURCES[year]['consolidated']}.csv", index=False)


def make_analysis_frame(n: int = 400, seed: int = 42) -> pd.DataFrame:
    """Cohort-like table with derived DiD terms already present."""
    rng = np.random.default_rng(seed)
    treated = rng.integers(0, 2, size=n).astype(float)
    post = rng.integers(0, 2, size=n).astype(float)
    age = rng.integers(18, 86, size=n).astype(float)
    sex_code = rng.integers(1, 3, size=n).astype(float)
    mean = np.exp(7.0 + 0.2 * treated - 0.1 * post + 0.15 * treated * post + 0.01 * (age - 50))
    spend = rng.gamma(2.0, mean / 2.0)
    spend[rng.random(n) < 0.25] = 0.0
    return pd.DataFrame(
        {
            "treated": treated,
            "post": post,
            "dd": treated * post,
            "age": age,
            "sex_code": sex_code,
            "spend": spend,
            "perwt": rng.uniform(500, 5000, size=n),
            "varstr": np.arange(n) % 8 + 1,
            "varpsu": (np.arange(n) // 8) % 2 + 1,
        }
    )


@pytest.fixture
def pipeline_config(tmp_path):
    cfg = copy.deepcopy(CONFIG)
    cfg.update(
        {
            "data_dir": str(tmp_path / "data"),
            "output_dir": str(tmp_path / "out"),
            "max_workers": 1,
            "year_start": 2011,
            "year_end": 2018,
            "outcomes": ["totexp", "rxexp"],
            "controls": ["age", "C(sex_code)"],
            "min_positive_rows": 5,
        }
    )
    return cfg


@pytest.fixture
def source_dir(pipeline_config):
    data_dir = Path(pipeline_config["data_dir"])
    write_source_tables(data_dir, list(range(pipeline_config["year_start"], pipeline_config["year_end"] + 1)))
    return data_dir


@pytest.fixture
def analysis_frame():
    return make_analysis_frame()


@pytest.fixture
def bound_analysis(analysis_frame):
    return SurveyDesign(weight="perwt", psu="varpsu", strata="varstr").bind(analysis_frame)
