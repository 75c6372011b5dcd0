"""Main entrypoint for the survey DiD pipeline (ETL stage, then analysis stage)."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path

import pandas as pd

from .cohort import CohortData, build_cohort
from .config import ASSUMPTIONS, CONFIG, ensure_output_dir, validate_config
from .derived import DerivedData, build_derived_variables, encoding_table
from .descriptive import grouped_means_table, weighted_crosstab
from .design import SurveyDesign
from .errors import ConfigurationError
from .io_utils import read_cohort, write_cohort
from .models import ModelRun, build_ddd_specs, build_did_specs, run_model_requests


@dataclass
class EtlResult:
    cohort_path: Path
    cohort_data: CohortData
    generated_files: list[str]


@dataclass
class AnalysisBundle:
    derived: DerivedData
    weighted_means: pd.DataFrame
    crosstab: pd.DataFrame
    models: ModelRun
    generated_files: list[str]
    notes: list[str] = field(default_factory=list)


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    etl: EtlResult
    analysis: AnalysisBundle
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _save_table(*, file_name: str, df: pd.DataFrame, output_dir: Path) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=False, lineterminator="\n")
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    return out_path


def run_etl(config: dict | None = None) -> EtlResult:
    """Harmonize every configured year and write the cohort hand-off file."""
    cfg = CONFIG if config is None else config
    validate_config(cfg)
    if not str(cfg.get("data_dir", "")).strip():
        raise ConfigurationError("Set SURVEY_DATA_DIR (or config['data_dir']) to the source-table directory.")

    data_dir = Path(cfg["data_dir"])
    output_dir = ensure_output_dir(cfg)
    logging.info("ETL stage: data_dir=%s output_dir=%s", data_dir, output_dir)

    cohort_data = build_cohort(data_dir, cfg)
    artifact = write_cohort(cohort_data.cohort, output_dir / cfg["cohort_file"])
    status_path = _save_table(file_name="year_status.csv", df=cohort_data.cohort_flow, output_dir=output_dir)

    return EtlResult(
        cohort_path=artifact.path,
        cohort_data=cohort_data,
        generated_files=[artifact.path.name, status_path.name],
    )


def run_analysis(config: dict | None = None, cohort_path: Path | None = None) -> AnalysisBundle:
    """Derive analysis variables from the cohort file, then estimate descriptives and models."""
    cfg = CONFIG if config is None else config
    validate_config(cfg)
    output_dir = ensure_output_dir(cfg)
    path = Path(cohort_path) if cohort_path is not None else output_dir / cfg["cohort_file"]

    cohort = read_cohort(path)
    derived = build_derived_variables(cohort, cfg)
    bound = SurveyDesign.from_config(cfg).bind(derived.df)
    logging.info(
        "Survey design bound: %s rows, %s strata, %s PSUs, design df=%s",
        len(bound),
        bound.n_strata,
        bound.n_psu,
        bound.design_df,
    )

    means = grouped_means_table(bound, list(cfg.get("mean_fields", [])), by=[derived.treatment, derived.period])
    xtab_cfg = cfg["crosstab"]
    crosstab = weighted_crosstab(bound, xtab_cfg["row"], xtab_cfg["col"], where=xtab_cfg.get("where"))

    outcomes = list(cfg["outcomes"])
    controls = list(cfg["controls"])
    specs = build_did_specs(derived, outcomes, controls, cfg)
    if cfg.get("run_subgroup_models", True) and derived.subgroup_terms:
        specs += build_ddd_specs(derived, outcomes, list(derived.subgroup_terms), controls, cfg)
    # Every spec is validated before the first fit.
    models = run_model_requests(bound, specs, max_workers=int(cfg.get("max_workers", 1)))

    notes: list[str] = []
    for failed in models.failures():
        notes.append(
            f"Model failed: {failed.outcome}/{failed.subgroup or 'all'}/{failed.stage}: {failed.error_type}: {failed.error}"
        )

    output_map: list[tuple[str, pd.DataFrame]] = [
        ("derived_encodings.csv", encoding_table(derived.encodings)),
        ("weighted_means.csv", means),
        ("crosstab_pre_period.csv", crosstab),
        ("model_coefficients.csv", models.coefficients_frame()),
        ("model_status.csv", models.status_frame()),
    ]
    generated_files = [_save_table(file_name=name, df=df, output_dir=output_dir).name for name, df in output_map]

    n_ok = sum(r.ok for r in models.results)
    logging.info("Model requests: %s ok, %s failed", n_ok, len(models.results) - n_ok)
    return AnalysisBundle(
        derived=derived,
        weighted_means=means,
        crosstab=crosstab,
        models=models,
        generated_files=generated_files,
        notes=notes,
    )


def main(config: dict | None = None) -> PipelineRunResult:
    _configure_logging()
    cfg = CONFIG if config is None else config
    validate_config(cfg)

    logging.info("Starting survey DiD pipeline. years=%s-%s", cfg["year_start"], cfg["year_end"])
    for assumption in ASSUMPTIONS:
        logging.info("Assumption: %s", assumption)

    etl = run_etl(cfg)
    analysis = run_analysis(cfg, etl.cohort_path)

    notes = [f"Year {year} excluded: {type(exc).__name__}: {exc}" for year, exc in sorted(etl.cohort_data.failures.items())]
    notes.extend(analysis.notes)
    for note in notes:
        logging.warning(note)

    generated_files = sorted(etl.generated_files + analysis.generated_files)
    logging.info("Pipeline complete. Generated files:")
    for fp in generated_files:
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=ensure_output_dir(cfg),
        generated_files=generated_files,
        etl=etl,
        analysis=analysis,
        notes=notes,
    )


if __name__ == "__main__":
    main()
