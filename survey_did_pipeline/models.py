"""Survey-weighted DiD / DDD models: OLS, GLM and two-part stages."""

from __future__ import annotations

import concurrent.futures
import logging
import re
import threading
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError, PerfectSeparationWarning

from .derived import DerivedData
from .design import BoundDesign, t_inference
from .errors import ConfigurationError, EstimationError

STAGES = ("ols", "glm", "two_part_binary", "two_part_positive")

FAMILIES = {
    "gaussian": sm.families.Gaussian,
    "gamma": sm.families.Gamma,
    "poisson": sm.families.Poisson,
    "binomial": sm.families.Binomial,
    "inverse_gaussian": sm.families.InverseGaussian,
}

LINKS = {
    "identity": sm.families.links.Identity,
    "log": sm.families.links.Log,
    "logit": sm.families.links.Logit,
    "probit": sm.families.links.Probit,
    "cloglog": sm.families.links.CLogLog,
    "inverse_power": sm.families.links.InversePower,
}

_QUOTED = re.compile(r"(['\"]).*?\1")
_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_FORMULA_WORDS = {"C", "I", "Treatment", "Sum", "Poly", "np", "log", "log1p", "exp", "sqrt", "reference", "center", "standardize"}
_CALL_OR_KEYWORD = re.compile(r"\s*(?:[(.]|=(?!=))")

# warnings.catch_warnings mutates process-wide filter state.
_FIT_LOCK = threading.Lock()

COEF_COLUMNS = [
    "outcome",
    "subgroup",
    "stage",
    "term",
    "coef",
    "std_error",
    "t_stat",
    "p_value",
    "ci_low",
    "ci_high",
    "exp_coef",
    "exp_ci_low",
    "exp_ci_high",
]

STATUS_COLUMNS = [
    "outcome",
    "subgroup",
    "stage",
    "status",
    "error_type",
    "error",
    "n_obs",
    "weighted_n",
    "converged",
    "design_df",
    "family",
    "link",
]


@dataclass
class ModelSpec:
    outcome: str
    treatment: str | None = None
    period: str | None = None
    did_term: str | None = None
    controls: list[str] = field(default_factory=list)
    subgroup: str | None = None
    subgroup_terms: list[str] = field(default_factory=list)
    family: str = "gamma"
    link: str = "log"
    binary_link: str = "probit"
    exponentiate: bool = False
    maxiter: int = 100
    min_positive_rows: int = 10

    @property
    def terms(self) -> list[str]:
        head = [t for t in (self.treatment, self.period, self.did_term) if t]
        return [*head, *self.subgroup_terms, *self.controls]

    def formula(self, response: str) -> str:
        return f"{response} ~ " + (" + ".join(self.terms) if self.terms else "1")


@dataclass
class ModelResult:
    outcome: str
    subgroup: str | None
    stage: str
    status: str
    error_type: str = ""
    error: str = ""
    n_obs: int = 0
    weighted_n: float = np.nan
    converged: bool | None = None
    design_df: int | None = None
    family: str = ""
    link: str = ""
    diagnostics: dict[str, object] = field(default_factory=dict)
    coefficients: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=COEF_COLUMNS))

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def status_record(self) -> dict[str, object]:
        return {col: getattr(self, col) for col in STATUS_COLUMNS}


@dataclass
class ModelRun:
    results: list[ModelResult]

    def coefficients_frame(self) -> pd.DataFrame:
        frames = [r.coefficients for r in self.results if r.ok and not r.coefficients.empty]
        if not frames:
            return pd.DataFrame(columns=COEF_COLUMNS)
        return pd.concat(frames, ignore_index=True, sort=False)

    def status_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.status_record() for r in self.results], columns=STATUS_COLUMNS)

    def failures(self) -> list[ModelResult]:
        return [r for r in self.results if not r.ok]


def term_fields(term: str) -> list[str]:
    """Cohort columns referenced by a formula term such as ``C(region_code)``."""
    stripped = _QUOTED.sub("", term)
    fields = []
    for match in _NAME.finditer(stripped):
        start, end = match.span()
        if start > 0 and stripped[start - 1] == ".":
            continue
        if _CALL_OR_KEYWORD.match(stripped, end):
            continue
        if match.group() not in _FORMULA_WORDS:
            fields.append(match.group())
    return fields


def validate_spec(bound: BoundDesign, spec: ModelSpec) -> None:
    if spec.family not in FAMILIES:
        raise ConfigurationError(f"{spec.outcome}: unknown GLM family '{spec.family}'.")
    for link in (spec.link, spec.binary_link):
        if link not in LINKS:
            raise ConfigurationError(f"{spec.outcome}: unknown link function '{link}'.")
    referenced = [spec.outcome]
    for term in spec.terms:
        fields = term_fields(term)
        if not fields:
            raise ConfigurationError(f"{spec.outcome}: term '{term}' references no cohort field.")
        referenced.extend(fields)
    missing = sorted({f for f in referenced if f not in bound.df.columns})
    if missing:
        raise ConfigurationError(f"{spec.outcome}: model references unknown fields: {', '.join(missing)}")


def _stage_family(spec: ModelSpec, stage: str):
    if stage == "ols":
        return sm.families.Gaussian(), "gaussian", "identity"
    if stage == "two_part_binary":
        return sm.families.Binomial(link=LINKS[spec.binary_link]()), "binomial", spec.binary_link
    return FAMILIES[spec.family](link=LINKS[spec.link]()), spec.family, spec.link


def _estimation_frame(bound: BoundDesign, spec: ModelSpec, stage: str) -> tuple[pd.DataFrame, np.ndarray]:
    columns = list(dict.fromkeys([spec.outcome, *(f for t in spec.terms for f in term_fields(t))]))
    data = bound.df[columns]
    outcome = pd.to_numeric(data[spec.outcome], errors="coerce")
    complete = data.notna().all(axis=1) & outcome.notna()
    if stage == "two_part_positive":
        complete &= outcome > 0

    frame = data.loc[complete].copy()
    y = outcome.loc[complete].astype(float)
    frame["_stage_y"] = (y > 0).astype(float) if stage == "two_part_binary" else y
    positions = bound.df.index.get_indexer(frame.index)
    return frame, positions


def _check_stage_data(frame: pd.DataFrame, spec: ModelSpec, stage: str, family_name: str, link: str) -> None:
    n = len(frame)
    if n == 0:
        raise EstimationError("no rows with complete outcome, terms and design fields")
    y = frame["_stage_y"]
    if stage == "two_part_binary" and y.nunique() < 2:
        raise EstimationError("binary outcome (outcome > 0) has no variation")
    if stage == "two_part_positive" and n < int(spec.min_positive_rows):
        raise EstimationError(
            f"insufficient positive-outcome rows for the conditional stage ({n} < {spec.min_positive_rows})"
        )
    if link == "log" and not (y > 0).any():
        raise EstimationError("outcome has no positive values; log-link mean is undefined")
    if family_name in ("gamma", "inverse_gaussian") and (y < 0).any():
        raise EstimationError(f"negative outcome values are outside the {family_name} support")


def _fit_statsmodels(frame: pd.DataFrame, formula: str, weights: np.ndarray, stage: str, family, maxiter: int):
    """Build and fit the weighted model; solver warnings are promoted to errors."""
    if stage == "ols":
        model = smf.wls(formula=formula, data=frame, weights=weights)
    else:
        model = smf.glm(formula=formula, data=frame, family=family, var_weights=weights)

    exog = np.asarray(model.exog, dtype=float)
    if exog.shape[0] <= exog.shape[1]:
        raise EstimationError(f"{exog.shape[0]} rows for {exog.shape[1]} parameters")
    rank = int(np.linalg.matrix_rank(exog))
    if rank < exog.shape[1]:
        raise EstimationError(f"rank-deficient design matrix (rank {rank} < {exog.shape[1]} columns)")

    with _FIT_LOCK, warnings.catch_warnings():
        warnings.filterwarnings("error", category=ConvergenceWarning)
        warnings.filterwarnings("error", category=PerfectSeparationWarning)
        if stage == "ols":
            fit = model.fit()
        else:
            fit = model.fit(maxiter=int(maxiter))
    return model, fit


def _design_covariance(
    bound: BoundDesign,
    model,
    fit,
    family,
    weights: np.ndarray,
    positions: np.ndarray,
) -> np.ndarray:
    """Linearized sandwich covariance from per-row estimating-equation scores."""
    exog = np.asarray(model.exog, dtype=float)
    endog = np.asarray(model.endog, dtype=float)
    mu = np.asarray(fit.fittedvalues, dtype=float)
    deriv = np.asarray(family.link.deriv(mu), dtype=float)
    variance = np.asarray(family.variance(mu), dtype=float)

    scores = exog * (weights * (endog - mu) / (variance * deriv))[:, None]
    information = exog.T @ (exog * (weights / (variance * deriv**2))[:, None])
    try:
        bread = np.linalg.inv(information)
    except np.linalg.LinAlgError as exc:
        raise EstimationError(f"singular information matrix ({exc})") from exc

    full_scores = np.zeros((len(bound), exog.shape[1]))
    full_scores[positions] = scores
    meat = bound.linearized_variance(full_scores)
    return bread @ meat @ bread


def _coefficient_table(
    spec: ModelSpec,
    stage: str,
    names: list[str],
    params: np.ndarray,
    cov: np.ndarray,
    design_df: int,
    exponentiate: bool,
) -> pd.DataFrame:
    se = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    inference = t_inference(params, se, design_df)
    table = pd.DataFrame(
        {
            "outcome": spec.outcome,
            "subgroup": spec.subgroup,
            "stage": stage,
            "term": names,
            "coef": params,
            "std_error": se,
            "t_stat": inference["t_stat"],
            "p_value": inference["p_value"],
            "ci_low": inference["ci_low"],
            "ci_high": inference["ci_high"],
        }
    )
    if exponentiate:
        table["exp_coef"] = np.exp(params)
        table["exp_ci_low"] = np.exp(inference["ci_low"])
        table["exp_ci_high"] = np.exp(inference["ci_high"])
    else:
        table["exp_coef"] = np.nan
        table["exp_ci_low"] = np.nan
        table["exp_ci_high"] = np.nan
    return table[COEF_COLUMNS]


def fit_survey_model(bound: BoundDesign, spec: ModelSpec, stage: str) -> ModelResult:
    """Fit one model stage; raises EstimationError when the stage cannot be estimated."""
    if stage not in STAGES:
        raise ConfigurationError(f"Unknown model stage '{stage}'; expected one of {STAGES}.")
    family, family_name, link = _stage_family(spec, stage)
    frame, positions = _estimation_frame(bound, spec, stage)
    _check_stage_data(frame, spec, stage, family_name, link)

    weights = bound.weights[positions]
    formula = spec.formula("_stage_y")
    try:
        model, fit = _fit_statsmodels(frame, formula, weights, stage, family, spec.maxiter)
    except (ConvergenceWarning, PerfectSeparationWarning, PerfectSeparationError) as exc:
        raise EstimationError(f"solver did not converge ({exc})") from exc
    except (np.linalg.LinAlgError, ValueError, FloatingPointError, OverflowError) as exc:
        raise EstimationError(f"solver failed ({exc})") from exc

    converged = bool(getattr(fit, "converged", True))
    if not converged:
        raise EstimationError(f"IRLS did not converge within {spec.maxiter} iterations")
    params = np.asarray(fit.params, dtype=float)
    if not np.all(np.isfinite(params)):
        raise EstimationError("non-finite coefficient estimates")

    try:
        cov = _design_covariance(bound, model, fit, family, weights, positions)
    except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
        raise EstimationError(f"design-based variance failed ({exc})") from exc
    if not np.all(np.isfinite(np.diag(cov))):
        raise EstimationError("degenerate design-based variance")

    exponentiate = bool(spec.exponentiate) and stage in ("glm", "two_part_positive")
    coefficients = _coefficient_table(
        spec, stage, list(model.exog_names), params, cov, bound.design_df, exponentiate
    )

    diagnostics: dict[str, object] = {"n_params": int(len(params))}
    if stage == "ols":
        diagnostics["r_squared"] = float(fit.rsquared)
    else:
        diagnostics["deviance"] = float(fit.deviance)
        diagnostics["iterations"] = int(fit.fit_history.get("iteration", 0))

    return ModelResult(
        outcome=spec.outcome,
        subgroup=spec.subgroup,
        stage=stage,
        status="ok",
        n_obs=int(len(frame)),
        weighted_n=float(weights.sum()),
        converged=converged,
        design_df=bound.design_df,
        family=family_name,
        link=link,
        diagnostics=diagnostics,
        coefficients=coefficients,
    )


def _run_request(bound: BoundDesign, spec: ModelSpec, stage: str) -> ModelResult:
    label = f"{spec.outcome}/{spec.subgroup or 'all'}/{stage}"
    try:
        result = fit_survey_model(bound, spec, stage)
    except EstimationError as exc:
        logging.warning("%s: estimation failed: %s", label, exc)
        _, family_name, link = _stage_family(spec, stage)
        return ModelResult(
            outcome=spec.outcome,
            subgroup=spec.subgroup,
            stage=stage,
            status="failed",
            error_type=type(exc).__name__,
            error=str(exc),
            converged=False,
            design_df=bound.design_df,
            family=family_name,
            link=link,
        )
    logging.info("%s: n=%s weighted_n=%.1f", label, result.n_obs, result.weighted_n)
    return result


def run_model_requests(
    bound: BoundDesign,
    specs: list[ModelSpec],
    stages: tuple[str, ...] = STAGES,
    max_workers: int = 1,
) -> ModelRun:
    """Fit every (spec, stage) request; one result per request, in request order."""
    for spec in specs:
        validate_spec(bound, spec)
    requests = [(spec, stage) for spec in specs for stage in stages]

    if max_workers <= 1 or len(requests) <= 1:
        return ModelRun(results=[_run_request(bound, spec, stage) for spec, stage in requests])

    results: list[ModelResult | None] = [None] * len(requests)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_idx = {
            executor.submit(_run_request, bound, spec, stage): idx for idx, (spec, stage) in enumerate(requests)
        }
        for future in concurrent.futures.as_completed(future_to_idx):
            results[future_to_idx[future]] = future.result()
    return ModelRun(results=[r for r in results if r is not None])


def _spec_options(outcome: str, config: dict) -> dict[str, object]:
    family_cfg = config.get("outcome_families", {}).get(outcome, {})
    return {
        "family": family_cfg.get("family", config.get("glm_family", "gamma")),
        "link": family_cfg.get("link", config.get("glm_link", "log")),
        "binary_link": config.get("binary_link", "probit"),
        "exponentiate": bool(config.get("exponentiate_glm", False)),
        "maxiter": int(config.get("glm_maxiter", 100)),
        "min_positive_rows": int(config.get("min_positive_rows", 10)),
    }


def build_did_specs(derived: DerivedData, outcomes: list[str], controls: list[str], config: dict) -> list[ModelSpec]:
    return [
        ModelSpec(
            outcome=outcome,
            treatment=derived.treatment,
            period=derived.period,
            did_term=derived.did_term,
            controls=list(controls),
            **_spec_options(outcome, config),
        )
        for outcome in outcomes
    ]


def build_ddd_specs(
    derived: DerivedData,
    outcomes: list[str],
    subgroups: list[str],
    controls: list[str],
    config: dict,
) -> list[ModelSpec]:
    include_main = bool(config.get("include_subgroup_main_effect", True))
    specs: list[ModelSpec] = []
    for subgroup in subgroups:
        if subgroup not in derived.subgroup_terms:
            raise ConfigurationError(f"Subgroup '{subgroup}' has no derived interaction terms.")
        sub_terms = ([subgroup] if include_main else []) + derived.subgroup_terms[subgroup]
        for outcome in outcomes:
            specs.append(
                ModelSpec(
                    outcome=outcome,
                    treatment=derived.treatment,
                    period=derived.period,
                    did_term=derived.did_term,
                    controls=list(controls),
                    subgroup=subgroup,
                    subgroup_terms=sub_terms,
                    **_spec_options(outcome, config),
                )
            )
    return specs


def run_did_models(
    bound: BoundDesign,
    derived: DerivedData,
    outcomes: list[str],
    controls: list[str],
    config: dict,
) -> ModelRun:
    specs = build_did_specs(derived, outcomes, controls, config)
    return run_model_requests(bound, specs, max_workers=int(config.get("max_workers", 1)))


def run_ddd_models(
    bound: BoundDesign,
    derived: DerivedData,
    outcomes: list[str],
    subgroups: list[str],
    controls: list[str],
    config: dict,
) -> ModelRun:
    specs = build_ddd_specs(derived, outcomes, subgroups, controls, config)
    return run_model_requests(bound, specs, max_workers=int(config.get("max_workers", 1)))
