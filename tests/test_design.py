"""Tests for survey design binding and linearized variance."""

import numpy as np
import pandas as pd
import pytest

from survey_did_pipeline.config import CONFIG
from survey_did_pipeline.design import SurveyDesign, t_inference
from survey_did_pipeline.errors import ConfigurationError, DataIntegrityError, EstimationError


def _design(singleton="certainty"):
    return SurveyDesign(weight="w", psu="psu", strata="stratum", singleton=singleton)


@pytest.fixture
def singleton_frame():
    # Stratum 1 has two PSUs, stratum 2 a single PSU.
    return pd.DataFrame(
        {
            "w": [1.0] * 6,
            "stratum": [1, 1, 1, 1, 2, 2],
            "psu": [1, 1, 2, 2, 1, 1],
        }
    )


class TestBinding:
    def test_from_config(self):
        design = SurveyDesign.from_config(CONFIG)
        assert (design.weight, design.psu, design.strata) == ("perwt", "varpsu", "varstr")
        assert design.singleton == "certainty"

    def test_unknown_singleton_policy(self):
        with pytest.raises(ConfigurationError):
            _design("drop")

    def test_missing_design_column(self):
        with pytest.raises(ConfigurationError):
            _design().bind(pd.DataFrame({"w": [1.0], "psu": [1]}))

    def test_missing_design_value(self, singleton_frame):
        singleton_frame.loc[2, "psu"] = np.nan
        with pytest.raises(DataIntegrityError):
            _design().bind(singleton_frame)

    def test_negative_weight(self, singleton_frame):
        singleton_frame.loc[0, "w"] = -1.0
        with pytest.raises(DataIntegrityError):
            _design().bind(singleton_frame)

    def test_counts_and_df(self, singleton_frame):
        bound = _design().bind(singleton_frame)
        assert bound.n_strata == 2
        assert bound.n_psu == 3
        assert bound.design_df == 1
        assert bound.singleton_strata == [2]
        assert len(bound) == 6


class TestLinearizedVariance:
    def test_two_psu_stratum(self):
        df = pd.DataFrame({"w": [1.0] * 4, "stratum": [1] * 4, "psu": [1, 1, 2, 2]})
        bound = _design().bind(df)
        # PSU totals 3 and 7; deviations -2, 2; factor 2/1.
        variance = bound.linearized_variance(np.array([1.0, 2.0, 3.0, 4.0]))
        assert variance.shape == (1, 1)
        assert variance[0, 0] == pytest.approx(16.0)

    def test_matrix_scores(self):
        df = pd.DataFrame({"w": [1.0] * 4, "stratum": [1] * 4, "psu": [1, 1, 2, 2]})
        bound = _design().bind(df)
        scores = np.column_stack([[1.0, 2.0, 3.0, 4.0], [1.0, 1.0, 0.0, 0.0]])
        variance = bound.linearized_variance(scores)
        assert variance.shape == (2, 2)
        assert variance[0, 1] == pytest.approx(variance[1, 0])
        assert variance[1, 1] == pytest.approx(2.0 * (1.0 + 1.0))

    def test_certainty_singleton_contributes_zero(self, singleton_frame):
        bound = _design("certainty").bind(singleton_frame)
        scores = np.array([1.0, 2.0, 3.0, 4.0, 100.0, 200.0])
        assert bound.linearized_variance(scores)[0, 0] == pytest.approx(16.0)

    def test_centered_singleton_adds_variance(self, singleton_frame):
        scores = np.array([1.0, 2.0, 3.0, 4.0, 100.0, 200.0])
        certainty = _design("certainty").bind(singleton_frame).linearized_variance(scores)[0, 0]
        centered = _design("centered").bind(singleton_frame).linearized_variance(scores)[0, 0]
        assert centered > certainty

    def test_fail_policy_raises(self, singleton_frame):
        bound = _design("fail").bind(singleton_frame)
        with pytest.raises(EstimationError):
            bound.linearized_variance(np.ones(6))

    def test_score_length_must_match(self, singleton_frame):
        bound = _design().bind(singleton_frame)
        with pytest.raises(ValueError):
            bound.linearized_variance(np.ones(3))


class TestInference:
    def test_t_inference(self):
        out = t_inference(np.array([2.0, 0.0]), np.array([1.0, 0.0]), df=30)
        assert out["t_stat"][0] == pytest.approx(2.0)
        assert 0.05 < out["p_value"][0] < 0.06
        assert out["ci_low"][0] < 2.0 < out["ci_high"][0]
        assert np.isnan(out["t_stat"][1])
