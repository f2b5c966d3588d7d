"""
Tests for regression.py module.

To run these tests:
    pytest tests/test_regression.py -v
"""

import pytest
import dendropy
import pandas as pd
import numpy as np
from types import SimpleNamespace
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dawn_dusk import regression
from dawn_dusk.exceptions import ConvergenceError, CoverageError
from dawn_dusk.phylogeny import phylo_covariance
from dawn_dusk.regression import (
    zscore,
    build_formula,
    fit_phylo_gls,
    fit_phylo_poisson_glmm,
    likelihood_r2,
    marginal_means,
    pairwise_contrasts,
    effect_size_table,
    model_summary
)


SPECIES = ['Aa a', 'Bb b', 'Cc c', 'Dd d', 'Ee e', 'Ff f', 'Gg g', 'Hh h']
NEWICK = ("(((Aa_a:1,Bb_b:1):1,(Cc_c:1,Dd_d:1):1):1,"
          "((Ee_e:1,Ff_f:1):1,(Gg_g:1,Hh_h:1):1):1);")


@pytest.fixture
def covariance():
    tree = dendropy.Tree.get(data=NEWICK, schema='newick', preserve_underscores=True)
    cov = phylo_covariance(tree)
    cov.index = cov.columns = [label.replace('_', ' ') for label in cov.index]
    return cov


@pytest.fixture
def data():
    df = pd.DataFrame({
        'scientific_name': SPECIES,
        'percent_normalized_detections': [12.0, 15.5, 30.1, 28.4, 55.2, 60.3, 71.9, 80.0],
        'median_peak_freq': [5200.0, 4800.0, 3900.0, 4100.0, 2500.0, 2300.0, 1900.0, 2100.0],
        'territory': [1, 2, 3, 1, 2, 3, 1, 2],
    })
    return zscore(df, ['median_peak_freq'])


class TestHelpers:
    """Test z-scoring, formulas and the likelihood R²."""

    def test_zscore(self, data):
        assert data['median_peak_freq'].mean() == pytest.approx(0.0, abs=1e-12)
        assert data['median_peak_freq'].std() == pytest.approx(1.0)

    def test_zscore_constant_column(self):
        df = zscore(pd.DataFrame({'x': [3.0, 3.0, 3.0]}), ['x'])

        assert list(df['x']) == [0.0, 0.0, 0.0]

    def test_build_formula(self):
        formula = build_formula('y', ['x'], ['territory', 'trophic_niche'], {'territory': 1})

        assert formula == "y ~ x + C(territory, Treatment(reference='1')) + C(trophic_niche)"

    def test_intercept_only_formula(self):
        assert build_formula('y') == 'y ~ 1'

    def test_likelihood_r2(self):
        assert likelihood_r2(-10.0, -10.0, 20) == pytest.approx(0.0)
        assert likelihood_r2(-5.0, -10.0, 10) == pytest.approx(1 - np.exp(-1.0))


class TestPhyloGLS:
    """Test the phylogenetic GLS fit."""

    def test_fit_brownian_motion(self, data, covariance):
        fit = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                            continuous=['median_peak_freq'], evolution_model='BM')

        assert fit.lam == 1.0
        assert fit.k_params == 3
        assert fit.aic == pytest.approx(-2 * fit.llf + 6)
        assert fit.params['median_peak_freq'] < 0
        assert 0 <= fit.r2_lik <= 1

    def test_fit_lambda(self, data, covariance):
        fit = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                            continuous=['median_peak_freq'], evolution_model='lambda')

        assert 0.0 <= fit.lam <= 1.0
        assert fit.k_params == 4

        bm = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                           continuous=['median_peak_freq'], evolution_model='BM')
        assert fit.llf >= bm.llf - 1e-8

    def test_coefficient_table(self, data, covariance):
        fit = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                            continuous=['median_peak_freq'], categorical=['territory'],
                            reference_levels={'territory': 1}, evolution_model='BM',
                            model_id='gls_dawn')

        table = fit.coefficient_table()

        assert list(table.columns) == ['model_id', 'predictor', 'estimate', 'std_error',
                                       'statistic', 'p_value']
        assert len(table) == 4
        assert (table['model_id'] == 'gls_dawn').all()
        assert not any(name.endswith('[T.1]') for name in table['predictor'])

    def test_reference_level_does_not_change_fit(self, data, covariance):
        """Test that changing the reference level only reparameterizes the model."""
        fits = [
            fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                          continuous=['median_peak_freq'], categorical=['territory'],
                          reference_levels={'territory': ref}, evolution_model='BM')
            for ref in (1, 3)
        ]

        assert fits[0].llf == pytest.approx(fits[1].llf)
        assert fits[0].aic == pytest.approx(fits[1].aic)
        assert np.allclose(fits[0].fitted.to_numpy(), fits[1].fitted.to_numpy())
        assert any(name.endswith('[T.1]') for name in fits[1].params.index)

    def test_flat_lambda_likelihood_reports_end_point(self, data):
        """Test that a star tree, where lambda changes nothing, reports lambda = 1."""
        star = pd.DataFrame(np.eye(len(SPECIES)), index=SPECIES, columns=SPECIES)

        fit = fit_phylo_gls(data, 'percent_normalized_detections', star,
                            continuous=['median_peak_freq'], evolution_model='lambda')
        bm = fit_phylo_gls(data, 'percent_normalized_detections', star,
                           continuous=['median_peak_freq'], evolution_model='BM')

        assert fit.lam == 1.0
        assert fit.llf == pytest.approx(bm.llf)

    def test_missing_reference_level(self, data, covariance):
        with pytest.raises(ValueError, match="Reference level"):
            fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                          categorical=['territory'], reference_levels={'territory': 4},
                          evolution_model='BM')

    def test_species_missing_from_covariance(self, data, covariance):
        with pytest.raises(CoverageError):
            fit_phylo_gls(data, 'percent_normalized_detections', covariance.iloc[1:, 1:],
                          evolution_model='BM')

    def test_duplicate_species_rejected(self, data, covariance):
        with pytest.raises(ValueError, match="one row per species"):
            fit_phylo_gls(pd.concat([data, data.iloc[:1]]), 'percent_normalized_detections',
                          covariance, evolution_model='BM')

    def test_lambda_search_budget_exhausted(self, data, covariance):
        with pytest.raises(ConvergenceError) as excinfo:
            fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                          continuous=['median_peak_freq'], evolution_model='lambda', max_iter=1)

        assert 0.0 <= excinfo.value.last_estimate <= 1.0

    def test_refit_is_deterministic(self, data, covariance):
        first = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                              continuous=['median_peak_freq'])
        second = fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                               continuous=['median_peak_freq'])

        pd.testing.assert_series_equal(first.params, second.params)
        assert first.lam == second.lam


class TestMarginalMeans:
    """Test marginal means, contrasts and effect sizes."""

    @pytest.fixture
    def fit(self, data, covariance):
        return fit_phylo_gls(data, 'percent_normalized_detections', covariance,
                             continuous=['median_peak_freq'], categorical=['territory'],
                             reference_levels={'territory': 1}, evolution_model='BM')

    def test_marginal_means(self, fit):
        means = marginal_means(fit, 'territory').set_index('level')

        assert list(means.index) == ['1', '2', '3']
        coef = [name for name in fit.params.index if name.endswith('[T.2]')][0]
        assert means.loc['2', 'emmean'] - means.loc['1', 'emmean'] == pytest.approx(fit.params[coef])
        assert (means['lower_ci'] < means['emmean']).all()

    def test_pairwise_contrasts(self, fit):
        contrasts = pairwise_contrasts(fit, 'territory')
        means = marginal_means(fit, 'territory').set_index('level')['emmean']

        assert list(contrasts['contrast']) == ['1 - 2', '1 - 3', '2 - 3']
        assert contrasts['estimate'].iloc[0] == pytest.approx(means['1'] - means['2'])
        assert (contrasts['p_adjusted'] >= contrasts['p_value'] - 1e-12).all()
        assert contrasts['effect_size'].iloc[0] == pytest.approx(contrasts['estimate'].iloc[0] / fit.sigma)

    def test_not_categorical(self, fit):
        with pytest.raises(ValueError):
            marginal_means(fit, 'median_peak_freq')

    def test_effect_size_table_and_summary(self, fit):
        effects = effect_size_table([fit])
        summary = model_summary([fit])

        assert 'Intercept' not in set(effects['predictor'])
        assert (effects['lower_ci'] < effects['upper_ci']).all()
        assert summary['aic'].iloc[0] == pytest.approx(fit.aic)
        assert summary['k'].iloc[0] == 5


def simulate_counts(scale, seed=7):
    """Poisson counts for 8 species x 2 times of day x 4 sites, fewer at dusk."""
    rng = np.random.RandomState(seed)
    rows = []
    for i, name in enumerate(SPECIES):
        for tod in ('dawn', 'dusk'):
            for site, site_type in (('S1', 'forest'), ('S2', 'forest'), ('S3', 'plantation'), ('S4', 'plantation')):
                rate = np.exp(scale + 0.2 * i - (0.6 if tod == 'dusk' else 0.0))
                rows.append({
                    'scientific_name': name,
                    'time_of_day': tod,
                    'site_id': site,
                    'site_type': site_type,
                    'median_peak_freq': 5000.0 - 400 * i,
                    'detections': rng.poisson(rate),
                })
    return zscore(pd.DataFrame(rows), ['median_peak_freq'])


class TestPoissonGLMM:
    """Test the phylogenetic Poisson mixed model."""

    @pytest.fixture
    def counts(self):
        return simulate_counts(0.5)

    def fit_time_of_day(self, counts, covariance, reference='dawn'):
        return fit_phylo_poisson_glmm(
            counts, 'detections', covariance,
            continuous=['median_peak_freq'], categorical=['time_of_day'],
            reference_levels={'time_of_day': reference}, compute_r2=False)

    def test_fit(self, counts, covariance):
        fit = self.fit_time_of_day(counts, covariance)

        assert fit.nobs == len(counts)
        assert set(fit.variance_components) == {'phylogeny', 'site_type'}
        assert fit.k_params == 5
        dusk = [name for name in fit.params.index if name.endswith('[T.dusk]')][0]
        assert fit.params[dusk] < 0

        contrasts = pairwise_contrasts(fit, 'time_of_day')
        assert contrasts['effect_size_type'].iloc[0] == 'rate_ratio'
        assert contrasts['effect_size'].iloc[0] == pytest.approx(np.exp(contrasts['estimate'].iloc[0]))

    @pytest.mark.parametrize('scale', [1.0, 2.0, 3.0])
    def test_fits_across_count_scales(self, covariance, scale):
        fit = self.fit_time_of_day(simulate_counts(scale), covariance)

        assert np.isfinite(fit.llf)
        dusk = [name for name in fit.params.index if name.endswith('[T.dusk]')][0]
        assert fit.params[dusk] < 0

    @pytest.mark.parametrize('scale', [0.5, 1.0, 3.0])
    def test_reference_level_does_not_change_fit(self, covariance, scale):
        """Test that swapping the time-of-day reference only flips the contrast."""
        counts = simulate_counts(scale)
        dawn = self.fit_time_of_day(counts, covariance, 'dawn')
        dusk = self.fit_time_of_day(counts, covariance, 'dusk')

        assert dawn.llf == pytest.approx(dusk.llf, abs=1e-3)
        assert dawn.aic == pytest.approx(dusk.aic, abs=2e-3)
        dusk_effect = [name for name in dawn.params.index if name.endswith('[T.dusk]')][0]
        dawn_effect = [name for name in dusk.params.index if name.endswith('[T.dawn]')][0]
        assert dawn.params[dusk_effect] == pytest.approx(-dusk.params[dawn_effect], abs=1e-3)

    def test_precision_loss_stop_is_accepted(self, counts, covariance, monkeypatch, capsys):
        """Test that an optimizer stop at the mode is reported but not raised."""
        fit_map = regression.PoissonBayesMixedGLM.fit_map

        def precision_loss(self, method='BFGS', minim_opts=None):
            results = fit_map(self, method=method, minim_opts=minim_opts)
            results.optim_retvals = SimpleNamespace(
                success=False, status=2, nit=results.optim_retvals.nit,
                message='Desired error not necessarily achieved due to precision loss.')
            return results

        monkeypatch.setattr(regression.PoissonBayesMixedGLM, 'fit_map', precision_loss)

        fit = self.fit_time_of_day(counts, covariance)

        assert np.isfinite(fit.llf)
        assert 'accepted as the mode' in capsys.readouterr().out

    @staticmethod
    def stalled(nit):
        def stalled_fit(self, method='BFGS', minim_opts=None):
            return SimpleNamespace(
                optim_retvals=SimpleNamespace(success=False, status=2, nit=nit, message='stopped'),
                params=np.zeros(self.k_fep + self.k_vcp + self.k_vc),
                fe_mean=np.zeros(len(self.fep_names)),
            )
        return stalled_fit

    def test_non_convergence_raises(self, counts, covariance, monkeypatch):
        monkeypatch.setattr(regression.PoissonBayesMixedGLM, 'fit_map', self.stalled(3))

        with pytest.raises(ConvergenceError) as excinfo:
            fit_phylo_poisson_glmm(counts, 'detections', covariance,
                                   continuous=['median_peak_freq'], compute_r2=False)

        assert excinfo.value.iterations == 3
        assert 'gradient' in str(excinfo.value)
        assert set(excinfo.value.last_estimate) == {'Intercept', 'median_peak_freq'}

    def test_iteration_budget_exhausted_raises(self, counts, covariance, monkeypatch):
        monkeypatch.setattr(regression.PoissonBayesMixedGLM, 'fit_map', self.stalled(20))

        with pytest.raises(ConvergenceError) as excinfo:
            fit_phylo_poisson_glmm(counts, 'detections', covariance,
                                   continuous=['median_peak_freq'], compute_r2=False,
                                   max_iter=20, grad_tol=np.inf)

        assert excinfo.value.iterations == 20
