"""
Phylogenetic regression models.

Two model families are fitted against species-level predictors:

1. Generalized least squares for the effort-normalized percentage response,
   with residual covariance from the pruned tree under Brownian motion or
   Pagel's lambda (lambda fitted by maximum likelihood jointly with the
   coefficients).
2. A Poisson mixed model for raw detection counts with a phylogenetically
   correlated species random effect and an independent site-type random
   intercept.

Categorical predictors use treatment coding with an explicit reference level.
Continuous predictors should be z-scored with zscore() before fitting.
"""

import itertools
import warnings
import numpy as np
import pandas as pd
import patsy
import statsmodels.formula.api as smf
from scipy import optimize, sparse, stats
from statsmodels.genmod.bayes_mixed_glm import PoissonBayesMixedGLM
from statsmodels.stats.multitest import multipletests
from typing import Optional, Dict, List, Sequence, Tuple

from .exceptions import ConvergenceError, CoverageError, require_columns
from .phylogeny import pagel_lambda_transform


EVOLUTION_MODELS = ('BM', 'lambda')

# relative log-likelihood difference below which lambda values count as tied
LAMBDA_TIE_TOL = 1e-9


def zscore(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """
    Center and scale columns to mean 0 and sample standard deviation 1.

    Constant columns become 0.
    """
    require_columns(df, list(columns), 'predictor table')
    df = df.copy()
    for col in columns:
        values = pd.to_numeric(df[col], errors='coerce').astype(float)
        mu = values.mean()
        sd = values.std()
        df[col] = 0.0 if sd == 0 or np.isnan(sd) else (values - mu) / sd
    return df


def _category_strings(values: pd.Series) -> pd.Series:
    def as_text(value):
        if pd.isna(value):
            return np.nan
        if isinstance(value, (float, np.floating)) and float(value).is_integer():
            return str(int(value))
        return str(value)
    return values.map(as_text)


def build_formula(
    response: str,
    continuous: Sequence[str] = (),
    categorical: Sequence[str] = (),
    reference_levels: Optional[Dict[str, object]] = None
) -> str:
    """
    Patsy formula with treatment coding against chosen reference levels.

    Args:
        response: Response column.
        continuous: Numeric predictor columns.
        categorical: Categorical predictor columns.
        reference_levels: Reference level per categorical column. Columns
                         without an entry use the first level.

    Returns:
        Formula string
    """
    reference_levels = reference_levels or {}
    terms = list(continuous)
    for col in categorical:
        if reference_levels.get(col) is not None:
            ref = _category_strings(pd.Series([reference_levels[col]])).iloc[0]
            terms.append(f"C({col}, Treatment(reference={ref!r}))")
        else:
            terms.append(f"C({col})")
    rhs = ' + '.join(terms) if terms else '1'
    return f"{response} ~ {rhs}"


def _prepare_design_data(
    data: pd.DataFrame,
    response: str,
    continuous: Sequence[str],
    categorical: Sequence[str],
    reference_levels: Optional[Dict[str, object]]
) -> pd.DataFrame:
    require_columns(data, [response] + list(continuous) + list(categorical), 'model data')
    data = data.reset_index(drop=True).copy()
    for col in categorical:
        data[col] = _category_strings(data[col])

    used = [response] + list(continuous) + list(categorical)
    if data[used].isna().any().any():
        incomplete = data[used].columns[data[used].isna().any()].tolist()
        raise ValueError(f"Model data has missing values in {incomplete}; apply complete_cases first")

    for col, ref in (reference_levels or {}).items():
        if col in categorical and ref is not None:
            ref = _category_strings(pd.Series([ref])).iloc[0]
            if ref not in set(data[col]):
                raise ValueError(
                    f"Reference level {ref!r} for '{col}' is not present; levels are {sorted(data[col].unique())}")
    return data


def _species_covariance(
    data: pd.DataFrame,
    covariance: pd.DataFrame,
    species_col: str
) -> pd.DataFrame:
    species = data[species_col].tolist()
    missing = sorted(set(species) - set(covariance.index))
    if missing:
        raise CoverageError(
            f"Species in the model data are absent from the tree covariance: {missing}",
            context={'missing': missing}
        )
    return covariance.loc[species, species]


class _FittedModel:
    """Shared behaviour of fitted model results."""

    model_id: str
    params: pd.Series
    bse: pd.Series
    statistic: pd.Series
    pvalues: pd.Series

    def coefficient_table(self) -> pd.DataFrame:
        """One row per coefficient: estimate, standard error, test statistic, p-value."""
        return pd.DataFrame({
            'model_id': self.model_id,
            'predictor': self.params.index,
            'estimate': self.params.to_numpy(),
            'std_error': self.bse.to_numpy(),
            'statistic': self.statistic.to_numpy(),
            'p_value': self.pvalues.to_numpy(),
        })


class PhyloGLSResult(_FittedModel):
    """Result of a phylogenetic generalized least squares fit."""

    family = 'gaussian'

    def __init__(self, model_id, results, data, response, continuous, categorical,
                 evolution_model, lam, lam_estimated, iterations, r2_lik=np.nan):
        self.model_id = model_id
        self.results = results
        self.data = data
        self.response = response
        self.continuous = list(continuous)
        self.categorical = list(categorical)
        self.evolution_model = evolution_model
        self.lam = lam
        self.lam_estimated = lam_estimated
        self.iterations = iterations
        self.r2_lik = r2_lik

        self.params = results.params
        self.bse = results.bse
        self.statistic = results.tvalues
        self.pvalues = results.pvalues
        self.cov_params = results.cov_params()
        self.df_resid = results.df_resid
        self.sigma = float(np.sqrt(results.scale))
        self.design_info = results.model.data.design_info
        self.nobs = int(results.nobs)
        self.llf = float(results.llf)
        # coefficients + residual variance + lambda when estimated
        self.k_params = len(self.params) + 1 + (1 if lam_estimated else 0)
        self.aic = -2 * self.llf + 2 * self.k_params

    @property
    def fitted(self) -> pd.Series:
        return self.results.fittedvalues

    def summary_record(self) -> Dict:
        return {
            'model_id': self.model_id,
            'family': self.family,
            'evolution_model': self.evolution_model,
            'n': self.nobs,
            'k': self.k_params,
            'llf': self.llf,
            'aic': self.aic,
            'r2_lik': self.r2_lik,
            'lambda': self.lam,
            'iterations': self.iterations,
        }


def _gls_at(data, formula, base_cov, lam):
    sigma = pagel_lambda_transform(base_cov, lam).to_numpy()
    results = smf.gls(formula, data=data, sigma=sigma).fit()
    if int(results.nobs) != len(data):
        raise ValueError("Model dropped rows; the covariance no longer lines up with the data")
    return results


def _fit_gls(data, formula, base_cov, evolution_model, lam, max_iter, tol, model_id):
    if evolution_model == 'BM':
        return _gls_at(data, formula, base_cov, 1.0), 1.0, False, 0

    if lam is not None:
        return _gls_at(data, formula, base_cov, lam), float(lam), False, 0

    def negative_llf(value):
        return -_gls_at(data, formula, base_cov, value).llf

    search = optimize.minimize_scalar(
        negative_llf,
        bounds=(0.0, 1.0),
        method='bounded',
        options={'maxiter': max_iter, 'xatol': tol}
    )
    iterations = int(getattr(search, 'nit', search.nfev))
    if not search.success:
        raise ConvergenceError(
            f"{model_id}: lambda search did not converge after {iterations} iterations "
            f"(last lambda={search.x:.4f}): {search.message}",
            last_estimate=float(search.x),
            iterations=iterations
        )

    # bounded search never evaluates the end points themselves; on a flat
    # likelihood an end point wins over the interior optimum
    candidates = [(edge, -negative_llf(edge)) for edge in (1.0, 0.0)]
    candidates.append((float(search.x), -search.fun))
    top = max(llf for _, llf in candidates)
    best = next(lam for lam, llf in candidates if llf >= top - LAMBDA_TIE_TOL * max(1.0, abs(top)))
    return _gls_at(data, formula, base_cov, best), best, True, iterations


def fit_phylo_gls(
    data: pd.DataFrame,
    response: str,
    covariance: pd.DataFrame,
    continuous: Sequence[str] = (),
    categorical: Sequence[str] = (),
    reference_levels: Optional[Dict[str, object]] = None,
    evolution_model: str = 'lambda',
    lam: Optional[float] = None,
    species_col: str = 'scientific_name',
    max_iter: int = 500,
    tol: float = 1e-6,
    model_id: str = 'gls',
    compute_r2: bool = True
) -> PhyloGLSResult:
    """
    Fit a GLS regression with phylogenetically structured residuals.

    Args:
        data: One row per species, predictors already z-scored.
        response: Continuous response column.
        covariance: Brownian-motion covariance of the pruned tree, indexed by
                   species (see phylogeny.phylo_covariance).
        continuous: Numeric predictor columns.
        categorical: Categorical predictor columns.
        reference_levels: Reference level per categorical column.
        evolution_model: 'BM' (lambda fixed at 1) or 'lambda'.
        lam: Fixed lambda for evolution_model='lambda'. If None, lambda is
            estimated by maximum likelihood on [0, 1].
        species_col: Column with species names matching the covariance index.
        max_iter: Iteration budget for the lambda search.
        tol: Absolute tolerance on lambda.
        model_id: Label carried into output tables.
        compute_r2: Also fit the intercept-only model for the likelihood R².

    Returns:
        PhyloGLSResult

    Raises:
        ConvergenceError: If the lambda search does not converge.
        CoverageError: If a species is absent from the covariance.
    """
    if evolution_model not in EVOLUTION_MODELS:
        raise ValueError(f"Invalid evolution_model: {evolution_model}. Use one of {EVOLUTION_MODELS}")
    require_columns(data, [species_col], 'model data')
    if data[species_col].duplicated().any():
        raise ValueError(f"Model data must have one row per species in '{species_col}'")

    data = _prepare_design_data(data, response, continuous, categorical, reference_levels)
    base_cov = _species_covariance(data, covariance, species_col)
    formula = build_formula(response, continuous, categorical, reference_levels)

    print(f"Fitting {model_id}: {formula} ({evolution_model}, n={len(data)})")
    results, lam_hat, estimated, iterations = _fit_gls(
        data, formula, base_cov, evolution_model, lam, max_iter, tol, model_id)

    fit = PhyloGLSResult(
        model_id, results, data, response, continuous, categorical,
        evolution_model, lam_hat, estimated, iterations
    )

    if compute_r2:
        null = fit_phylo_gls(
            data, response, covariance,
            evolution_model=evolution_model, lam=lam, species_col=species_col,
            max_iter=max_iter, tol=tol, model_id=f'{model_id}_null', compute_r2=False
        )
        fit.r2_lik = likelihood_r2(fit.llf, null.llf, fit.nobs)

    print(f"{model_id}: logLik={fit.llf:.3f}, AIC={fit.aic:.3f}, lambda={fit.lam:.3f}")
    return fit


def likelihood_r2(llf: float, llf_null: float, nobs: int) -> float:
    """Likelihood-ratio pseudo-R²: 1 - exp(-2/n * (llf - llf_null))."""
    return float(1 - np.exp(-2.0 / nobs * (llf - llf_null)))


def _laplace_loglik(model, params: np.ndarray) -> float:
    """
    Laplace approximation of the log-likelihood with the random effects integrated out.

    Fixed effects and variance parameters are held at `params`. Their prior
    densities are left out, so the value does not depend on how the fixed
    effects are coded.
    """
    k_fe, k_vcp = model.k_fep, model.k_vcp
    fe = params[:k_fe]
    vcp = params[k_fe:k_fe + k_vcp]
    vc = params[k_fe + k_vcp:]
    exog_vc = model.exog_vc.toarray() if sparse.issparse(model.exog_vc) else np.asarray(model.exog_vc)

    mu = np.exp(model.exog @ fe + exog_vc @ vc)
    sd = np.exp(vcp[model.ident])
    loglik = model.family.loglike(model.endog, mu) + np.sum(stats.norm.logpdf(vc, scale=sd))

    # negative Hessian of the conditional log-density in the random effects
    precision = exog_vc.T @ (mu[:, None] * exog_vc) + np.diag(1.0 / sd ** 2)
    sign, logdet = np.linalg.slogdet(precision)
    if sign <= 0:
        return np.nan
    return float(loglik + 0.5 * len(vc) * np.log(2 * np.pi) - 0.5 * logdet)


class PhyloGLMMResult(_FittedModel):
    """Result of a Poisson mixed model with phylogenetic and site-type effects."""

    family = 'poisson'
    sigma = None

    def __init__(self, model_id, model, results, data, response, continuous,
                 categorical, design_info, group_col, r2_lik=np.nan):
        self.model_id = model_id
        self.model = model
        self.results = results
        self.data = data
        self.response = response
        self.continuous = list(continuous)
        self.categorical = list(categorical)
        self.design_info = design_info
        self.group_col = group_col
        self.r2_lik = r2_lik

        names = list(model.fep_names)
        k_fe = len(names)
        self.params = pd.Series(results.fe_mean, index=names)
        self.bse = pd.Series(results.fe_sd, index=names)
        self.statistic = self.params / self.bse
        self.pvalues = pd.Series(2 * stats.norm.sf(np.abs(self.statistic)), index=names)

        cov = np.asarray(results.cov_params())
        full_cov = cov if cov.ndim == 2 else np.diag(cov)
        self.cov_params = pd.DataFrame(full_cov[:k_fe, :k_fe], index=names, columns=names)
        self.df_resid = np.inf
        self.nobs = len(data)

        self.variance_components = dict(zip(model.vcp_names, np.exp(results.vcp_mean)))

        optim = getattr(results, 'optim_retvals', None)
        self.iterations = int(getattr(optim, 'nit', 0)) if optim is not None else 0

        self.llf = _laplace_loglik(model, np.asarray(results.params))
        if np.isnan(self.llf):
            print(f"Warning: {model_id} random-effect precision is not positive definite; logLik undefined")
        self.k_params = k_fe + len(model.vcp_names)
        self.aic = -2 * self.llf + 2 * self.k_params

    def summary_record(self) -> Dict:
        record = {
            'model_id': self.model_id,
            'family': self.family,
            'evolution_model': 'BM',
            'n': self.nobs,
            'k': self.k_params,
            'llf': self.llf,
            'aic': self.aic,
            'r2_lik': self.r2_lik,
            'lambda': np.nan,
            'iterations': self.iterations,
        }
        for name, sd in self.variance_components.items():
            record[f'sd_{name}'] = sd
        return record


def fit_phylo_poisson_glmm(
    data: pd.DataFrame,
    response: str,
    covariance: pd.DataFrame,
    continuous: Sequence[str] = (),
    categorical: Sequence[str] = (),
    reference_levels: Optional[Dict[str, object]] = None,
    species_col: str = 'scientific_name',
    group_col: str = 'site_type',
    max_iter: int = 1000,
    vcp_p: float = 1.0,
    fe_p: float = 1000.0,
    grad_tol: float = 1e-2,
    model_id: str = 'glmm',
    compute_r2: bool = True
) -> PhyloGLMMResult:
    """
    Fit a Poisson GLMM for raw counts with two independent random effects.

    The species effect is multivariate normal with covariance proportional to
    the Brownian-motion covariance of the tree. It enters the model as iid
    effects on the species design multiplied by the Cholesky factor of that
    covariance. The site-type effect is an iid random intercept.

    Args:
        data: One row per count (e.g. species x time of day x site).
        response: Count response column.
        covariance: Brownian-motion covariance of the pruned tree.
        continuous: Numeric predictor columns.
        categorical: Categorical predictor columns.
        reference_levels: Reference level per categorical column.
        species_col: Species column matching the covariance index.
        group_col: Column for the independent random intercept.
        max_iter: Iteration budget for the posterior mode search.
        vcp_p: Prior SD of the log random-effect SDs.
        fe_p: Prior SD of the fixed effects. The default is effectively flat,
            so estimates do not depend on the reference levels.
        grad_tol: Largest gradient norm at which an optimizer stop short of
            its own tolerance is still accepted as the mode.
        model_id: Label carried into output tables.
        compute_r2: Also fit the intercept-only model for the likelihood R².

    Returns:
        PhyloGLMMResult

    Raises:
        ConvergenceError: If the iteration budget runs out or the optimizer stops
            with a gradient norm above `grad_tol`.
    """
    require_columns(data, [species_col, group_col], 'model data')
    data = _prepare_design_data(data, response, continuous, categorical, reference_levels)
    formula = build_formula(response, continuous, categorical, reference_levels)

    species = sorted(data[species_col].unique())
    base_cov = _species_covariance(pd.DataFrame({species_col: species}), covariance, species_col)
    chol = np.linalg.cholesky(base_cov.to_numpy())

    endog, exog = patsy.dmatrices(formula, data, return_type='dataframe')
    species_design = pd.get_dummies(data[species_col]).reindex(columns=species, fill_value=0)
    group_design = pd.get_dummies(data[group_col])
    exog_vc = np.hstack([
        species_design.to_numpy(dtype=float) @ chol,
        group_design.to_numpy(dtype=float),
    ])
    ident = np.concatenate([
        np.zeros(len(species), dtype=int),
        np.ones(group_design.shape[1], dtype=int),
    ])

    model = PoissonBayesMixedGLM(
        endog.iloc[:, 0].to_numpy(),
        exog.to_numpy(),
        exog_vc,
        ident,
        vcp_p=vcp_p,
        fe_p=fe_p,
        fep_names=list(exog.columns),
        vcp_names=['phylogeny', group_col],
        vc_names=[f'phylo[{name}]' for name in species] + [f'{group_col}[{g}]' for g in group_design.columns],
    )

    print(f"Fitting {model_id}: {formula} (Poisson, n={len(data)}, {len(species)} species, "
          f"{group_design.shape[1]} {group_col} levels)")
    with warnings.catch_warnings():
        warnings.filterwarnings('ignore', message='Laplace fitting did not converge')
        results = model.fit_map(method='BFGS', minim_opts={'maxiter': max_iter})

    optim = getattr(results, 'optim_retvals', None)
    if optim is not None and not optim.success:
        iterations = int(getattr(optim, 'nit', max_iter))
        grad_norm = float(np.linalg.norm(model.logposterior_grad(np.asarray(results.params))))
        if iterations >= max_iter or not grad_norm <= grad_tol:
            raise ConvergenceError(
                f"{model_id}: posterior mode search did not converge after {iterations} iterations "
                f"(|gradient|={grad_norm:.3g}): {optim.message}",
                last_estimate=dict(zip(model.fep_names, results.fe_mean)),
                iterations=iterations
            )
        print(f"Warning: {model_id}: optimizer stopped with '{optim.message}' at "
              f"|gradient|={grad_norm:.2e}; accepted as the mode")

    fit = PhyloGLMMResult(
        model_id, model, results, data, response, continuous, categorical,
        exog.design_info, group_col
    )

    if compute_r2:
        null = fit_phylo_poisson_glmm(
            data, response, covariance, species_col=species_col, group_col=group_col,
            max_iter=max_iter, vcp_p=vcp_p, fe_p=fe_p, grad_tol=grad_tol,
            model_id=f'{model_id}_null',
            compute_r2=False
        )
        fit.r2_lik = likelihood_r2(fit.llf, null.llf, fit.nobs)

    print(f"{model_id}: logLik={fit.llf:.3f}, AIC={fit.aic:.3f}")
    return fit


def _level_weights(fit, factor: str) -> Tuple[List[str], np.ndarray]:
    """Design-row averages for each level of `factor` over a balanced reference grid."""
    if factor not in fit.categorical:
        raise ValueError(f"'{factor}' is not a categorical predictor of {fit.model_id}")

    levels = {col: sorted(fit.data[col].unique()) for col in fit.categorical}
    grid = pd.DataFrame(list(itertools.product(*levels.values())), columns=list(levels))
    for col in fit.continuous:
        grid[col] = float(fit.data[col].mean())

    design = np.asarray(patsy.build_design_matrices([fit.design_info], grid)[0])
    weights = np.vstack([
        design[(grid[factor] == level).to_numpy()].mean(axis=0)
        for level in levels[factor]
    ])
    return levels[factor], weights


def marginal_means(fit, factor: str, alpha: float = 0.05) -> pd.DataFrame:
    """
    Estimated marginal means of a categorical predictor.

    Other categorical predictors are averaged with equal weight over their
    levels and continuous predictors are held at their mean. Means are on
    the link scale (log rate for the Poisson model).
    """
    levels, weights = _level_weights(fit, factor)
    params = fit.params.to_numpy()
    cov = fit.cov_params.to_numpy()

    estimate = weights @ params
    std_error = np.sqrt(np.einsum('ij,jk,ik->i', weights, cov, weights))
    if np.isfinite(fit.df_resid):
        crit = stats.t.ppf(1 - alpha / 2, fit.df_resid)
    else:
        crit = stats.norm.ppf(1 - alpha / 2)

    return pd.DataFrame({
        'model_id': fit.model_id,
        'factor': factor,
        'level': levels,
        'emmean': estimate,
        'std_error': std_error,
        'df': fit.df_resid,
        'lower_ci': estimate - crit * std_error,
        'upper_ci': estimate + crit * std_error,
    })


def pairwise_contrasts(fit, factor: str, adjust: str = 'holm') -> pd.DataFrame:
    """
    All pairwise differences between marginal means of a categorical predictor.

    Effect sizes are the difference divided by the residual standard
    deviation for GLS fits, and the rate ratio for Poisson fits.

    Args:
        fit: Fitted PhyloGLSResult or PhyloGLMMResult.
        factor: Categorical predictor.
        adjust: Multiple-testing correction passed to statsmodels
               multipletests, or 'none'.
    """
    levels, weights = _level_weights(fit, factor)
    params = fit.params.to_numpy()
    cov = fit.cov_params.to_numpy()

    rows = []
    for i, j in itertools.combinations(range(len(levels)), 2):
        contrast = weights[i] - weights[j]
        estimate = float(contrast @ params)
        std_error = float(np.sqrt(contrast @ cov @ contrast))
        statistic = estimate / std_error
        if np.isfinite(fit.df_resid):
            p_value = 2 * stats.t.sf(abs(statistic), fit.df_resid)
        else:
            p_value = 2 * stats.norm.sf(abs(statistic))
        if fit.sigma is not None:
            effect_size, effect_type = estimate / fit.sigma, 'standardized_difference'
        else:
            effect_size, effect_type = float(np.exp(estimate)), 'rate_ratio'
        rows.append({
            'model_id': fit.model_id,
            'factor': factor,
            'contrast': f'{levels[i]} - {levels[j]}',
            'estimate': estimate,
            'std_error': std_error,
            'statistic': statistic,
            'p_value': p_value,
            'effect_size': effect_size,
            'effect_size_type': effect_type,
        })

    contrasts = pd.DataFrame(rows)
    if len(contrasts) > 1 and adjust != 'none':
        contrasts['p_adjusted'] = multipletests(contrasts['p_value'], method=adjust)[1]
    elif len(contrasts):
        contrasts['p_adjusted'] = contrasts['p_value']
    return contrasts


def effect_size_table(fits: Sequence, z: float = 1.96) -> pd.DataFrame:
    """
    Standardized coefficients of several models, stacked for plotting.

    Intercepts are left out. Continuous predictors are z-scored before
    fitting, so their estimates are per-SD effects.
    """
    tables = [fit.coefficient_table() for fit in fits]
    if not tables:
        return pd.DataFrame(columns=['model_id', 'predictor', 'estimate', 'std_error',
                                     'lower_ci', 'upper_ci', 'p_value'])
    stacked = pd.concat(tables, ignore_index=True)
    stacked = stacked[stacked['predictor'] != 'Intercept'].reset_index(drop=True)
    stacked['lower_ci'] = stacked['estimate'] - z * stacked['std_error']
    stacked['upper_ci'] = stacked['estimate'] + z * stacked['std_error']
    return stacked[['model_id', 'predictor', 'estimate', 'std_error', 'lower_ci', 'upper_ci', 'p_value']]


def model_summary(fits: Sequence) -> pd.DataFrame:
    """One row per model with n, logLik, AIC, likelihood R² and lambda."""
    return pd.DataFrame([fit.summary_record() for fit in fits])
