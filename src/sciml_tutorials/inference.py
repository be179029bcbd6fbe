"""
inference.py
============
Bayesian parameter inference for ODE models with PyMC.

The ODE is solved by SciPy inside a PyTensor ``as_op`` wrapper, so the
likelihood has no gradient and gradient-free step methods are used
(slice sampling by default).  Observations are modelled as normally
distributed around the ODE solution with an unknown noise scale ``sigma``.
"""

import numpy as np

from sciml_tutorials.utils import LOG_PREFIX, resolve_symbol, symbol_table

STEP_METHODS = ("slice", "metropolis", "demetropolisz")


class InferenceResult:
    """Posterior samples and a per-parameter summary.

    Attributes
    ----------
    trace : arviz.InferenceData
        Samples as returned by ``pymc.sample``.
    model : pymc.Model
    summary : dict
        ``{name: {"mean", "sd", "q3", "q97"}}`` for every estimated
        parameter and ``sigma``; ``q3``/``q97`` bound the central 94%
        interval.
    """

    def __init__(self, trace, model, summary):
        self.trace = trace
        self.model = model
        self.summary = summary

    def __getitem__(self, name):
        return self.summary[name]

    def posterior_mean(self):
        return {name: stats["mean"] for name, stats in self.summary.items()}

    def __repr__(self):
        lines = ["InferenceResult:"]
        for name, stats in self.summary.items():
            lines.append(
                f"  {name}: mean={stats['mean']:.4g} sd={stats['sd']:.4g} "
                f"94% [{stats['q3']:.4g}, {stats['q97']:.4g}]"
            )
        return "\n".join(lines)


def _summarise(samples):
    samples = np.asarray(samples, dtype=float).ravel()
    return {
        "mean": float(samples.mean()),
        "sd": float(samples.std()),
        "q3": float(np.quantile(samples, 0.03)),
        "q97": float(np.quantile(samples, 0.97)),
    }


def bayesian_inference(prob, t, data, priors, observables=None,
                       noise_prior=("InverseGamma", {"alpha": 2.0, "beta": 3.0}),
                       draws=1000, tune=1000, chains=2, step="slice", seed=None,
                       solver="LSODA", progressbar=False, verbose=False):
    """Sample the posterior of ODE parameters given noisy observations.

    Parameters
    ----------
    prob : ODEProblem
    t : array_like
        Observation times.
    data : array_like, shape (n_observables, len(t))
        Observations, one row per observable.
    priors : dict
        ``{parameter name: (pymc distribution name, kwargs)}``, e.g.
        ``{"alpha": ("TruncatedNormal", {"mu": 1.5, "sigma": 0.5, "lower": 0.5, "upper": 2.5})}``.
    observables : list, optional
        States or observed variables compared with ``data`` (default: all
        states).
    noise_prior : tuple
        Distribution name and kwargs for the observation noise ``sigma``.
    draws, tune, chains : int
        Passed to ``pymc.sample`` (always with ``cores=1``).
    step : str
        ``'slice'``, ``'metropolis'`` or ``'demetropolisz'``.
    seed : int, optional
    solver : str
        Integration method for the forward model.

    Returns
    -------
    InferenceResult

    Raises
    ------
    ValueError
        On an unknown step method, an unknown prior distribution, or data
        whose shape does not match ``observables`` × ``t``.
    KeyError
        If a prior names an unknown parameter.
    """
    import pymc as pm
    import pytensor.tensor as pt
    from pytensor.compile.ops import as_op

    if step.lower() not in STEP_METHODS:
        raise ValueError(f"Unknown step method: {step}")

    t = np.asarray(t, dtype=float)
    obs = prob.observable_symbols(observables)
    data = np.asarray(data, dtype=float)
    if data.size != len(obs) * len(t):
        raise ValueError(
            f"Data has {data.size} values, expected {len(obs)} observables x {len(t)} times"
        )
    data = data.reshape(len(obs), len(t))

    table = symbol_table(prob.sys.parameters)
    names = list(priors)
    params = [resolve_symbol(name, table) for name in names]

    for dist, _ in list(priors.values()) + [noise_prior]:
        if not hasattr(pm, dist):
            raise ValueError(f"Unknown pymc distribution: {dist}")

    @as_op(itypes=[pt.dvector], otypes=[pt.dmatrix])
    def forward(theta):
        sol = prob.remake(p=dict(zip(params, theta))).solve(solver, saveat=t)
        if not sol.success or len(sol.t) != len(t):
            return np.full(data.shape, np.inf)
        return np.vstack([sol[o] for o in obs]).astype(np.float64)

    if verbose:
        print(f"{LOG_PREFIX} Sampling {names} with {step} ({chains} x {draws} draws)")

    with pm.Model() as model:
        rvs = [getattr(pm, dist)(name, **kwargs) for name, (dist, kwargs) in priors.items()]
        sigma = getattr(pm, noise_prior[0])("sigma", **noise_prior[1])
        mu = forward(pt.stack(rvs))
        pm.Normal("obs", mu=mu, sigma=sigma, observed=data)

        step_method = {
            "slice": pm.Slice,
            "metropolis": pm.Metropolis,
            "demetropolisz": pm.DEMetropolisZ,
        }[step.lower()]()
        trace = pm.sample(
            draws=draws, tune=tune, chains=chains, cores=1, step=step_method,
            random_seed=seed, progressbar=progressbar, compute_convergence_checks=False,
        )

    summary = {name: _summarise(trace.posterior[name].values) for name in names + ["sigma"]}
    if verbose:
        for name, stats in summary.items():
            print(f"{LOG_PREFIX}   {name}: mean={stats['mean']:.4g} sd={stats['sd']:.4g}")
    return InferenceResult(trace, model, summary)
