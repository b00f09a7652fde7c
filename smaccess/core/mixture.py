"""
smaccess mixture module

Provides:
1. MixtureModel: an immutable one-dimensional Gaussian mixture with
   log-density evaluation and JSON-friendly (de)serialization
2. GaussianMixture: EM estimator (native numpy/scipy, no sklearn)
3. kl_divergence: Monte-Carlo KL estimate between two mixtures, used to rank
   sequence contexts by how well they separate the two control states

All densities are evaluated in log space for numerical stability.
"""

import math
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.special import logsumexp
from scipy.stats import norm

from smaccess.core.errors import ConvergenceWarning


WEIGHT_SUM_TOLERANCE = 1e-6


def _frozen_array(values, name: str) -> np.ndarray:
    arr = np.array(values, dtype=float).ravel()
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class MixtureModel:
    """
    Fitted k-component Gaussian mixture over scalar signal values.

    Invariants (checked on construction, ValueError otherwise):
    weights are non-negative and sum to 1 within 1e-6; every variance is > 0;
    weights, means and variances have the same length >= 1.
    """
    weights: np.ndarray
    means: np.ndarray
    variances: np.ndarray
    n_samples: int = 0
    log_likelihood: Optional[float] = None
    n_iter: int = 0
    converged: bool = True

    def __post_init__(self):
        weights = _frozen_array(self.weights, 'weights')
        means = _frozen_array(self.means, 'means')
        variances = _frozen_array(self.variances, 'variances')
        if len(weights) == 0:
            raise ValueError("A mixture needs at least one component")
        if not (len(weights) == len(means) == len(variances)):
            raise ValueError(
                f"Component arrays differ in length: weights={len(weights)}, "
                f"means={len(means)}, variances={len(variances)}")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative")
        if abs(weights.sum() - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"weights must sum to 1, got {weights.sum():.9f}")
        if np.any(variances <= 0):
            raise ValueError("variances must be > 0")
        object.__setattr__(self, 'weights', weights)
        object.__setattr__(self, 'means', means)
        object.__setattr__(self, 'variances', variances)

    def __eq__(self, other):
        if not isinstance(other, MixtureModel):
            return NotImplemented
        return (np.array_equal(self.weights, other.weights)
                and np.array_equal(self.means, other.means)
                and np.array_equal(self.variances, other.variances)
                and self.n_samples == other.n_samples
                and self.n_iter == other.n_iter
                and self.converged == other.converged)

    __hash__ = None

    @property
    def n_components(self) -> int:
        return len(self.weights)

    def log_density(self, x, floor: Optional[float] = None):
        """
        Log of the mixture density at x (scalar or array).

        Args:
            x: Value(s) to evaluate
            floor: If given, densities below it are raised to it, so the
                result is never below log(floor)

        Returns:
            float for scalar input, ndarray otherwise
        """
        arr = np.asarray(x, dtype=float)
        flat = arr.reshape(-1, 1)
        with np.errstate(divide='ignore'):
            log_w = np.log(self.weights)
        comp = norm.logpdf(flat, loc=self.means, scale=np.sqrt(self.variances))
        result = logsumexp(comp + log_w, axis=1)
        if floor is not None:
            result = np.maximum(result, math.log(floor))
        if arr.ndim == 0:
            return float(result[0])
        return result.reshape(arr.shape)

    def density(self, x):
        return np.exp(self.log_density(x))

    def sample(self, n: int, rng: np.random.Generator) -> np.ndarray:
        components = rng.choice(self.n_components, size=n, p=self.weights)
        return rng.normal(self.means[components], np.sqrt(self.variances[components]))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to plain Python types (floats survive JSON exactly)."""
        return {
            'weights': self.weights.tolist(),
            'means': self.means.tolist(),
            'variances': self.variances.tolist(),
            'n_samples': int(self.n_samples),
            'log_likelihood': self.log_likelihood,
            'n_iter': int(self.n_iter),
            'converged': bool(self.converged),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'MixtureModel':
        """Deserialize, re-checking every invariant. Raises ValueError."""
        if not isinstance(d, dict):
            raise ValueError(f"Expected a mapping, got {type(d).__name__}")
        missing = [key for key in ('weights', 'means', 'variances') if key not in d]
        if missing:
            raise ValueError(f"Missing mixture fields: {missing}")
        try:
            return cls(
                weights=d['weights'],
                means=d['means'],
                variances=d['variances'],
                n_samples=int(d.get('n_samples', 0)),
                log_likelihood=d.get('log_likelihood'),
                n_iter=int(d.get('n_iter', 0)),
                converged=bool(d.get('converged', True)),
            )
        except TypeError as e:
            raise ValueError(f"Malformed mixture fields: {e}") from e


class GaussianMixture:
    """
    EM estimator for a 1-D Gaussian mixture.

    The first run is initialised from data quantiles; additional runs
    (n_init > 1) use k-means++ seeding drawn from the seeded generator, so
    the same samples and random_state always give the same model.
    Convergence is declared when the mean per-sample log-likelihood changes by
    less than tol. The best iterate seen across all iterations and runs is
    returned.
    """

    def __init__(self, n_components: int = 2, tol: float = 1e-4, max_iter: int = 100,
                 variance_floor: float = 1e-6, n_init: int = 1,
                 random_state: Optional[int] = None):
        self.n_components = n_components
        self.tol = tol
        self.max_iter = max_iter
        self.variance_floor = variance_floor
        self.n_init = n_init
        self.random_state = random_state

    def fit(self, samples, warn: bool = True) -> MixtureModel:
        x = np.asarray(samples, dtype=float).ravel()
        if not np.all(np.isfinite(x)):
            raise ValueError("samples must be finite")
        if len(x) < self.n_components:
            raise ValueError(
                f"Need at least {self.n_components} samples, got {len(x)}")

        rng = np.random.default_rng(self.random_state)
        best = None
        for run in range(self.n_init):
            if run == 0:
                means = self._quantile_init(x)
            else:
                means = self._kmeans_pp_init(x, rng)
            result = self._em(x, means)
            if best is None or result[0] > best[0]:
                best = result

        log_likelihood, weights, means, variances, n_iter, converged = best

        # Canonical component order: ascending mean
        order = np.argsort(means, kind='stable')
        weights = weights[order] / weights.sum()

        if not converged and warn:
            warnings.warn(
                f"EM did not converge within {self.max_iter} iterations "
                f"(n={len(x)}); keeping best iterate", ConvergenceWarning, stacklevel=2)

        return MixtureModel(
            weights=weights,
            means=means[order],
            variances=variances[order],
            n_samples=len(x),
            log_likelihood=float(log_likelihood),
            n_iter=n_iter,
            converged=converged,
        )

    def _quantile_init(self, x: np.ndarray) -> np.ndarray:
        k = self.n_components
        return np.quantile(x, (np.arange(k) + 0.5) / k)

    def _kmeans_pp_init(self, x: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        centers = [x[rng.integers(len(x))]]
        for _ in range(1, self.n_components):
            d2 = np.min((x[:, np.newaxis] - np.array(centers)) ** 2, axis=1)
            total = d2.sum()
            if total > 0:
                centers.append(x[rng.choice(len(x), p=d2 / total)])
            else:
                centers.append(x[rng.integers(len(x))])
        return np.sort(np.array(centers))

    def _em(self, x: np.ndarray, means: np.ndarray) -> Tuple:
        """Run EM from initial means. Returns (ll, weights, means, variances, n_iter, converged)."""
        k = self.n_components
        n = len(x)
        weights = np.full(k, 1.0 / k)
        means = np.array(means, dtype=float)
        variances = np.full(k, max(float(np.var(x)), self.variance_floor))

        best = None
        prev_ll = -np.inf
        converged = False

        for iteration in range(1, self.max_iter + 1):
            # E-step
            with np.errstate(divide='ignore'):
                log_w = np.log(weights)
            log_prob = norm.logpdf(x[:, np.newaxis], loc=means, scale=np.sqrt(variances)) + log_w
            log_norm = logsumexp(log_prob, axis=1)
            ll = float(np.mean(log_norm))

            if best is None or ll > best[0]:
                best = (ll, weights.copy(), means.copy(), variances.copy(), iteration)

            if iteration > 1 and abs(ll - prev_ll) < self.tol:
                converged = True
                break
            prev_ll = ll

            # M-step
            resp = np.exp(log_prob - log_norm[:, np.newaxis])
            nk = resp.sum(axis=0)
            alive = nk > 10 * np.finfo(float).eps
            weights = nk / n
            new_means = np.where(alive, resp.T @ x / np.where(alive, nk, 1.0), means)
            sq = (resp * (x[:, np.newaxis] - new_means) ** 2).sum(axis=0)
            new_vars = np.where(alive, sq / np.where(alive, nk, 1.0), variances)
            means = new_means
            variances = np.maximum(new_vars, self.variance_floor)

        ll, weights, means, variances, n_iter = best
        return ll, weights, means, variances, n_iter, converged


def fit_mixture(samples, n_components: int = 2, tolerance: float = 1e-4,
                max_iter: int = 100, variance_floor: float = 1e-6, n_init: int = 1,
                seed: Optional[int] = None, warn: bool = True) -> MixtureModel:
    """Fit a Gaussian mixture to samples (pure function of its arguments)."""
    estimator = GaussianMixture(
        n_components=n_components,
        tol=tolerance,
        max_iter=max_iter,
        variance_floor=variance_floor,
        n_init=n_init,
        random_state=seed,
    )
    return estimator.fit(samples, warn=warn)


def kl_divergence(p: MixtureModel, q: MixtureModel, n_samples: int = 10000,
                  seed: int = 2456, floor: float = 1e-300) -> float:
    """Monte-Carlo estimate of KL(p || q) from n_samples draws of p."""
    rng = np.random.default_rng(seed)
    x = p.sample(n_samples, rng)
    return float(np.mean(p.log_density(x, floor) - q.log_density(x, floor)))
