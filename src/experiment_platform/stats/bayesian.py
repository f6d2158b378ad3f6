"""
Bayesian comparison of two arms by Monte Carlo.

Rate metrics use a Beta-Binomial conjugate model; continuous metrics use a
Normal approximation to the posterior of the mean. Draws come from an
injected numpy Generator so tests can fix the seed.
"""

from typing import Callable, Optional, Tuple

import numpy as np

from ..schema import ArmStats, BayesianResult

CHUNK_SIZE = 2500


def _draw(
    sampler: Callable[[int], Tuple[np.ndarray, np.ndarray]],
    samples: int,
    checkpoint: Optional[Callable[[], None]],
) -> Tuple[np.ndarray, np.ndarray]:
    """Draw in chunks so a deadline checkpoint can interrupt long runs."""
    control_parts, treatment_parts = [], []
    remaining = samples
    while remaining > 0:
        if checkpoint:
            checkpoint()
        size = min(CHUNK_SIZE, remaining)
        c, t = sampler(size)
        control_parts.append(c)
        treatment_parts.append(t)
        remaining -= size
    return np.concatenate(control_parts), np.concatenate(treatment_parts)


def summarize_draws(
    control_draws: np.ndarray,
    treatment_draws: np.ndarray,
    model: str,
    credible_mass: float = 0.95,
) -> BayesianResult:
    """
    P(treatment > control), expected loss of the implied choice, and the
    credible interval of the sampled difference (treatment - control).
    """
    diff = treatment_draws - control_draws
    probability_better = float(np.mean(treatment_draws > control_draws))
    if probability_better >= 0.5:
        # choosing treatment: lose when control was actually better
        expected_loss = float(np.mean(np.maximum(0.0, control_draws - treatment_draws)))
    else:
        expected_loss = float(np.mean(np.maximum(0.0, treatment_draws - control_draws)))
    tail = (1 - credible_mass) / 2 * 100
    low, high = np.percentile(diff, [tail, 100 - tail])
    return BayesianResult(
        model=model,
        probability_better=probability_better,
        expected_loss=expected_loss,
        credible_low=float(low),
        credible_high=float(high),
        control_posterior_mean=float(np.mean(control_draws)),
        treatment_posterior_mean=float(np.mean(treatment_draws)),
        samples=len(diff),
    )


def beta_binomial_analysis(
    control: ArmStats,
    treatment: ArmStats,
    rng: np.random.Generator,
    samples: int = 10000,
    prior_alpha: float = 1.0,
    prior_beta: float = 1.0,
    checkpoint: Optional[Callable[[], None]] = None,
) -> BayesianResult:
    """
    Beta(successes + a, failures + b) posterior per arm, compared by sampling.

    Args:
        control: Control arm (successes and n set)
        treatment: Treatment arm
        rng: Random source; seed it for reproducible results
        samples: Draws per arm
        prior_alpha: Beta prior alpha (default uniform prior)
        prior_beta: Beta prior beta
        checkpoint: Called between chunks; may raise to abort
    """
    a_c = prior_alpha + control.successes
    b_c = prior_beta + control.n - control.successes
    a_t = prior_alpha + treatment.successes
    b_t = prior_beta + treatment.n - treatment.successes

    def sampler(size: int):
        return rng.beta(a_c, b_c, size), rng.beta(a_t, b_t, size)

    c, t = _draw(sampler, samples, checkpoint)
    return summarize_draws(c, t, model="beta_binomial")


def normal_analysis(
    control: ArmStats,
    treatment: ArmStats,
    rng: np.random.Generator,
    samples: int = 10000,
    checkpoint: Optional[Callable[[], None]] = None,
) -> BayesianResult:
    """
    Normal approximation: posterior of each arm's mean is N(mean, var / n)
    under a flat prior.
    """
    se_c = np.sqrt(control.variance / control.n) if control.n else 0.0
    se_t = np.sqrt(treatment.variance / treatment.n) if treatment.n else 0.0

    def sampler(size: int):
        return rng.normal(control.mean, se_c, size), rng.normal(treatment.mean, se_t, size)

    c, t = _draw(sampler, samples, checkpoint)
    return summarize_draws(c, t, model="normal")
