"""Shared fixtures: deterministic stand-in for the MCMC engine."""

import numpy as np
import pytest

from zinbsae.areas import partition_areas
from zinbsae.inference.sampler import MonitorLayout, PosteriorSummary

# Offsets of the five quantiles from the mean, in SD units.
Z = np.array([-1.96, -0.674, 0.0, 0.674, 1.96])


def fixed_statistics(name: str, size: int):
    """Deterministic (mean, sd) per element of a monitor."""
    k = np.arange(size, dtype=np.float64)
    if name == "b":
        return 0.1 * (k + 1), np.full(size, 0.5)
    if name == "g":
        return -0.2 * (k + 1), np.full(size, 0.25)
    if name == "mu_eff":
        return 100.0 + k, np.full(size, 2.0)
    if name == "mu_eff_nonsampled":
        return 200.0 + k, np.full(size, 4.0)
    table = {
        "a_var_u": (0.5, 0.1),
        "a_var_v": (0.25, 0.05),
        "tau_pa": (3.0, 1.5),
        "tau_pb": (0.5, 0.25),
        "tau_u": (2.0, 0.5),
        "tau_v": (4.0, 2.0),
    }
    mean, sd = table[name]
    return np.full(size, mean), np.full(size, sd)


def fixed_summary(spec, overrides=None) -> PosteriorSummary:
    """
    Summary with fixed statistics for every monitor of ``spec``.

    ``overrides`` maps a monitor name to (mean array, sd array).
    """
    overrides = overrides or {}
    layout = MonitorLayout.from_spec(spec)
    stats, quantiles = [], []
    for name in layout.names:
        size = layout.sizes[name]
        mean, sd = overrides.get(name, fixed_statistics(name, size))
        mean = np.broadcast_to(np.asarray(mean, dtype=np.float64), (size,))
        sd = np.broadcast_to(np.asarray(sd, dtype=np.float64), (size,))
        stats.append(np.column_stack([mean, sd]))
        quantiles.append(mean[:, None] + sd[:, None] * Z[None, :])
    return PosteriorSummary.from_flat(layout, np.vstack(stats), np.vstack(quantiles), n_draws=500)


class RecordingSampler:
    """
    Sampler stand-in that records calls and returns fixed statistics.

    Area-mean blocks move by CALL_SHIFT per call, so the estimates of a run
    identify the pass they came from. Coefficients and precisions are the
    same on every call.
    """

    CALL_SHIFT = 1000.0

    def __init__(self, overrides=None, fail_on_call=None, error=None):
        self.overrides = overrides
        self.fail_on_call = fail_on_call
        self.error = error
        self.calls = []

    def sample(self, spec, initial_values, iter_mcmc, burn_in, thin=1):
        self.calls.append(
            {
                "spec": spec,
                "initial_values": initial_values,
                "iter_mcmc": iter_mcmc,
                "burn_in": burn_in,
                "thin": thin,
            }
        )
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        overrides = dict(self.overrides or {})
        shift = self.CALL_SHIFT * (len(self.calls) - 1)
        for name, size in spec.monitor_sizes():
            if name in ("mu_eff", "mu_eff_nonsampled") and name not in overrides:
                mean, sd = fixed_statistics(name, size)
                overrides[name] = (mean + shift, sd)
        summary = fixed_summary(spec, overrides)
        self.calls[-1]["summary"] = summary
        return summary


@pytest.fixture
def recording_sampler():
    return RecordingSampler()


@pytest.fixture
def sampled_partition():
    """Five fully sampled areas with two covariates (nvar = 3)."""
    y = np.array([0, 3, 0, 7, 1])
    x = np.array(
        [
            [0.5, 1.0],
            [1.5, 0.2],
            [0.1, 0.3],
            [2.0, 1.1],
            [0.7, 0.9],
        ]
    )
    return partition_areas(y, x)


@pytest.fixture
def mixed_partition():
    """Ten areas, non-sampled at original rows 1, 4 and 8."""
    y = np.array([2, np.nan, 0, 5, np.nan, 1, 0, 3, np.nan, 4])
    x = np.column_stack([np.linspace(0.0, 1.0, 10), np.arange(10) % 3])
    return partition_areas(y, x)
