"""
Small-area estimation under a Hierarchical Bayesian Zero-Inflated Negative
Binomial model, with empirical-Bayes refinement of the priors.

**Usage:**
```python
import pandas as pd
from zinbsae import zinb_hb

result = zinb_hb("y ~ x1 + x2", data, iter_update=3, iter_mcmc=1100, burn_in=600)

result.estimates                # Small-area mean estimates
result.coefficients             # b[k] (log model), g[k] (logit model)
result.random_effect_variances  # a.var.u, a.var.v
```
"""

from zinbsae.areas import AreaPartition, design_from_formula, partition_areas
from zinbsae.estimation import (
    EstimationConfig,
    EstimationResult,
    ZinbHB,
    assemble_results,
    zinb_hb,
)
from zinbsae.exceptions import ConfigError, InvalidInputError, SamplingError, ZinbSAEError

__version__ = "0.1.0"

__all__ = [
    "AreaPartition",
    "design_from_formula",
    "partition_areas",
    "EstimationConfig",
    "EstimationResult",
    "ZinbHB",
    "assemble_results",
    "zinb_hb",
    "ConfigError",
    "InvalidInputError",
    "SamplingError",
    "ZinbSAEError",
]
