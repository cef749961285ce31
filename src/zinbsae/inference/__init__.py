"""
Bayesian inference for hierarchical ZINB small-area models.

This module provides the empirical-Bayes inference pipeline:
1. ModelBuilder: backend-neutral model description from current priors
2. GibbsSampler: PyMC lowering, sampling, burn-in/thinning, summaries
3. EmpiricalBayesRefiner: moment-matching loop over refinement passes

**Usage:**
```python
from zinbsae.areas import partition_areas
from zinbsae.inference import (
    ModelBuilder, GibbsSampler, EmpiricalBayesRefiner, HyperparameterState,
)

partition = partition_areas(y, x)
builder = ModelBuilder(partition)
refiner = EmpiricalBayesRefiner(builder, GibbsSampler(), iter_update=3)
outcome = refiner.run(HyperparameterState.initial(partition.nvar))

print(outcome.summary.table())  # Flat posterior statistics, last pass
```

**Key Classes:**
- HyperparameterState: priors carried between passes
- ModelSpec / NodeSpec: declarative model description
- ModelBuilder: ModelSpec assembly (fully-sampled and mixed variants)
- GibbsSampler: sampling adapter around PyMC
- PosteriorSummary / MonitorLayout: name-addressed posterior statistics
- EmpiricalBayesRefiner / RefinementOutcome: refinement loop
"""

from zinbsae.inference.model_builder import (
    HyperparameterState,
    ModelBuilder,
    ModelSpec,
    NodeSpec,
)
from zinbsae.inference.sampler import (
    GibbsSampler,
    MonitorLayout,
    PosteriorSummary,
    STAT_COLUMNS,
    lower_to_pymc,
    retained_positions,
)
from zinbsae.inference.refiner import (
    EmpiricalBayesRefiner,
    RefinementOutcome,
    moment_match_gamma,
    refine_hyperparameters,
)

__all__ = [
    "HyperparameterState",
    "ModelBuilder",
    "ModelSpec",
    "NodeSpec",
    "GibbsSampler",
    "MonitorLayout",
    "PosteriorSummary",
    "STAT_COLUMNS",
    "lower_to_pymc",
    "retained_positions",
    "EmpiricalBayesRefiner",
    "RefinementOutcome",
    "moment_match_gamma",
    "refine_hyperparameters",
]
