"""
Estimation front end for ZINB small-area models.

- EstimationConfig: options and their validation
- ZinbHB / zinb_hb: partition → refine → assemble pipeline
- EstimationResult / assemble_results: area, coefficient and variance tables
"""

from zinbsae.estimation.config import EstimationConfig
from zinbsae.estimation.results import EstimationResult, assemble_results
from zinbsae.estimation.zinb_hb import ZinbHB, zinb_hb

__all__ = [
    "EstimationConfig",
    "EstimationResult",
    "assemble_results",
    "ZinbHB",
    "zinb_hb",
]
