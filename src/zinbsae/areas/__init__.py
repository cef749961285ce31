"""
Area handling for small-area estimation.

- AreaPartition: sampled / non-sampled split with the original order kept
- partition_areas: validation and splitting of raw outcome + covariates
- design_from_formula: patsy front end that keeps non-sampled rows
"""

from zinbsae.areas.partition import AreaPartition, partition_areas, design_from_formula

__all__ = [
    "AreaPartition",
    "partition_areas",
    "design_from_formula",
]
