"""
Evolutionary models for sequence analysis.

- **Substitution models**: JC69, K80, HKY, TN93, GTR (nucleotides) and WAG,
  HIVB, BLOSUM (amino acids), described by a closed registry of model families
- **Gap models**: gaps as missing data, or the Poisson Indel Process (PIP)
"""

from phyloml.models.substitution import (
    MODEL_REGISTRY,
    FrequencyOptimisation,
    ModelSpec,
    SubstitutionModel,
    SubstModelId,
    get_model_spec,
)
from phyloml.models.indel import PIP, GapHandling, GapModel, MissingData

__all__ = [
    "MODEL_REGISTRY",
    "FrequencyOptimisation",
    "ModelSpec",
    "SubstitutionModel",
    "SubstModelId",
    "get_model_spec",
    "PIP",
    "GapHandling",
    "GapModel",
    "MissingData",
]
