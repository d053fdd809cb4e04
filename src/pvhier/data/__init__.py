"""Data preparation subpackage.

* :mod:`pvhier.data.loader` – load and sanity-check raw observation tables
* :mod:`pvhier.data.features` – derived covariates and 15-minute grid reindexing
* :mod:`pvhier.data.filtering` – inclusion rules, subsampling, ``ModelDataset``
* :mod:`pvhier.data.explore` – distribution and gap summaries
"""

from .features import (
    collapse_cloud_category,
    derive_features,
    derive_features_by_panel,
    reindex_to_grid,
)
from .filtering import (
    InclusionRules,
    ModelDataset,
    filter_modeling_rows,
    require_defined_normalization,
    subsample_panel,
)
from .loader import load_observations, validate_observations

__all__ = [
    "collapse_cloud_category",
    "derive_features",
    "derive_features_by_panel",
    "reindex_to_grid",
    "InclusionRules",
    "ModelDataset",
    "filter_modeling_rows",
    "require_defined_normalization",
    "subsample_panel",
    "load_observations",
    "validate_observations",
]
