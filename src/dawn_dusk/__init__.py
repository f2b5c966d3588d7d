"""
Dawn-Dusk - dawn versus dusk acoustic detection analysis for tropical birds.
"""

__version__ = "0.1.0"

# Import main functions/classes here to expose them at package level
from . import effort
from . import phylogeny
from . import predictors
from . import regression
from . import solar_time
from . import taxonomy
from .pipeline import PipelineAudit, prepare_analysis_table, run_pipeline

__all__ = [
    "__version__",
    "effort",
    "phylogeny",
    "predictors",
    "regression",
    "solar_time",
    "taxonomy",
    "PipelineAudit",
    "prepare_analysis_table",
    "run_pipeline",
]
