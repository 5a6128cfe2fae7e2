"""
ascend
======

Subsetting of single-cell RNA-seq expression datasets held in an EMSet,
an aggregate of expression matrix, cell and gene information, control
genes, cached analysis results and an operation log.

Modules:
--------
- emset: The EMSet value type, accessors and AnnData conversion
- subset: Subsetting by condition, batch, cluster or cell list
- exceptions: Error hierarchy
- utils: Helper functions, configuration and logging

Version: 1.0.0
"""

from . import utils
from . import exceptions
from . import emset
from . import subset

from .emset import EMSet, new_emset
from .subset import subset_condition, subset_batch, subset_cluster, subset_cells
from .exceptions import (
    AscendError,
    ArgumentError,
    PreconditionError,
    SelectionError,
    SlotMismatchError,
)

__all__ = [
    "utils",
    "exceptions",
    "emset",
    "subset",
    "EMSet",
    "new_emset",
    "subset_condition",
    "subset_batch",
    "subset_cluster",
    "subset_cells",
    "AscendError",
    "ArgumentError",
    "PreconditionError",
    "SelectionError",
    "SlotMismatchError",
]

# Version info
__version__ = "1.0.0"
__description__ = "EMSet subsetting for single-cell expression data"
