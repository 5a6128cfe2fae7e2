"""
Subsetting Module
=================

This module extracts reduced cell populations from an EMSet:
- subset_condition: cells flagged True in any of the given boolean columns
- subset_batch: cells from the given batch(es)
- subset_cluster: cells from the given cluster(s)
- subset_cells: cells from an explicit list of barcodes

Every function returns a new EMSet. The input is left untouched, the
expression matrix and metadata are re-synchronised, cached PCA and
clustering results are cleared (they describe the old cell population) and
one record is appended to the log. If you wish to recluster the subset, run
PCA again first.

"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .emset import EMSet
from .exceptions import ArgumentError, PreconditionError, SelectionError
from .utils import get_logger


def _as_list(values: Any) -> List[Any]:
    """Wrap a single label into a list; None becomes an empty list."""
    if values is None:
        return []
    if isinstance(values, (str, bytes)) or np.isscalar(values):
        return [values]
    return list(values)


def _is_boolean(column: pd.Series) -> bool:
    """True for bool / nullable boolean columns and object columns of bools (NaN allowed)."""
    if pd.api.types.is_bool_dtype(column):
        return True
    return (
        column.dtype == object
        and pd.api.types.infer_dtype(column, skipna=True) == "boolean"
    )


def _finish_subset(
    emset: EMSet,
    keep: List[Any],
    record: Dict[str, Any],
    logger: logging.Logger,
    cell_info: Optional[pd.DataFrame] = None
) -> EMSet:
    """
    Slice `emset` to the cells in `keep` (in that order) and tidy up.

    If `cell_info` is given it replaces the cell information before slots
    are synchronised.
    """
    n_cells_before = emset.n_cells

    expression_matrix = emset.get_expression_matrix(format="data.frame")
    subset_emset = emset.replace_expression_matrix(expression_matrix.loc[:, keep])

    if cell_info is not None:
        subset_emset = subset_emset.replace_cell_info(cell_info)

    subset_emset = (
        subset_emset
        .sync_slots()
        .clear_analysis()
        .with_log_entry(record)
    )

    n_cells_after = subset_emset.n_cells
    logger.info(
        f"Cells retained: {n_cells_after:,} / {n_cells_before:,} "
        f"({n_cells_after/n_cells_before*100:.1f}%)"
    )
    if emset.pca or emset.clusters:
        logger.info("PCA and clustering results cleared. Re-run PCA before reclustering.")

    return subset_emset


def subset_condition(
    emset: EMSet,
    conditions: Any,
    logger: Optional[logging.Logger] = None
) -> EMSet:
    """
    Subset cells flagged True in at least one of the condition columns.

    Conditions are combined with a logical OR: a cell is kept if any of the
    selected columns is True for it. Cells are ordered by the first condition
    that selected them. The cell information of the result only keeps the
    batch column and the selected condition columns.

    Parameters
    ----------
    emset : EMSet
        Input EMSet
    conditions : str or list of str
        Names of boolean cell information columns
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    EMSet
        EMSet containing only the selected cells

    Raises
    ------
    SelectionError
        If any of the conditions is not a column of the cell information, or
        no cell is True in any of them
    ArgumentError
        If a selected column is not boolean. Object columns holding only
        bools and missing values are accepted; missing counts as False.

    Examples
    --------
    >>> treated = subset_condition(emset, ["treated", "control"], logger=logger)
    >>> print(treated.n_cells)
    """
    if logger is None:
        logger = get_logger()

    conditions = _as_list(conditions)
    cell_info = emset.get_cell_info()

    present = [c for c in conditions if c in cell_info.columns]
    if not present:
        logger.error(f"None of the conditions {conditions} found in cell information")
        raise SelectionError(
            f"None of your selected conditions are present in the dataset. "
            f"Available columns: {list(cell_info.columns)}"
        )

    missing = [c for c in conditions if c not in cell_info.columns]
    if missing:
        logger.error(f"Conditions not found in cell information: {missing}")
        raise SelectionError(
            f"Selected conditions are not columns of the cell information: {missing}. "
            f"Available columns: {list(cell_info.columns)}"
        )

    for condition in present:
        if not _is_boolean(cell_info[condition]):
            raise ArgumentError(
                f"Condition column '{condition}' is not boolean "
                f"(dtype: {cell_info[condition].dtype})"
            )

    logger.info(f"Subsetting {emset.n_cells:,} cells by condition(s): {present}")

    # Union across conditions, first occurrence wins
    keep = []
    for condition in present:
        mask = cell_info[condition].fillna(False).astype(bool).to_numpy()
        selected = cell_info.index[mask].tolist()
        logger.info(f"  {condition}: {len(selected):,} cells")
        keep.extend(selected)
    keep = list(dict.fromkeys(keep))

    if not keep:
        logger.error("No cells are True in any of the selected conditions")
        raise SelectionError(
            f"No cells are flagged in any of the selected conditions: {present}"
        )

    columns = [emset.batch_column] if emset.batch_column in cell_info.columns else []
    columns += [c for c in present if c not in columns]
    subset_cell_info = cell_info.loc[keep, columns]

    record = {"SubsetByCondition": True, "SubsettedConditions": list(conditions)}
    return _finish_subset(emset, keep, record, logger, cell_info=subset_cell_info)


def subset_batch(
    emset: EMSet,
    batches: Any,
    logger: Optional[logging.Logger] = None
) -> EMSet:
    """
    Subset specific batch(es) from an EMSet.

    The expression values are kept as they are; if the data was normalised
    it stays normalised. To recluster the subset, run PCA again.

    Parameters
    ----------
    emset : EMSet
        Input EMSet
    batches : label or list of labels
        Batch label(s) to keep
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    EMSet
        EMSet containing only cells from the selected batches

    Raises
    ------
    SelectionError
        If none of the batches are present in the dataset

    Examples
    --------
    >>> batch_a = subset_batch(emset, ["A"], logger=logger)
    >>> print(batch_a.log[-1])
    {'SubsetByBatches': True, 'SubsettedBatches': ['A']}
    """
    if logger is None:
        logger = get_logger()

    batches = _as_list(batches)
    cell_info = emset.get_cell_info()

    mask = cell_info[emset.batch_column].isin(batches).to_numpy()
    if not mask.any():
        logger.error(f"None of the batches {batches} found in '{emset.batch_column}'")
        raise SelectionError(
            f"None of your selected batches are present in the dataset. "
            f"Available batches: {emset.batches}"
        )

    logger.info(f"Subsetting {emset.n_cells:,} cells by batch(es): {batches}")

    keep = cell_info.index[mask].tolist()

    record = {"SubsetByBatches": True, "SubsettedBatches": list(batches)}
    return _finish_subset(emset, keep, record, logger)


def subset_cluster(
    emset: EMSet,
    clusters: Any = None,
    logger: Optional[logging.Logger] = None
) -> EMSet:
    """
    Subset an EMSet by cluster.

    The EMSet must have been clustered first, i.e. its cell information
    must contain the cluster column.

    Parameters
    ----------
    emset : EMSet
        Input EMSet
    clusters : label or list of labels
        Cluster label(s) to keep
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    EMSet
        EMSet containing only cells from the selected clusters

    Raises
    ------
    ArgumentError
        If no clusters are specified
    PreconditionError
        If the EMSet has not been clustered
    SelectionError
        If none of the clusters are present in the dataset

    Examples
    --------
    >>> cluster_1 = subset_cluster(emset, [1], logger=logger)
    """
    if logger is None:
        logger = get_logger()

    clusters = _as_list(clusters)

    if not clusters:
        raise ArgumentError(
            "Please specify which cluster(s) you would like to extract from this EMSet."
        )

    if not emset.has_clusters:
        logger.error(f"Cluster column '{emset.cluster_column}' not found in cell information")
        raise PreconditionError("Please cluster your data before using this function.")

    cell_info = emset.get_cell_info()

    mask = cell_info[emset.cluster_column].isin(clusters).to_numpy()
    if not mask.any():
        logger.error(f"None of the clusters {clusters} found in '{emset.cluster_column}'")
        raise SelectionError(
            "None of your selected clusters are present in the dataset."
        )

    logger.info(f"Subsetting {emset.n_cells:,} cells by cluster(s): {clusters}")

    keep = cell_info.index[mask].tolist()

    record = {"SubsetByCluster": True, "SubsettedClusters": list(clusters)}
    return _finish_subset(emset, keep, record, logger)


def subset_cells(
    emset: EMSet,
    cell_barcodes: Any,
    logger: Optional[logging.Logger] = None
) -> EMSet:
    """
    Subset the cells in the supplied list from an EMSet.

    Barcodes that are not in the expression matrix are skipped. Repeated
    barcodes are kept once, at their first position.

    Parameters
    ----------
    emset : EMSet
        Input EMSet
    cell_barcodes : list
        Cell barcodes to keep, in the order they should appear
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    EMSet
        EMSet containing only the listed cells that were present

    Raises
    ------
    SelectionError
        If none of the listed cells are present in the EMSet

    Examples
    --------
    >>> subset = subset_cells(emset, ["AAACCTG-1", "AAACGGG-1"], logger=logger)
    """
    if logger is None:
        logger = get_logger()

    cell_barcodes = _as_list(cell_barcodes)
    in_matrix = set(emset.expression_matrix.columns)

    present = list(dict.fromkeys(b for b in cell_barcodes if b in in_matrix))

    if not present:
        logger.error("None of the listed cells are present in the EMSet")
        raise SelectionError("All listed cells were not present in the EMSet.")

    n_absent = sum(1 for b in cell_barcodes if b not in in_matrix)
    if n_absent > 0:
        logger.info(f"{n_absent:,} listed barcode(s) not in the EMSet were skipped")

    logger.info(f"Subsetting {emset.n_cells:,} cells to {len(present):,} listed cells")

    record = {"SubsetByCells": True, "SubsettedCells": present}
    return _finish_subset(emset, present, record, logger)
