"""
EMSet Module
============

This module defines the EMSet, the aggregate value that bundles everything
known about a single-cell expression dataset:
- Expression matrix (genes as rows, cell barcodes as columns)
- Cell information (one row per cell barcode, incl. batch and cluster labels)
- Gene information (one row per gene identifier)
- Control gene lists (e.g. mitochondrial, ribosomal)
- Cached PCA and clustering results
- An append-only log of the operations applied to the dataset

An EMSet is never modified in place. Every accessor returns a copy and every
replacement returns a new EMSet, so a caller can always keep the original.

"""

import copy
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse

from .exceptions import ArgumentError, SlotMismatchError
from .utils import get_logger, load_config


CELL_INDEX_NAME = "cell_barcode"
GENE_INDEX_NAME = "gene_id"

MATRIX_FORMATS = ("data.frame", "matrix", "sparse")

# Keys used in AnnData.uns
LOG_KEY = "ascend_log"
COLUMNS_KEY = "ascend_columns"


def _to_builtin(value: Any) -> Any:
    """JSON fallback for numpy scalars and arrays found in log records."""
    if isinstance(value, np.generic):
        return value.item()
    if hasattr(value, "tolist"):
        return value.tolist()
    return str(value)


def _check_unique(index: pd.Index, what: str) -> None:
    if index.has_duplicates:
        duplicated = index[index.duplicated()].unique().tolist()
        raise ArgumentError(
            f"Duplicated {what}: {duplicated[:5]}"
            f"{' ...' if len(duplicated) > 5 else ''}"
        )


def _index_by_identifiers(
    table: pd.DataFrame,
    identifiers: pd.Index,
    index_name: str
) -> pd.DataFrame:
    """
    Return `table` indexed by `identifiers`.

    Tables keyed by their index are used as-is. A table whose first column
    holds the identifiers is re-indexed by that column.
    """
    table = table.copy()

    if not identifiers.isin(table.index).all() and table.shape[1] > 0:
        first_column = table.columns[0]
        if identifiers.isin(table[first_column]).all():
            table = table.set_index(first_column)

    return table.rename_axis(index_name)


def _drop_unused_categories(table: pd.DataFrame) -> pd.DataFrame:
    for column in table.columns:
        if isinstance(table[column].dtype, pd.CategoricalDtype):
            table[column] = table[column].cat.remove_unused_categories()
    return table


@dataclass(frozen=True, eq=False)
class EMSet:
    """
    Expression matrix set.

    Attributes
    ----------
    expression_matrix : pd.DataFrame
        Expression values, gene identifiers as rows and cell barcodes as columns
    cell_info : pd.DataFrame
        Cell metadata indexed by cell barcode
    gene_info : pd.DataFrame
        Gene metadata indexed by gene identifier
    controls : dict
        Control group name -> list of gene identifiers
    pca : dict
        Cached PCA results, empty until PCA has been run
    clusters : dict
        Cached clustering results, empty until clustering has been run
    log : tuple of dict
        Records of the operations applied to this dataset, oldest first
    batch_column : str
        Cell metadata column holding batch labels
    cluster_column : str
        Cell metadata column holding cluster labels
    """
    expression_matrix: pd.DataFrame
    cell_info: pd.DataFrame
    gene_info: pd.DataFrame
    controls: Dict[str, List[str]] = field(default_factory=dict)
    pca: Dict[str, Any] = field(default_factory=dict)
    clusters: Dict[str, Any] = field(default_factory=dict)
    log: Tuple[Dict[str, Any], ...] = ()
    batch_column: str = "batch"
    cluster_column: str = "cluster"

    def __repr__(self) -> str:
        return (
            f"EMSet({self.n_genes} genes x {self.n_cells} cells, "
            f"batches={self.batches}, "
            f"pca={'yes' if self.pca else 'no'}, "
            f"clustered={'yes' if self.has_clusters else 'no'}, "
            f"log_entries={len(self.log)})"
        )

    @property
    def n_cells(self) -> int:
        return self.expression_matrix.shape[1]

    @property
    def n_genes(self) -> int:
        return self.expression_matrix.shape[0]

    @property
    def cell_barcodes(self) -> List[Any]:
        return self.expression_matrix.columns.tolist()

    @property
    def gene_ids(self) -> List[Any]:
        return self.expression_matrix.index.tolist()

    @property
    def batches(self) -> List[Any]:
        if self.batch_column not in self.cell_info.columns:
            return []
        return self.cell_info[self.batch_column].drop_duplicates().tolist()

    @property
    def has_clusters(self) -> bool:
        """True once a clustering step has written the cluster column."""
        return self.cluster_column in self.cell_info.columns

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_expression_matrix(self, format: str = "data.frame") -> Any:
        """
        Return a copy of the expression matrix.

        Parameters
        ----------
        format : str, default "data.frame"
            "data.frame" for a labelled pd.DataFrame, "matrix" for a dense
            np.ndarray, "sparse" for a scipy.sparse.csc_matrix.
            Rows are genes and columns are cells in every format.

        Returns
        -------
        pd.DataFrame, np.ndarray or scipy.sparse.csc_matrix

        Raises
        ------
        ArgumentError
            If `format` is not one of the supported formats
        """
        if format == "data.frame":
            return self.expression_matrix.copy()
        if format == "matrix":
            return self.expression_matrix.to_numpy(copy=True)
        if format == "sparse":
            return sparse.csc_matrix(self.expression_matrix.to_numpy())

        raise ArgumentError(
            f"Unknown matrix format '{format}'. "
            f"Choose one of: {', '.join(MATRIX_FORMATS)}"
        )

    def get_cell_info(self) -> pd.DataFrame:
        return self.cell_info.copy()

    def get_gene_info(self) -> pd.DataFrame:
        return self.gene_info.copy()

    def get_controls(self) -> Dict[str, List[str]]:
        return {name: list(genes) for name, genes in self.controls.items()}

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    def _derive(self, **changes: Any) -> "EMSet":
        """New EMSet with `changes` applied and a log it does not share with `self`."""
        changes.setdefault("log", copy.deepcopy(self.log))
        return replace(self, **changes)

    def replace_expression_matrix(self, new_matrix: pd.DataFrame) -> "EMSet":
        """
        Return a copy with the expression matrix replaced.

        Metadata is left untouched; call `sync_slots` afterwards to bring
        cell and gene information back in line with the new matrix.
        """
        if not isinstance(new_matrix, pd.DataFrame):
            raise ArgumentError(
                "Expression matrix must be a pandas DataFrame with genes as "
                "rows and cell barcodes as columns"
            )
        _check_unique(new_matrix.index, "gene identifiers")
        _check_unique(new_matrix.columns, "cell barcodes")

        return self._derive(expression_matrix=new_matrix.copy())

    def replace_cell_info(self, new_cell_info: pd.DataFrame) -> "EMSet":
        """Return a copy with the cell information replaced (no re-sync)."""
        if not isinstance(new_cell_info, pd.DataFrame):
            raise ArgumentError("Cell information must be a pandas DataFrame")
        _check_unique(new_cell_info.index, "cell barcodes")

        return self._derive(cell_info=new_cell_info.copy().rename_axis(CELL_INDEX_NAME))

    def with_log_entry(self, record: Mapping[str, Any]) -> "EMSet":
        """Return a copy with `record` appended to the operation log."""
        return self._derive(log=copy.deepcopy(self.log) + (copy.deepcopy(dict(record)),))

    def clear_analysis(self) -> "EMSet":
        """Return a copy with cached PCA and clustering results removed."""
        return self._derive(pca={}, clusters={})

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def sync_slots(self) -> "EMSet":
        """
        Bring every slot in line with the expression matrix.

        Cell information is narrowed and reordered to the matrix columns,
        gene information to the matrix rows, and control lists are narrowed
        to genes still present. Categories no longer used by any cell or
        gene are dropped from categorical metadata columns.

        Returns
        -------
        EMSet
            New EMSet satisfying `check_slots()`

        Raises
        ------
        SlotMismatchError
            If a cell or gene in the matrix has no metadata row
        """
        matrix = self.expression_matrix

        missing_cells = matrix.columns.difference(self.cell_info.index)
        if len(missing_cells) > 0:
            raise SlotMismatchError(
                f"{len(missing_cells)} cells in the expression matrix have no "
                f"cell information, e.g. {missing_cells[:5].tolist()}"
            )

        missing_genes = matrix.index.difference(self.gene_info.index)
        if len(missing_genes) > 0:
            raise SlotMismatchError(
                f"{len(missing_genes)} genes in the expression matrix have no "
                f"gene information, e.g. {missing_genes[:5].tolist()}"
            )

        # rename_axis gives fresh index objects; the matrix axes stay unnamed
        cell_info = _drop_unused_categories(
            self.cell_info.reindex(matrix.columns).rename_axis(CELL_INDEX_NAME)
        )
        gene_info = _drop_unused_categories(
            self.gene_info.reindex(matrix.index).rename_axis(GENE_INDEX_NAME)
        )

        present_genes = set(matrix.index)
        controls = {
            name: [gene for gene in genes if gene in present_genes]
            for name, genes in self.controls.items()
        }

        return self._derive(
            cell_info=cell_info,
            gene_info=gene_info,
            controls=controls
        )

    def check_slots(self) -> bool:
        """True if matrix axes and metadata indices hold the same identifiers in the same order."""
        return (
            self.expression_matrix.columns.equals(self.cell_info.index)
            and self.expression_matrix.index.equals(self.gene_info.index)
        )

    # ------------------------------------------------------------------
    # AnnData conversion
    # ------------------------------------------------------------------

    def to_anndata(self) -> ad.AnnData:
        """
        Convert to an AnnData object (cells x genes).

        The PCA embedding is stored in `.obsm['X_pca']`, other PCA results in
        `.uns['pca']`, clustering results in `.uns['clusters']`, controls in
        `.uns['controls']` and the operation log as JSON in
        `.uns['ascend_log']`.

        Returns
        -------
        AnnData
        """
        adata = ad.AnnData(
            X=self.expression_matrix.T.to_numpy(),
            obs=self.cell_info.copy(),
            var=self.gene_info.copy()
        )

        pca = dict(self.pca)
        if "embedding" in pca:
            adata.obsm["X_pca"] = np.asarray(pca.pop("embedding"))
        if pca:
            adata.uns["pca"] = pca

        if self.clusters:
            adata.uns["clusters"] = dict(self.clusters)

        # Empty lists have no dtype h5py can store
        controls = {
            name: np.asarray(genes, dtype=str)
            for name, genes in self.controls.items() if len(genes) > 0
        }
        if controls:
            adata.uns["controls"] = controls

        adata.uns[COLUMNS_KEY] = {
            "batch_column": self.batch_column,
            "cluster_column": self.cluster_column,
        }
        adata.uns[LOG_KEY] = json.dumps(list(self.log), default=_to_builtin)

        return adata

    @classmethod
    def from_anndata(
        cls,
        adata: ad.AnnData,
        batch_column: Optional[str] = None,
        cluster_column: Optional[str] = None
    ) -> "EMSet":
        """
        Build an EMSet from an AnnData object (cells x genes).

        Parameters
        ----------
        adata : AnnData
            Input AnnData with expression values in `.X`
        batch_column : str, optional
            Column of `.obs` holding batch labels. If None, uses the column
            recorded by `to_anndata`, else the configured default.
        cluster_column : str, optional
            Column of `.obs` holding cluster labels, resolved as above

        Returns
        -------
        EMSet

        Raises
        ------
        ArgumentError
            If `.X` is empty, cell barcodes / gene identifiers are duplicated,
            or the batch column is not in `.obs`

        Examples
        --------
        >>> adata = ad.read_h5ad("data/raw/dataset123.h5ad")
        >>> emset = EMSet.from_anndata(adata, batch_column="sample")
        """
        if adata.X is None:
            raise ArgumentError("AnnData object has no expression values in .X")

        _check_unique(adata.obs_names, "cell barcodes")
        _check_unique(adata.var_names, "gene identifiers")

        defaults = load_config()['emset']
        recorded = adata.uns.get(COLUMNS_KEY, {})
        if batch_column is None:
            batch_column = recorded.get("batch_column", defaults['batch_column'])
        if cluster_column is None:
            cluster_column = recorded.get("cluster_column", defaults['cluster_column'])

        if batch_column not in adata.obs.columns:
            raise ArgumentError(
                f"Batch column '{batch_column}' not found in adata.obs. "
                f"Available columns: {list(adata.obs.columns)}"
            )

        values = adata.X.toarray() if sparse.issparse(adata.X) else np.asarray(adata.X)
        expression_matrix = pd.DataFrame(
            values.T,
            index=adata.var_names.copy(),
            columns=adata.obs_names.copy()
        )

        pca = {}
        if "X_pca" in adata.obsm:
            embedding = np.asarray(adata.obsm["X_pca"])
            pca["embedding"] = pd.DataFrame(
                embedding,
                index=adata.obs_names.copy(),
                columns=[f"PC{i + 1}" for i in range(embedding.shape[1])]
            )
        pca.update(dict(adata.uns.get("pca", {})))

        controls = {
            name: [str(gene) for gene in genes]
            for name, genes in adata.uns.get("controls", {}).items()
        }

        log_json = adata.uns.get(LOG_KEY)
        log = tuple(json.loads(str(log_json))) if log_json is not None else ()

        emset = cls(
            expression_matrix=expression_matrix,
            cell_info=adata.obs.copy(),
            gene_info=adata.var.copy(),
            controls=controls,
            pca=pca,
            clusters=dict(adata.uns.get("clusters", {})),
            log=log,
            batch_column=batch_column,
            cluster_column=cluster_column
        )

        return emset.sync_slots()


def new_emset(
    expression_matrix: pd.DataFrame,
    cell_info: Optional[pd.DataFrame] = None,
    gene_info: Optional[pd.DataFrame] = None,
    controls: Optional[Mapping[str, Sequence[str]]] = None,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None
) -> EMSet:
    """
    Create a validated EMSet.

    Parameters
    ----------
    expression_matrix : pd.DataFrame
        Expression values with gene identifiers as rows and cell barcodes
        as columns
    cell_info : pd.DataFrame, optional
        Cell metadata, indexed by cell barcode or with barcodes in the first
        column. If None, every cell is assigned to the default batch.
    gene_info : pd.DataFrame, optional
        Gene metadata, indexed by gene identifier or with identifiers in the
        first column. If None, an empty table keyed by the matrix rows is used.
    controls : dict, optional
        Control group name -> gene identifiers
    config : dict, optional
        Configuration from `load_config`. If None, uses the defaults.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    EMSet

    Raises
    ------
    ArgumentError
        If the matrix is not a DataFrame, has duplicated identifiers, or the
        cell information has no batch column
    SlotMismatchError
        If a matrix cell or gene is missing from the supplied metadata

    Examples
    --------
    >>> emset = new_emset(counts, cell_info=cell_info, controls={"Mt": mt_genes})
    >>> print(emset)
    """
    if logger is None:
        logger = get_logger()

    if config is None:
        config = load_config()

    emset_config = config['emset']
    batch_column = emset_config['batch_column']

    if not isinstance(expression_matrix, pd.DataFrame):
        raise ArgumentError(
            "Expression matrix must be a pandas DataFrame with genes as "
            "rows and cell barcodes as columns"
        )
    _check_unique(expression_matrix.index, "gene identifiers")
    _check_unique(expression_matrix.columns, "cell barcodes")

    if cell_info is None:
        cell_info = pd.DataFrame(
            {batch_column: emset_config['default_batch']},
            index=expression_matrix.columns.copy()
        )
        logger.info(
            f"No cell information supplied. Assigning all cells to batch "
            f"{emset_config['default_batch']}"
        )
    else:
        cell_info = _index_by_identifiers(
            cell_info, expression_matrix.columns, CELL_INDEX_NAME
        )

    if batch_column not in cell_info.columns:
        raise ArgumentError(
            f"Batch column '{batch_column}' not found in cell information. "
            f"Available columns: {list(cell_info.columns)}"
        )

    if gene_info is None:
        gene_info = pd.DataFrame(index=expression_matrix.index.copy())
    else:
        gene_info = _index_by_identifiers(
            gene_info, expression_matrix.index, GENE_INDEX_NAME
        )

    _check_unique(cell_info.index, "cell barcodes in cell information")
    _check_unique(gene_info.index, "gene identifiers in gene information")

    emset = EMSet(
        expression_matrix=expression_matrix.copy(),
        cell_info=cell_info,
        gene_info=gene_info,
        controls={name: list(genes) for name, genes in (controls or {}).items()},
        batch_column=batch_column,
        cluster_column=emset_config['cluster_column']
    ).sync_slots()

    logger.info(
        f"Created EMSet: {emset.n_genes:,} genes x {emset.n_cells:,} cells "
        f"in {len(emset.batches)} batch(es)"
    )

    return emset
