from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from ascend import new_emset

CELLS = ["c1", "c2", "c3", "c4", "c5"]
GENES = ["MT-CO1", "RPL3", "ACTB", "GAPDH"]


@pytest.fixture
def counts():
    values = np.arange(len(GENES) * len(CELLS)).reshape(len(GENES), len(CELLS))
    return pd.DataFrame(values, index=GENES, columns=CELLS)


@pytest.fixture
def cell_info():
    return pd.DataFrame(
        {
            "batch": ["A", "A", "B", "B", "B"],
            "treated": [True, False, False, True, False],
            "control": [False, False, True, False, False],
            "nothing": [False] * 5,
            "n_genes": [120, 340, 95, 410, 233],
        },
        index=CELLS,
    )


@pytest.fixture
def gene_info():
    return pd.DataFrame(
        {"symbol": ["MT-CO1", "RPL3", "ACTB", "GAPDH"], "length": [1542, 1210, 1852, 1421]},
        index=GENES,
    )


@pytest.fixture
def emset(counts, cell_info, gene_info):
    return new_emset(
        counts,
        cell_info=cell_info,
        gene_info=gene_info,
        controls={"Mt": ["MT-CO1"], "Ribo": ["RPL3"]},
    )


@pytest.fixture
def clustered_emset(emset):
    """EMSet as left behind by external PCA and clustering steps."""
    cell_info = emset.get_cell_info()
    cell_info["cluster"] = [1, 1, 2, 2, 3]
    embedding = pd.DataFrame(
        np.linspace(0, 1, len(CELLS) * 2).reshape(len(CELLS), 2),
        index=CELLS,
        columns=["PC1", "PC2"],
    )
    return replace(
        emset.replace_cell_info(cell_info),
        pca={"embedding": embedding},
        clusters={"n_clusters": 3},
    )
