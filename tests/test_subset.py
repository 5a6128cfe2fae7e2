"""Tests for EMSet subsetting (ascend/subset.py)."""

import logging
from dataclasses import replace

import pandas as pd
import pytest

from ascend import (
    ArgumentError,
    PreconditionError,
    SelectionError,
    subset_batch,
    subset_cells,
    subset_cluster,
    subset_condition,
)

# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------

OPERATIONS = [
    (subset_batch, ["B"]),
    (subset_cluster, [1, 3]),
    (subset_condition, ["treated", "control"]),
    (subset_cells, ["c5", "c2"]),
]


@pytest.mark.parametrize("operation, selector", OPERATIONS)
class TestSharedContract:
    def test_slots_in_sync(self, clustered_emset, operation, selector):
        result = operation(clustered_emset, selector)
        assert result.check_slots()
        assert result.expression_matrix.columns.tolist() == result.cell_info.index.tolist()

    def test_clears_pca_and_clusters(self, clustered_emset, operation, selector):
        assert clustered_emset.pca and clustered_emset.clusters
        result = operation(clustered_emset, selector)
        assert result.pca == {}
        assert result.clusters == {}

    def test_appends_one_log_entry(self, clustered_emset, operation, selector):
        result = operation(clustered_emset, selector)
        assert len(result.log) == len(clustered_emset.log) + 1
        assert result.log[:-1] == clustered_emset.log

    def test_input_untouched(self, clustered_emset, operation, selector):
        matrix_before = clustered_emset.get_expression_matrix()
        cell_info_before = clustered_emset.get_cell_info()

        operation(clustered_emset, selector)

        pd.testing.assert_frame_equal(clustered_emset.expression_matrix, matrix_before)
        pd.testing.assert_frame_equal(clustered_emset.cell_info, cell_info_before)
        assert clustered_emset.clusters == {"n_clusters": 3}
        assert clustered_emset.log == ()

    def test_genes_untouched(self, clustered_emset, operation, selector):
        result = operation(clustered_emset, selector)
        assert result.gene_ids == clustered_emset.gene_ids
        pd.testing.assert_frame_equal(result.gene_info, clustered_emset.gene_info)
        assert result.get_controls() == clustered_emset.get_controls()


# ---------------------------------------------------------------------------
# Tests: subset_batch
# ---------------------------------------------------------------------------


class TestSubsetBatch:
    def test_single_batch(self, emset):
        result = subset_batch(emset, ["A"])

        assert result.cell_barcodes == ["c1", "c2"]
        assert result.cell_info["batch"].tolist() == ["A", "A"]
        assert result.pca == {}
        assert result.clusters == {}
        assert result.log == ({"SubsetByBatches": True, "SubsettedBatches": ["A"]},)

    def test_matrix_values_follow_cells(self, emset):
        result = subset_batch(emset, ["B"])
        expected = emset.expression_matrix[["c3", "c4", "c5"]]
        pd.testing.assert_frame_equal(result.expression_matrix, expected)

    def test_all_batches_keep_population(self, emset):
        result = subset_batch(emset, ["B", "A"])

        assert result.cell_barcodes == emset.cell_barcodes
        pd.testing.assert_frame_equal(result.expression_matrix, emset.expression_matrix)
        pd.testing.assert_frame_equal(result.cell_info, emset.cell_info)

    def test_scalar_selector(self, emset):
        result = subset_batch(emset, "A")
        assert result.cell_barcodes == ["c1", "c2"]
        assert result.log[-1]["SubsettedBatches"] == ["A"]

    def test_partially_present(self, emset):
        result = subset_batch(emset, ["A", "Z"])
        assert result.cell_barcodes == ["c1", "c2"]

    def test_no_match(self, emset):
        with pytest.raises(SelectionError):
            subset_batch(emset, ["Z"])

    def test_empty_selector(self, emset):
        with pytest.raises(SelectionError):
            subset_batch(emset, [])

    def test_keeps_all_columns(self, emset):
        result = subset_batch(emset, ["A"])
        assert result.cell_info.columns.tolist() == emset.cell_info.columns.tolist()

    def test_drops_unused_categories(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["batch"] = cell_info["batch"].astype("category")
        categorical = emset.replace_cell_info(cell_info)

        result = subset_batch(categorical, ["B"])

        assert result.cell_info["batch"].cat.categories.tolist() == ["B"]


# ---------------------------------------------------------------------------
# Tests: subset_condition
# ---------------------------------------------------------------------------


class TestSubsetCondition:
    def test_union_not_intersection(self, emset):
        result = subset_condition(emset, ["treated", "control"])

        # c3 is only flagged as control
        assert "c3" in result.cell_barcodes
        assert sorted(result.cell_barcodes) == ["c1", "c3", "c4"]

    def test_order_follows_conditions(self, emset):
        result = subset_condition(emset, ["treated", "control"])
        assert result.cell_barcodes == ["c1", "c4", "c3"]

        result = subset_condition(emset, ["control", "treated"])
        assert result.cell_barcodes == ["c3", "c1", "c4"]

    def test_overlapping_conditions_deduplicated(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["responder"] = [True, True, False, False, False]
        extended = emset.replace_cell_info(cell_info)

        result = subset_condition(extended, ["treated", "responder"])

        assert result.cell_barcodes == ["c1", "c4", "c2"]
        assert result.expression_matrix.shape == (4, 3)

    def test_narrows_metadata_columns(self, emset):
        result = subset_condition(emset, ["control", "treated"])

        assert result.cell_info.columns.tolist() == ["batch", "control", "treated"]
        assert result.cell_info.index.name == "cell_barcode"

    def test_metadata_rows_follow_cells(self, emset):
        result = subset_condition(emset, ["treated", "control"])

        assert result.cell_info.loc["c3", "control"]
        assert not result.cell_info.loc["c3", "treated"]
        assert result.cell_info.loc["c4", "batch"] == "B"

    def test_log_entry(self, emset):
        result = subset_condition(emset, ["treated", "control"])
        assert result.log[-1] == {
            "SubsetByCondition": True,
            "SubsettedConditions": ["treated", "control"],
        }

    def test_partially_missing_condition(self, emset, caplog):
        with caplog.at_level(logging.ERROR):
            with pytest.raises(SelectionError, match="typo_column"):
                subset_condition(emset, ["treated", "typo_column"])

        assert "typo_column" in caplog.text
        assert emset.log == ()

    def test_no_condition_present(self, emset):
        with pytest.raises(SelectionError):
            subset_condition(emset, ["not_a_column"])

    def test_no_cell_flagged(self, emset):
        with pytest.raises(SelectionError):
            subset_condition(emset, ["nothing"])

    def test_non_boolean_column(self, emset):
        with pytest.raises(ArgumentError):
            subset_condition(emset, ["n_genes"])

    def test_object_boolean_column(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["flag"] = pd.Series([True, None, False, float("nan"), True], index=cell_info.index, dtype=object)
        extended = emset.replace_cell_info(cell_info)

        result = subset_condition(extended, ["flag"])

        assert result.cell_barcodes == ["c1", "c5"]

    def test_object_column_of_strings(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["flag"] = ["yes", "no", "yes", "no", "no"]
        extended = emset.replace_cell_info(cell_info)

        with pytest.raises(ArgumentError):
            subset_condition(extended, ["flag"])

    def test_nullable_boolean_column(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["flag"] = pd.array([True, None, False, None, True], dtype="boolean")
        extended = emset.replace_cell_info(cell_info)

        result = subset_condition(extended, "flag")

        assert result.cell_barcodes == ["c1", "c5"]


# ---------------------------------------------------------------------------
# Tests: subset_cluster
# ---------------------------------------------------------------------------


class TestSubsetCluster:
    def test_selected_clusters(self, clustered_emset):
        result = subset_cluster(clustered_emset, [2, 3])

        assert result.cell_barcodes == ["c3", "c4", "c5"]
        assert result.cell_info["cluster"].tolist() == [2, 2, 3]
        assert result.log[-1] == {"SubsetByCluster": True, "SubsettedClusters": [2, 3]}

    def test_all_clusters_keep_population(self, clustered_emset):
        result = subset_cluster(clustered_emset, [1, 2, 3])
        assert result.cell_barcodes == clustered_emset.cell_barcodes

    def test_keeps_cluster_column(self, clustered_emset):
        result = subset_cluster(clustered_emset, 1)
        assert result.has_clusters
        assert result.cell_info.columns.tolist() == clustered_emset.cell_info.columns.tolist()

    def test_unclustered(self, emset):
        with pytest.raises(PreconditionError):
            subset_cluster(emset, [1])

    def test_unclustered_leaves_matrix(self, emset):
        matrix_before = emset.get_expression_matrix()
        with pytest.raises(PreconditionError):
            subset_cluster(emset, [1])
        pd.testing.assert_frame_equal(emset.expression_matrix, matrix_before)

    @pytest.mark.parametrize("clusters", [None, []])
    def test_no_clusters_specified(self, clustered_emset, clusters):
        with pytest.raises(ArgumentError):
            subset_cluster(clustered_emset, clusters)

    def test_no_match(self, clustered_emset):
        with pytest.raises(SelectionError):
            subset_cluster(clustered_emset, [7])

    def test_custom_cluster_column(self, emset):
        cell_info = emset.get_cell_info()
        cell_info["leiden"] = ["0", "1", "0", "1", "0"]
        leiden = replace(emset.replace_cell_info(cell_info), cluster_column="leiden")

        result = subset_cluster(leiden, ["1"])

        assert result.cell_barcodes == ["c2", "c4"]


# ---------------------------------------------------------------------------
# Tests: subset_cells
# ---------------------------------------------------------------------------


class TestSubsetCells:
    def test_listed_cells(self, emset):
        result = subset_cells(emset, ["c2", "c4"])

        assert result.cell_barcodes == ["c2", "c4"]
        assert result.log[-1] == {"SubsetByCells": True, "SubsettedCells": ["c2", "c4"]}

    def test_order_follows_list(self, emset):
        result = subset_cells(emset, ["c5", "c1", "c3"])

        assert result.cell_barcodes == ["c5", "c1", "c3"]
        assert result.cell_info.index.tolist() == ["c5", "c1", "c3"]
        assert result.cell_info.loc["c5", "batch"] == "B"

    def test_absent_cells_ignored(self, emset):
        result = subset_cells(emset, ["c1", "x9", "c3", "unknown"])

        assert result.cell_barcodes == ["c1", "c3"]
        assert result.log[-1]["SubsettedCells"] == ["c1", "c3"]

    def test_all_absent(self, emset):
        with pytest.raises(SelectionError):
            subset_cells(emset, ["x1", "x2"])

    def test_empty_list(self, emset):
        with pytest.raises(SelectionError):
            subset_cells(emset, [])

    def test_duplicates_collapsed(self, emset):
        result = subset_cells(emset, ["c2", "c2", "c1", "c2"])
        assert result.cell_barcodes == ["c2", "c1"]

    def test_keeps_all_columns(self, emset):
        result = subset_cells(emset, ["c1"])
        assert result.cell_info.columns.tolist() == emset.cell_info.columns.tolist()


# ---------------------------------------------------------------------------
# Tests: chaining
# ---------------------------------------------------------------------------


class TestChaining:
    def test_log_accumulates(self, emset):
        result = subset_cells(subset_batch(emset, ["B"]), ["c4", "c5"])

        assert result.cell_barcodes == ["c4", "c5"]
        assert result.log == (
            {"SubsetByBatches": True, "SubsettedBatches": ["B"]},
            {"SubsetByCells": True, "SubsettedCells": ["c4", "c5"]},
        )

    def test_cell_from_other_batch_not_present(self, emset):
        batch_b = subset_batch(emset, ["B"])
        with pytest.raises(SelectionError):
            subset_cells(batch_b, ["c1"])

    def test_derived_log_does_not_reach_parent(self, emset):
        parent = subset_batch(emset, ["A"])
        child = subset_batch(parent, ["A"])

        child.log[0]["SubsettedBatches"].append("Z")
        child.log[0]["SubsetByBatches"] = False

        assert parent.log == ({"SubsetByBatches": True, "SubsettedBatches": ["A"]},)

    def test_selector_changes_after_call_not_logged(self, emset):
        batches = ["A"]
        result = subset_batch(emset, batches)

        batches.append("B")

        assert result.log[-1]["SubsettedBatches"] == ["A"]
