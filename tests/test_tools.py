import logging

import numpy as np
import pandas as pd
import pytest

from anndata import AnnData

import bonemarrowmappy as bmm

from bonemarrowmappy._utils import _idw_mean, _knn_vote, _mad_threshold
from conftest import toy_query, toy_reference


class TestMapEmbedding:
    @staticmethod
    def assert_equals(f, s, threshold=1e-5):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def test_map_embedding(self, query_counts, reference):
        adata = bmm.tl.map_embedding(query_counts, reference, key="sample")

        n_comps = reference.embedding.shape[1]
        assert adata.obsm["X_pca_reference"].shape == (query_counts.n_obs, n_comps)
        assert adata.obsm["X_pca_harmony"].shape == (query_counts.n_obs, n_comps)
        R = adata.obsm["X_pca_harmony_symphony_R"]
        assert R.shape == (query_counts.n_obs, reference.K)
        np.testing.assert_allclose(R.sum(axis=1), 1.0)
        assert adata.uns["bonemarrowmap"]["stages"] == ["map_embedding"]

    def test_input_is_not_modified(self, query_counts, reference):
        X_before = query_counts.X.copy()
        bmm.tl.map_embedding(query_counts, reference, key="sample")

        assert "X_pca_harmony" not in query_counts.obsm
        assert "bonemarrowmap" not in query_counts.uns
        np.testing.assert_array_equal(query_counts.X, X_before)

    def test_reference_cells_map_onto_reference_pca(self, reference_counts, reference):
        adata = bmm.tl.map_embedding(reference_counts[:5].copy(), reference)
        self.assert_equals(
            adata.obsm["X_pca_reference"], reference.representation("X_pca")[:5]
        )

    def test_missing_genes(self, query_counts, reference, caplog):
        adata_query = query_counts[:, 10:].copy()
        with caplog.at_level(logging.WARNING, logger="bonemarrowmappy"):
            adata = bmm.tl.map_embedding(adata_query, reference, key="sample")

        assert "missing in the query" in caplog.text
        assert np.isfinite(adata.obsm["X_pca_harmony"]).all()

    def test_small_batch_gets_global_correction(self, query_counts, reference, caplog):
        adata_query = query_counts.copy()
        batch = np.array(["big"] * adata_query.n_obs, dtype=object)
        batch[:3] = "tiny"
        adata_query.obs["batch"] = batch

        with caplog.at_level(logging.WARNING, logger="bonemarrowmappy"):
            adata = bmm.tl.map_embedding(
                adata_query, reference, key="batch", min_batch_cells=10
            )
        assert "fewer than 10 cells" in caplog.text

        adata_global = bmm.tl.map_embedding(adata_query, reference)
        np.testing.assert_allclose(
            adata.obsm["X_pca_harmony"][:3], adata_global.obsm["X_pca_harmony"][:3]
        )
        assert np.isfinite(adata.obsm["X_pca_harmony"]).all()

    def test_missing_batch_column(self, query_counts, reference):
        with pytest.raises(ValueError, match="not found"):
            bmm.tl.map_embedding(query_counts, reference, key="donor")


class TestMappingError:
    def test_mapping_error(self, mapped_query):
        scores = mapped_query.obs["mapping_error_score"]
        assert np.isfinite(scores).all()
        assert (scores >= 0).all()
        assert mapped_query.uns["bonemarrowmap"]["stages"] == [
            "map_embedding",
            "mapping_error",
            "mapping_qc",
        ]

    def test_requires_map_embedding(self, query_counts, reference):
        with pytest.raises(ValueError, match="tl.map_embedding"):
            bmm.tl.mapping_error(query_counts, reference)

    def test_unseen_cells_score_higher(self, query_counts, reference):
        adata_query = query_counts.copy()
        novel = np.zeros(adata_query.n_obs, dtype=bool)
        novel[::4] = True
        # a third cell type: overexpression of a block no reference cell type uses
        adata_query.X[np.ix_(novel, np.arange(90, 120))] += 60

        adata = bmm.tl.map_embedding(adata_query, reference)
        adata = bmm.tl.mapping_error(adata, reference)
        scores = adata.obs["mapping_error_score"].to_numpy()
        assert scores[novel].mean() > scores[~novel].mean()

    def test_chunked_matches_single_batch(self, query_counts, reference):
        adata = bmm.tl.map_embedding(query_counts, reference, key="sample")
        single = bmm.tl.mapping_error(adata, reference)
        chunked = bmm.tl.mapping_error(adata, reference, batch_size=7, n_jobs=3)
        np.testing.assert_allclose(
            single.obs["mapping_error_score"], chunked.obs["mapping_error_score"]
        )

    def test_per_cluster_mapping_error(self, mapped_query, reference):
        adata = bmm.tl.per_cluster_mapping_error(
            mapped_query, reference, cluster_key="CellType_Annotation", u=1
        )
        dists = adata.uns["mapping_error_cluster"]["dist"]
        assert list(adata.uns["mapping_error_cluster"]["cluster_labels"]) == ["A", "B"]
        assert np.isfinite(dists).all()
        assert adata.obs.groupby("CellType_Annotation", observed=True)[
            "mapping_error_cluster"
        ].nunique().eq(1).all()

    def test_non_finite_score_fails_with_cell_ids(self, query_counts, reference):
        adata = bmm.tl.map_embedding(query_counts, reference, key="sample")
        X_primary = np.array(adata.obsm["X_pca_reference"])
        X_primary[2] = np.nan
        adata.obsm["X_pca_reference"] = X_primary

        with pytest.raises(ValueError, match=adata.obs_names[2]):
            bmm.tl.mapping_error(adata, reference)

    def test_records_mapper_settings(self, query_counts, reference):
        mapper = bmm.SymphonyMapper(reference, min_batch_cells=3, lamb=2.0)
        adata = bmm.tl.map_embedding(
            query_counts, reference, key="sample", min_batch_cells=10, mapper=mapper
        )
        record = adata.uns["bonemarrowmap"]["map_embedding"]
        assert record["min_batch_cells"] == 3
        assert record["lamb"] == 2.0


def scored(scores, donors=None) -> AnnData:
    scores = np.asarray(scores, dtype=np.float64)
    obs = pd.DataFrame(
        {"mapping_error_score": scores}, index=[f"c{i}" for i in range(len(scores))]
    )
    if donors is not None:
        obs["donor"] = donors
    return AnnData(X=np.zeros((len(scores), 1)), obs=obs)


class TestMappingQC:
    def test_threshold(self):
        # median 2, MAD 1
        adata = bmm.tl.mapping_qc(scored([1, 1, 2, 2, 2, 3, 3, 3, 4]), MAD_threshold=1)

        qc = adata.obs["mapping_error_QC"]
        assert list(qc) == ["Pass"] * 8 + ["Fail"]
        assert (adata.obs["mapping_error_score_threshold"] == 3).all()

    def test_mad_threshold(self):
        median, mad, threshold = _mad_threshold(np.array([1, 2, 3, 4, 5, 6, 100.0]), 2)
        assert (median, mad, threshold) == (4, 2, 8)

    def test_boundary_passes(self):
        # median 2, MAD 1, threshold 4
        adata = bmm.tl.mapping_qc(scored([0, 1, 2, 3, 4]), MAD_threshold=2)
        assert adata.obs["mapping_error_score_threshold"].iloc[-1] == 4
        assert adata.obs["mapping_error_QC"].iloc[-1] == "Pass"

    def test_by_donor(self):
        rng = np.random.default_rng(0)
        scores = np.concatenate([rng.normal(1, 0.1, 20), rng.normal(5, 0.1, 20), [4, 5, 30]])
        donors = ["d1"] * 20 + ["d2"] * 20 + ["d3"] * 3

        global_qc = bmm.tl.mapping_qc(scored(scores, donors), MAD_threshold=5)
        donor_qc = bmm.tl.mapping_qc(
            scored(scores, donors),
            MAD_threshold=5,
            threshold_by_donor=True,
            donor_key="donor",
            min_cells_per_donor=10,
        )

        thr = donor_qc.obs["mapping_error_score_threshold"]
        assert thr[:20].nunique() == 1 and thr[20:40].nunique() == 1
        assert thr.iloc[0] < 2 < 4 < thr.iloc[20]
        assert (donor_qc.obs["mapping_error_QC"][:40] == "Pass").mean() > 0.9

        # too small donor falls back to the global threshold
        np.testing.assert_allclose(
            thr[40:], global_qc.obs["mapping_error_score_threshold"][40:]
        )
        assert list(donor_qc.obs["mapping_error_QC"][40:]) == list(
            global_qc.obs["mapping_error_QC"][40:]
        )

    def test_zero_mad_donor_uses_global_threshold(self):
        scores = [1.0] * 10 + list(np.linspace(0, 3, 10))
        donors = ["d1"] * 10 + ["d2"] * 10
        adata = bmm.tl.mapping_qc(
            scored(scores, donors), threshold_by_donor=True, donor_key="donor"
        )
        _, _, global_threshold = _mad_threshold(np.asarray(scores), 2.5)
        np.testing.assert_allclose(
            adata.obs["mapping_error_score_threshold"][:10], global_threshold
        )

    def test_by_donor_needs_donor_key(self):
        with pytest.raises(ValueError, match="donor_key"):
            bmm.tl.mapping_qc(scored([1, 2, 3]), threshold_by_donor=True)

    def test_requires_score(self, query_counts):
        with pytest.raises(ValueError, match="tl.mapping_error"):
            bmm.tl.mapping_qc(query_counts)

    def test_non_finite_scores(self):
        with pytest.raises(ValueError, match="non-finite"):
            bmm.tl.mapping_qc(scored([1, 2, np.nan]))


class TestPredictCellTypes:
    def test_predict_cell_types(self, mapped_query, reference):
        adata = bmm.tl.predict_cell_types(mapped_query, reference)

        initial = adata.obs["initial_predicted_CellType"]
        assert initial.notna().all()
        assert (initial.astype(str) == adata.obs["CellType_Annotation"]).mean() > 0.95

        prob = adata.obs["predicted_CellType_prob"]
        assert ((prob > 0) & (prob <= 1)).all()

        broad = adata.obs["initial_predicted_CellType_Broad"].astype(str)
        expected = initial.astype(str).map(reference.broad_mapping())
        assert (broad == expected).all()

    def test_final_is_null_for_failed_cells(self, mapped_query, reference):
        adata_query = mapped_query.copy()
        qc = np.array(["Pass"] * adata_query.n_obs, dtype=object)
        qc[:5] = "Fail"
        adata_query.obs["mapping_error_QC"] = pd.Categorical(qc, categories=["Pass", "Fail"])

        adata = bmm.tl.predict_cell_types(adata_query, reference)
        failed = adata.obs["mapping_error_QC"] == "Fail"
        for col in ("final_predicted_CellType", "final_predicted_CellType_Broad"):
            assert (adata.obs[col].isna() == failed).all()
        assert adata.obs["initial_predicted_CellType"].notna().all()

    def test_requires_qc(self, query_counts, reference):
        adata = bmm.tl.map_embedding(query_counts, reference)
        with pytest.raises(ValueError, match="tl.mapping_qc"):
            bmm.tl.predict_cell_types(adata, reference)

    def test_tie_goes_to_smallest_label(self):
        # the query cell is equidistant to one "beta" and one "alpha" reference cell
        reference = toy_reference([[1.0, 0.0], [-1.0, 0.0]], ["beta", "alpha"])
        adata = bmm.tl.predict_cell_types(
            toy_query([[0.0, 0.0]]), reference, k_neighbours=2
        )
        assert adata.obs["initial_predicted_CellType"].iloc[0] == "alpha"
        assert adata.obs["predicted_CellType_prob"].iloc[0] == 0.5

    def test_knn_vote(self):
        codes = np.array([[1, 0, 2, 2], [1, 0, 1, 0], [2, 2, 2, 2]])
        winner, prob = _knn_vote(codes, 3)
        np.testing.assert_array_equal(winner, [2, 0, 2])
        np.testing.assert_allclose(prob, [0.5, 0.5, 1.0])

    def test_k_larger_than_reference(self):
        reference = toy_reference([[1.0, 0.0], [-1.0, 0.0]], ["beta", "alpha"])
        with pytest.raises(ValueError, match="exceeds"):
            bmm.tl.predict_cell_types(toy_query([[0.0, 0.0]]), reference, k_neighbours=3)

    def test_transfer_labels_knn(self, mapped_query, reference):
        adata = bmm.tl.transfer_labels_kNN(
            mapped_query,
            reference,
            "CellType_Broad",
            k_neighbours=15,
            query_labels="predicted_Broad_knn",
        )
        expected = adata.obs["CellType_Annotation"].map({"A": "Progenitor", "B": "Mature"})
        assert (adata.obs["predicted_Broad_knn"] == expected).mean() > 0.95

    def test_transfer_labels_knn_shares_reference_index(self):
        reference = toy_reference(
            [[1.0, 0.0], [1.1, 0.0], [-1.0, 0.0]],
            ["beta", "beta", "alpha"],
            broad=["Mature", "Mature", "Progenitor"],
        )
        query = toy_query([[1.0, 0.1], [-1.0, 0.1]])

        adata = bmm.tl.predict_cell_types(query, reference, k_neighbours=1)
        index = reference.knn_index(None, 1)
        adata = bmm.tl.transfer_labels_kNN(
            adata,
            reference,
            ["CellType_Annotation", "CellType_Broad"],
            k_neighbours=1,
            query_labels=["label_knn", "broad_knn"],
        )

        assert reference.knn_index(None, 1) is index
        assert list(adata.obs["label_knn"]) == ["beta", "alpha"]
        assert list(adata.obs["broad_knn"]) == ["Mature", "Progenitor"]
        assert list(adata.obs["label_knn"]) == list(
            adata.obs["initial_predicted_CellType"].astype(str)
        )


class TestPredictPseudotime:
    coords = [[0.0, 0.0], [0.0, 1.0], [0.0, -1.0], [10.0, 0.0], [10.0, 1.0], [10.0, -1.0]]
    pseudotime = [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]

    def reference(self):
        return toy_reference(self.coords, ["A"] * 3 + ["B"] * 3, pseudotime=self.pseudotime)

    def test_coincident_and_between(self):
        query = toy_query(
            [[0.0, 0.0], [10.0, 0.0], [5.0, 0.0], [-3.0, 0.0]],
            qc=["Pass", "Pass", "Pass", "Fail"],
        )
        adata = bmm.tl.predict_pseudotime(query, self.reference(), k_neighbours=2)

        initial = adata.obs["initial_predicted_Pseudotime"].to_numpy()
        assert initial[0] == 0.0
        assert initial[1] == 1.0
        assert 0.0 < initial[2] < 1.0
        np.testing.assert_allclose(initial[2], 0.5)
        assert initial[3] == 0.0

        final = adata.obs["final_predicted_Pseudotime"].to_numpy()
        np.testing.assert_array_equal(final[:3], initial[:3])
        assert np.isnan(final[3])

    def test_requires_umap(self):
        query = toy_query([[0.0, 0.0]], basis=("X_pca_harmony",))
        with pytest.raises(ValueError, match="tl.project_umap"):
            bmm.tl.predict_pseudotime(query, self.reference(), k_neighbours=2)

    def test_idw_mean(self):
        dists = np.array([[0.0, 1.0], [1.0, 3.0], [1.0, 2.0]])
        values = np.array([[2.0, 10.0], [0.0, 4.0], [np.nan, 3.0]])
        np.testing.assert_allclose(_idw_mean(dists, values), [2.0, 1.0, 3.0])

    def test_project_umap(self, mapped_query, reference):
        adata = bmm.tl.project_umap(mapped_query, reference)
        assert adata.obsm["X_umap"].shape == (mapped_query.n_obs, 2)
        assert np.isfinite(adata.obsm["X_umap"]).all()

        adata = bmm.tl.predict_pseudotime(adata, reference)
        truth = adata.obs["Pseudotime"].to_numpy()
        predicted = adata.obs["initial_predicted_Pseudotime"].to_numpy()
        assert (np.abs(predicted - truth) < 0.5).mean() > 0.95


class TestComposition:
    @staticmethod
    def obs():
        return pd.DataFrame(
            {
                "donor": ["d1", "d1", "d1", "d2", "d2", "d3"],
                "final_predicted_CellType": pd.Categorical(
                    ["A", "B", "A", "B", None, None], categories=["A", "B", "C"]
                ),
                "mapping_error_QC": ["Pass", "Pass", "Pass", "Pass", "Fail", "Fail"],
                "predicted_CellType_prob": [1.0, 0.4, 0.9, 0.8, 1.0, 1.0],
            },
            index=[f"c{i}" for i in range(6)],
        )

    def test_count(self):
        counts = bmm.tl.composition(self.obs(), "donor", output_type="count")

        assert list(counts.columns) == ["A", "B", "C"]
        assert list(counts.index) == ["d1", "d2", "d3"]
        assert counts.loc["d1"].tolist() == [2, 1, 0]
        assert counts.loc["d2"].tolist() == [0, 1, 0]
        assert counts.loc["d3"].tolist() == [0, 0, 0]
        # only passing cells are counted
        assert counts.sum(axis=1).tolist() == [3, 1, 0]

    def test_proportion(self):
        props = bmm.tl.composition(self.obs(), "donor")

        np.testing.assert_allclose(props.loc[["d1", "d2"]].sum(axis=1), 1.0)
        np.testing.assert_allclose(props.loc["d1"], [2 / 3, 1 / 3, 0])
        assert (props.loc["d3"] == 0).all()

    def test_prob_cutoff(self):
        counts = bmm.tl.composition(
            self.obs(), "donor", knn_prob_cutoff=0.5, output_type="count"
        )
        assert counts.loc["d1"].tolist() == [2, 0, 0]

    def test_long(self):
        long = bmm.tl.composition(self.obs(), "donor", output_type="long")

        assert list(long.columns) == ["donor", "CellType", "count", "proportion"]
        assert long.shape[0] == 9
        row = long[(long["donor"] == "d1") & (long["CellType"] == "A")].iloc[0]
        assert row["count"] == 2
        assert row["proportion"] == pytest.approx(2 / 3)

    def test_without_qc_filter(self):
        counts = bmm.tl.composition(self.obs(), "donor", qc_key=None, output_type="count")
        assert "Unassigned" in counts.columns
        assert counts.loc["d2", "Unassigned"] == 1
        assert counts.sum(axis=1).tolist() == [3, 2, 1]

    def test_from_anndata(self, mapped_query, reference):
        adata = bmm.tl.predict_cell_types(mapped_query, reference)
        counts = bmm.tl.composition(adata, "sample", output_type="count")

        passed = adata.obs[adata.obs["mapping_error_QC"] == "Pass"]
        assert counts.sum(axis=1).to_dict() == passed["sample"].value_counts().to_dict()
        assert list(counts.columns) == ["A", "B"]

    def test_wrong_output_type(self):
        with pytest.raises(ValueError, match="output_type"):
            bmm.tl.composition(self.obs(), "donor", output_type="wide")

    def test_missing_column(self):
        with pytest.raises(ValueError, match="not found"):
            bmm.tl.composition(self.obs(), "patient")


class TestAUCell:
    @staticmethod
    def adata():
        X = np.array(
            [
                [9, 8, 7, 6, 5, 4, 3, 2, 1, 0],
                [0, 1, 2, 3, 4, 5, 6, 7, 8, 9],
                [6, 5, 0, 0, 0, 0, 0, 0, 0, 0],
            ],
            dtype=np.float64,
        )
        return AnnData(
            X=X,
            obs=pd.DataFrame(index=["c1", "c2", "c3"]),
            var=pd.DataFrame(index=[f"g{i}" for i in range(10)]),
        )

    def test_known_ranking(self):
        adata = bmm.tl.score_genesets_aucell(
            self.adata(), {"top": ["g0", "g1"]}, max_rank=4
        )
        # the set is ranked first in c1 and c3 and last in c2
        np.testing.assert_allclose(adata.obs["AUCell_top"], [1.0, 0.0, 1.0])

    def test_partial_recovery(self):
        adata = bmm.tl.score_genesets_aucell(
            self.adata(), {"mixed": ["g0", "g5"]}, max_rank=4
        )
        score = adata.obs["AUCell_mixed"].iloc[0]
        assert 0.0 < score < 1.0

    def test_scores_in_unit_interval(self, query_counts):
        genesets = {
            "A": [f"gene{i}" for i in range(30)],
            "B": [f"gene{i}" for i in range(30, 60)],
        }
        adata = bmm.tl.score_genesets_aucell(query_counts, genesets, max_rank=0.25)
        for name in genesets:
            scores = adata.obs[f"AUCell_{name}"]
            assert ((scores >= 0) & (scores <= 1)).all()

        is_a = adata.obs["CellType_Annotation"] == "A"
        assert (adata.obs.loc[is_a, "AUCell_A"] > adata.obs.loc[is_a, "AUCell_B"]).all()

    def test_chunked(self):
        genesets = {"top": ["g0", "g1"], "bottom": ["g8", "g9"]}
        single = bmm.tl.score_genesets_aucell(self.adata(), genesets, max_rank=5)
        chunked = bmm.tl.score_genesets_aucell(
            self.adata(), genesets, max_rank=5, batch_size=1, n_jobs=2
        )
        pd.testing.assert_frame_equal(single.obs, chunked.obs)

    def test_missing_genes(self, caplog):
        with caplog.at_level(logging.WARNING, logger="bonemarrowmappy"):
            adata = bmm.tl.score_genesets_aucell(
                self.adata(), {"none": ["x1"], "some": ["g0", "x2"]}, max_rank=4
            )
        assert "AUCell_none" not in adata.obs
        np.testing.assert_allclose(adata.obs["AUCell_some"], [1.0, 0.0, 1.0])
        assert "'none'" in caplog.text


class TestMappingTable:
    def test_mapping_table(self, mapped_query, reference, tmp_path):
        adata = bmm.tl.predict_cell_types(mapped_query, reference)
        adata = bmm.tl.project_umap(adata, reference)

        table = bmm.tl.mapping_table(adata, extra_columns=["sample"])
        assert table.index.name == "cell_id"
        assert table.columns[0] == "sample"
        for col in ("mapping_error_score", "final_predicted_CellType", "UMAP1", "UMAP2"):
            assert col in table.columns
        assert table.shape[0] == adata.n_obs

        bmm.tl.write_mapping_table(adata, tmp_path / "results.tsv")
        loaded = pd.read_csv(tmp_path / "results.tsv", sep="\t", index_col=0)
        assert list(loaded.index) == list(adata.obs_names)
