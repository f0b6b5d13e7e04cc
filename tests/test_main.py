"""
Tests for the command line front end in main.py.
"""
import logging

import pytest
from unittest.mock import patch

import numpy as np

import main
from kfn.kfn_main import RunResult
from kfn.model import KFNModel
from kfn.params import Params


@pytest.fixture
def data_files(tmp_path):
    """Write a reference and a query file, one point per row."""
    rng = np.random.default_rng(5)
    reference = rng.random((100, 3))
    query = rng.random((90, 3))
    reference_file = tmp_path / "reference.csv"
    query_file = tmp_path / "query.csv"
    np.savetxt(reference_file, reference, delimiter=',', fmt='%.17g')
    np.savetxt(query_file, query, delimiter=',', fmt='%.17g')
    return reference_file, query_file


class TestParseArgs:
    """Test suite for parse_args function."""

    def test_defaults(self):
        args = main.parse_args([])

        assert args.reference_file is None
        assert args.k is None
        assert args.algorithm is None
        assert args.random_basis is False
        assert args.verbose is False

    def test_short_options(self):
        args = main.parse_args(["-r", "ref.csv", "-q", "q.csv", "-k", "5", "-a", "naive",
                                "-l", "3", "-e", "0.2", "-R", "-s", "9", "-n", "n.csv", "-d", "d.csv"])

        assert args.reference_file == "ref.csv"
        assert args.query_file == "q.csv"
        assert args.k == 5
        assert args.algorithm == "naive"
        assert args.leaf_size == 3
        assert args.epsilon == 0.2
        assert args.random_basis is True
        assert args.seed == 9
        assert args.neighbors_file == "n.csv"
        assert args.distances_file == "d.csv"

    def test_long_options(self):
        args = main.parse_args(["--reference-file", "ref.csv", "--input-model-file", "in.npz",
                                "--leaf-size", "3", "--random-basis",
                                "--true-neighbors-file", "tn.csv", "--true-distances-file", "td.csv",
                                "--neighbors-file", "n.csv", "--distances-file", "d.csv",
                                "--output-model-file", "out.npz"])

        assert args.reference_file == "ref.csv"
        assert args.input_model_file == "in.npz"
        assert args.leaf_size == 3
        assert args.random_basis is True
        assert args.true_neighbors_file == "tn.csv"
        assert args.true_distances_file == "td.csv"
        assert args.neighbors_file == "n.csv"
        assert args.distances_file == "d.csv"
        assert args.output_model_file == "out.npz"

    def test_snake_case_long_options_rejected(self):
        with pytest.raises(SystemExit):
            main.parse_args(["--leaf_size", "3"])


class TestLoadParams:
    """Test suite for load_params function."""

    def test_only_given_options_are_passed(self, data_files):
        reference_file, _ = data_files
        args = main.parse_args(["-r", str(reference_file), "-k", "4"])
        data_source = main.VecDataSource(main.get_dataset(args))

        params = Params()

        main.load_params(args, data_source, params)

        assert params.has("reference")
        assert params.get("reference").shape == (3, 100)
        assert params.has("k")
        assert not params.has("query")
        assert not params.has("leaf_size")
        assert not params.has("algorithm")
        params.reset()


class TestMain:
    """Test suite for the main function."""

    def test_search_writes_outputs(self, data_files, tmp_path):
        reference_file, query_file = data_files
        neighbors_file = tmp_path / "neighbors.csv"
        distances_file = tmp_path / "distances.csv"

        status = main.main(["-r", str(reference_file), "-q", str(query_file), "-k", "10",
                            "-n", str(neighbors_file), "-d", str(distances_file)])

        assert status == 0
        neighbors = np.loadtxt(neighbors_file, delimiter=',')
        distances = np.loadtxt(distances_file, delimiter=',')
        # One query point per row
        assert neighbors.shape == (90, 10)
        assert distances.shape == (90, 10)

    def test_invalid_k_returns_error_status(self, data_files, tmp_path):
        reference_file, _ = data_files
        neighbors_file = tmp_path / "neighbors.csv"

        status = main.main(["-r", str(reference_file), "-k", "101", "-n", str(neighbors_file)])

        assert status == 1
        assert not neighbors_file.exists()

    def test_model_reuse(self, data_files, tmp_path):
        """Test that a saved model gives the same results as the original reference file."""
        reference_file, query_file = data_files
        model_file = tmp_path / "model.npz"
        first_neighbors = tmp_path / "first.csv"
        second_neighbors = tmp_path / "second.csv"

        assert main.main(["-r", str(reference_file), "-q", str(query_file), "-k", "10",
                          "-n", str(first_neighbors), "-M", str(model_file)]) == 0
        assert main.main(["-m", str(model_file), "-q", str(query_file), "-k", "10",
                          "-n", str(second_neighbors)]) == 0

        np.testing.assert_array_equal(np.loadtxt(first_neighbors, delimiter=','),
                                      np.loadtxt(second_neighbors, delimiter=','))

    def test_recall_with_true_neighbors(self, data_files, tmp_path, caplog):
        reference_file, query_file = data_files
        true_neighbors = tmp_path / "true_neighbors.csv"
        true_distances = tmp_path / "true_distances.csv"
        main.main(["-r", str(reference_file), "-q", str(query_file), "-k", "5", "-a", "naive",
                   "-n", str(true_neighbors), "-d", str(true_distances)])
        caplog.set_level(logging.INFO, logger="kfn")

        status = main.main(["-r", str(reference_file), "-q", str(query_file), "-k", "5",
                            "-T", str(true_neighbors), "-D", str(true_distances)])

        assert status == 0
        assert "Recall: 1.0" in caplog.text
        assert "Effective epsilon:" in caplog.text

    def test_missing_neighbors_without_k(self, data_files, tmp_path):
        """Test that asking for neighbors without k only trains a model."""
        reference_file, _ = data_files
        neighbors_file = tmp_path / "neighbors.csv"
        model_file = tmp_path / "model.npz"

        status = main.main(["-r", str(reference_file), "-n", str(neighbors_file),
                            "-M", str(model_file)])

        assert status == 0
        assert not neighbors_file.exists()
        assert model_file.exists()

    @patch("main.run_kfn")
    def test_params_reset_after_run(self, mock_run_kfn, data_files):
        """Test that the parameter store is reset even when the search fails."""
        reference_file, _ = data_files
        mock_run_kfn.return_value = RunResult(ok=False, error_kind="invalid_argument", message="bad")

        status = main.main(["-r", str(reference_file), "-k", "3"])

        assert status == 1
        params = mock_run_kfn.call_args[0][0]
        assert not params.has("reference")
        assert not params.has("k")

    def test_missing_reference_file(self, tmp_path):
        with pytest.raises(ValueError, match="File not found"):
            main.main(["-r", str(tmp_path / "missing.csv"), "-k", "3"])

    @patch("main.load_model")
    def test_loaded_model_released_when_later_read_fails(self, mock_load_model, data_files, tmp_path):
        """Test that a model loaded before a failing file read is still released."""
        reference_file, query_file = data_files
        model = KFNModel.build(np.loadtxt(reference_file, delimiter=','))
        mock_load_model.return_value = model

        with pytest.raises(ValueError, match="File not found"):
            main.main(["-m", str(tmp_path / "model.npz"), "-q", str(query_file), "-k", "3",
                       "-D", str(tmp_path / "missing_distances.csv")])

        mock_load_model.assert_called_once()
        assert model.released
