import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xasset.engine.errors import ConfigurationError, NumericalError
from xasset.engine.repair import (
    HighamSalvaging,
    MatrixRepairer,
    NoSalvaging,
    SalvagingPolicy,
    SpectralSalvaging,
    get_salvaging,
    pseudo_sqrt,
    validate_matrix,
)


def _with_eigenvalues(values: list[float]) -> np.ndarray:
    basis = np.column_stack(
        [
            np.ones(3) / np.sqrt(3.0),
            np.array([1.0, -1.0, 0.0]) / np.sqrt(2.0),
            np.array([1.0, 1.0, -2.0]) / np.sqrt(6.0),
        ]
    )
    matrix = basis @ np.diag(values) @ basis.T
    return 0.5 * (matrix + matrix.T)


INCONSISTENT = np.array(
    [
        [1.0, 0.9, -0.9],
        [0.9, 1.0, 0.9],
        [-0.9, 0.9, 1.0],
    ]
)


class _RecordingPolicy(SalvagingPolicy):
    name = "recording"

    def __init__(self):
        self.calls = 0

    def salvage(self, matrix):
        self.calls += 1
        return SpectralSalvaging().salvage(matrix)


def test_psd_matrix_passes_through_unchanged():
    matrix = _with_eigenvalues([1.0, 0.3, 0.0])
    policy = _RecordingPolicy()
    repaired = MatrixRepairer(policy).repair(matrix)

    np.testing.assert_array_equal(repaired, matrix)
    assert policy.calls == 0


def test_spectral_salvaging_repairs_negative_eigenvalue_with_small_perturbation():
    matrix = _with_eigenvalues([1.0, 0.0, -0.05])
    repaired = MatrixRepairer(SpectralSalvaging()).repair(matrix)

    assert np.linalg.eigvalsh(repaired).min() >= -1e-10
    np.testing.assert_allclose(repaired, repaired.T, atol=0.0)
    np.testing.assert_allclose(np.diag(repaired), np.diag(matrix), atol=1e-12)
    assert np.linalg.norm(repaired - matrix, "fro") < 0.1


def test_spectral_salvaging_keeps_unit_diagonal_for_correlations():
    repaired = MatrixRepairer().repair(INCONSISTENT, correlation=True)

    assert np.linalg.eigvalsh(repaired).min() >= -1e-10
    np.testing.assert_allclose(np.diag(repaired), 1.0, atol=1e-12)
    np.testing.assert_allclose(repaired[0, 1], 0.5, atol=1e-9)
    np.testing.assert_allclose(repaired[0, 2], -0.5, atol=1e-9)


def test_higham_is_at_least_as_close_as_spectral():
    spectral = MatrixRepairer(SpectralSalvaging()).repair(INCONSISTENT, correlation=True)
    higham = MatrixRepairer(HighamSalvaging(max_iterations=500)).repair(INCONSISTENT, correlation=True)

    assert np.linalg.eigvalsh(higham).min() >= -1e-10
    np.testing.assert_allclose(np.diag(higham), 1.0, atol=1e-12)
    assert np.linalg.norm(higham - INCONSISTENT) <= np.linalg.norm(spectral - INCONSISTENT) + 1e-3


def test_higham_scales_back_covariances():
    vols = np.array([0.1, 0.2, 0.3])
    covariance = np.outer(vols, vols) * INCONSISTENT
    repaired = MatrixRepairer(HighamSalvaging()).repair(covariance)

    np.testing.assert_allclose(np.diag(repaired), vols**2, atol=1e-12)
    assert np.linalg.eigvalsh(repaired).min() >= -1e-10


def test_no_salvaging_rejects_non_psd():
    with pytest.raises(NumericalError):
        MatrixRepairer(NoSalvaging()).repair(INCONSISTENT)


def test_salvaging_beyond_tolerance_raises():
    repairer = MatrixRepairer(SpectralSalvaging(), max_relative_perturbation=0.1)
    with pytest.raises(NumericalError):
        repairer.repair(INCONSISTENT, correlation=True)


def test_sqrt_reproduces_repaired_matrix():
    matrix = _with_eigenvalues([1.0, 0.3, 0.0])
    repaired, root = MatrixRepairer().sqrt(matrix)

    np.testing.assert_allclose(root @ root.T, repaired, atol=1e-14)
    np.testing.assert_allclose(pseudo_sqrt(matrix) @ pseudo_sqrt(matrix).T, matrix, atol=1e-14)


@pytest.mark.parametrize(
    "matrix",
    [
        np.ones((2, 3)),
        np.ones(3),
        np.empty((0, 0)),
        np.array([[1.0, 0.2], [0.3, 1.0]]),
    ],
)
def test_validate_rejects_malformed_shapes(matrix):
    with pytest.raises(ConfigurationError):
        validate_matrix(matrix)


def test_validate_correlation_rules():
    with pytest.raises(ConfigurationError):
        validate_matrix(np.array([[1.0, 0.1], [0.1, 0.9]]), correlation=True)
    with pytest.raises(ConfigurationError):
        validate_matrix(np.array([[1.0, 1.2], [1.2, 1.0]]), correlation=True)
    with pytest.raises(NumericalError):
        validate_matrix(np.array([[1.0, np.nan], [np.nan, 1.0]]))


def test_get_salvaging_resolves_names():
    assert isinstance(get_salvaging("spectral"), SpectralSalvaging)
    assert isinstance(get_salvaging(" Higham "), HighamSalvaging)
    assert isinstance(get_salvaging("none"), NoSalvaging)
    with pytest.raises(ConfigurationError):
        get_salvaging("hypersphere")


def test_psd_check_does_not_depend_on_the_scale_of_the_matrix():
    policy = _RecordingPolicy()
    repaired, root = MatrixRepairer(policy).sqrt(INCONSISTENT * 1e-10)

    assert policy.calls == 1
    np.testing.assert_allclose(root @ root.T, repaired, rtol=1e-9, atol=1e-22)
    np.testing.assert_allclose(np.diag(repaired), 1e-10, rtol=1e-12)
    np.testing.assert_allclose(repaired * 1e10, MatrixRepairer().repair(INCONSISTENT), atol=1e-9)
