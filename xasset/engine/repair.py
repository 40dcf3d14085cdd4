"""Validation, salvaging and square roots of correlation/covariance matrices."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from .errors import ConfigurationError, NumericalError

logger = logging.getLogger("xasset.engine.repair")


def validate_matrix(
    matrix: np.ndarray,
    *,
    correlation: bool = False,
    symmetry_tolerance: float = 1e-10,
) -> np.ndarray:
    """Check shape and symmetry and return the symmetrised float copy.

    Correlation matrices must additionally carry a unit diagonal and entries
    within [-1, 1].
    """

    arr = np.array(matrix, dtype=float)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or arr.shape[0] == 0:
        raise ConfigurationError(f"matrix must be square and non-empty, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise NumericalError("matrix contains NaN or infinite entries")

    scale = max(1.0, float(np.max(np.abs(arr))))
    asym = float(np.max(np.abs(arr - arr.T)))
    if asym > symmetry_tolerance * scale:
        raise ConfigurationError(f"matrix is not symmetric (max asymmetry {asym:.3e})")
    arr = 0.5 * (arr + arr.T)

    if correlation:
        if np.any(np.abs(np.diag(arr) - 1.0) > symmetry_tolerance):
            raise ConfigurationError("correlation matrix diagonal must be 1.0")
        if np.any(np.abs(arr) > 1.0 + symmetry_tolerance):
            raise ConfigurationError("correlation entries must lie within [-1, 1]")
    elif np.any(np.diag(arr) < -symmetry_tolerance * scale):
        raise ConfigurationError("covariance matrix has a negative variance on its diagonal")
    return arr


def smallest_eigenvalue(matrix: np.ndarray) -> float:
    try:
        return float(np.linalg.eigvalsh(matrix)[0])
    except np.linalg.LinAlgError as exc:
        raise NumericalError(f"eigenvalue decomposition failed: {exc}") from exc


def is_psd(matrix: np.ndarray, tolerance: float = 1e-10) -> bool:
    return smallest_eigenvalue(matrix) >= -tolerance


def pseudo_sqrt(matrix: np.ndarray) -> np.ndarray:
    """Symmetric eigen root ``Q = U sqrt(max(L, 0))`` so that ``Q @ Q.T == matrix``."""

    try:
        eigvals, eigvecs = np.linalg.eigh(matrix)
    except np.linalg.LinAlgError as exc:
        raise NumericalError(f"eigenvalue decomposition failed: {exc}") from exc
    return eigvecs * np.sqrt(np.clip(eigvals, 0.0, None))


def _correlation_form(matrix: np.ndarray) -> np.ndarray:
    # PSD-ness is invariant under diagonal scaling; zero variances stay unscaled
    diagonal = np.diag(matrix)
    scale = np.sqrt(np.where(diagonal > 0.0, diagonal, 1.0))
    return matrix / np.outer(scale, scale)


def _rescale_rows(root: np.ndarray, diagonal: np.ndarray) -> np.ndarray:
    # keep diag(root @ root.T) equal to the target diagonal
    norms = np.einsum("ij,ij->i", root, root)
    factors = np.ones_like(norms)
    mask = (norms > 0.0) & (diagonal > 0.0)
    factors[mask] = np.sqrt(diagonal[mask] / norms[mask])
    return root * factors[:, None]


class SalvagingPolicy(ABC):
    """Repair strategy mapping a non-PSD symmetric matrix to a valid one."""

    name: str = "abstract"

    @abstractmethod
    def salvage(self, matrix: np.ndarray) -> np.ndarray:
        """Return a PSD matrix close to ``matrix``."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class NoSalvaging(SalvagingPolicy):
    """Refuse to repair; any non-PSD input is an error."""

    name = "none"

    def salvage(self, matrix: np.ndarray) -> np.ndarray:
        raise NumericalError(
            f"matrix is not positive semi-definite (smallest eigenvalue "
            f"{smallest_eigenvalue(matrix):.3e}) and salvaging is disabled"
        )


class SpectralSalvaging(SalvagingPolicy):
    """Clip negative eigenvalues to zero and rescale to the original diagonal."""

    name = "spectral"

    def salvage(self, matrix: np.ndarray) -> np.ndarray:
        root = _rescale_rows(pseudo_sqrt(matrix), np.diag(matrix).copy())
        return root @ root.T


class HighamSalvaging(SalvagingPolicy):
    """Nearest correlation matrix by alternating projections (Higham, 2002).

    Covariances are normalised to correlation form first and scaled back
    afterwards; factors with zero variance are left untouched.
    """

    name = "higham"

    def __init__(self, max_iterations: int = 200, tolerance: float = 1e-12) -> None:
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)

    def __repr__(self) -> str:
        return f"HighamSalvaging(max_iterations={self.max_iterations}, tolerance={self.tolerance})"

    def salvage(self, matrix: np.ndarray) -> np.ndarray:
        diagonal = np.diag(matrix).copy()
        active = diagonal > 0.0
        result = np.zeros_like(matrix)
        if not np.any(active):
            return result

        scale = np.sqrt(diagonal[active])
        corr = matrix[np.ix_(active, active)] / np.outer(scale, scale)
        corr = self._nearest_correlation(corr)
        result[np.ix_(active, active)] = corr * np.outer(scale, scale)
        return result

    def _nearest_correlation(self, corr: np.ndarray) -> np.ndarray:
        y = corr.copy()
        correction = np.zeros_like(corr)
        for iteration in range(self.max_iterations):
            r = y - correction
            x = self._project_psd(r)
            correction = x - r
            y_next = x.copy()
            np.fill_diagonal(y_next, 1.0)
            delta = np.linalg.norm(y_next - y, "fro") / max(np.linalg.norm(y_next, "fro"), 1.0)
            y = y_next
            if delta < self.tolerance:
                logger.debug("higham converged after %d iterations", iteration + 1)
                break
        else:
            logger.info("higham reached %d iterations without converging", self.max_iterations)
        # the last unit-diagonal projection may leave tiny negative eigenvalues
        root = _rescale_rows(pseudo_sqrt(y), np.ones(y.shape[0]))
        return root @ root.T

    @staticmethod
    def _project_psd(matrix: np.ndarray) -> np.ndarray:
        eigvals, eigvecs = np.linalg.eigh(0.5 * (matrix + matrix.T))
        return (eigvecs * np.clip(eigvals, 0.0, None)) @ eigvecs.T


_POLICIES: dict[str, type[SalvagingPolicy]] = {
    NoSalvaging.name: NoSalvaging,
    SpectralSalvaging.name: SpectralSalvaging,
    HighamSalvaging.name: HighamSalvaging,
}


def get_salvaging(name: str, *, max_iterations: int = 200, tolerance: float = 1e-12) -> SalvagingPolicy:
    key = (name or "").strip().lower()
    if key not in _POLICIES:
        raise ConfigurationError(f"Unknown salvaging algorithm: {name!r}")
    if key == HighamSalvaging.name:
        return HighamSalvaging(max_iterations=max_iterations, tolerance=tolerance)
    return _POLICIES[key]()


class MatrixRepairer:
    """Validate, salvage if needed, and factorise a symmetric matrix."""

    def __init__(
        self,
        policy: SalvagingPolicy | None = None,
        *,
        psd_tolerance: float = 1e-10,
        symmetry_tolerance: float = 1e-10,
        max_relative_perturbation: float = 0.5,
    ) -> None:
        self.policy = policy or SpectralSalvaging()
        self.psd_tolerance = float(psd_tolerance)
        self.symmetry_tolerance = float(symmetry_tolerance)
        self.max_relative_perturbation = float(max_relative_perturbation)

    def repair(self, matrix: np.ndarray, *, correlation: bool = False) -> np.ndarray:
        arr = validate_matrix(matrix, correlation=correlation, symmetry_tolerance=self.symmetry_tolerance)
        lowest = smallest_eigenvalue(_correlation_form(arr))
        if lowest >= -self.psd_tolerance:
            return arr

        logger.warning(
            "matrix of size %d is not PSD (smallest eigenvalue %.3e); salvaging with %s",
            arr.shape[0],
            lowest,
            self.policy.name,
        )
        repaired = np.asarray(self.policy.salvage(arr), dtype=float)
        if repaired.shape != arr.shape or not np.all(np.isfinite(repaired)):
            raise NumericalError(f"{self.policy.name} salvaging produced an invalid matrix")
        repaired = 0.5 * (repaired + repaired.T)

        lowest_after = smallest_eigenvalue(_correlation_form(repaired))
        if lowest_after < -self.psd_tolerance:
            raise NumericalError(
                f"{self.policy.name} salvaging left smallest eigenvalue {lowest_after:.3e}"
            )
        reference = max(float(np.linalg.norm(arr, "fro")), np.finfo(float).tiny)
        perturbation = float(np.linalg.norm(repaired - arr, "fro")) / reference
        if perturbation > self.max_relative_perturbation:
            raise NumericalError(
                f"{self.policy.name} salvaging perturbed the matrix by {perturbation:.3f} "
                f"(limit {self.max_relative_perturbation:.3f}); inputs are inconsistent"
            )
        logger.debug("salvaged matrix with relative perturbation %.3e", perturbation)
        return repaired

    def sqrt(self, matrix: np.ndarray, *, correlation: bool = False) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(repaired, root)`` with ``root @ root.T == repaired``."""

        repaired = self.repair(matrix, correlation=correlation)
        root = pseudo_sqrt(repaired)
        if not np.all(np.isfinite(root)):
            raise NumericalError("matrix square root contains NaN or infinite entries")
        return repaired, root


__all__ = [
    "validate_matrix",
    "smallest_eigenvalue",
    "is_psd",
    "pseudo_sqrt",
    "SalvagingPolicy",
    "NoSalvaging",
    "SpectralSalvaging",
    "HighamSalvaging",
    "get_salvaging",
    "MatrixRepairer",
]
