from numba import njit
import numpy as np


@njit
def is_symmetric(x: np.ndarray, tol: float = 1e-10) -> bool:
    return np.all(np.abs(x - x.T) <= tol * (1. + np.abs(x)))


@njit
def is_positive_definite(x: np.ndarray) -> bool:
    # noinspection PyBroadException
    try:
        np.linalg.cholesky(x)
        return True
    except Exception:
        return False


def symmetrize(x: np.ndarray) -> np.ndarray:
    return 0.5 * (x + x.T)


def covariance(U: np.ndarray, D: np.ndarray) -> np.ndarray:
    """
    Reconstruct a dense covariance matrix from its SVD factors,
    i.e., U.diag(D ** 2).U'.
    """
    return (U * D ** 2).dot(U.T)


def psd_factor(x: np.ndarray) -> tuple:
    """
    Factor a symmetric positive semi-definite matrix as U.diag(D ** 2).U'.
    Eigenvalues that are negative due to round-off are clipped to 0.

    :param x: ndarray of dimension (d, d).
    :return: tuple (U, D) with U of dimension (d, d) and D of dimension (d,).
    """
    eig_val, eig_vec = np.linalg.eigh(symmetrize(x))
    return eig_vec, np.sqrt(np.clip(eig_val, 0., None))


def psd_sqrt(x: np.ndarray) -> np.ndarray:
    """
    Square root S of a symmetric positive semi-definite matrix such that
    S'.S = x. Rows that correspond to zero eigenvalues are all zeros.
    """
    U, D = psd_factor(x)
    return D[:, np.newaxis] * U.T


def pinv_from_factors(U: np.ndarray, D: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    """
    Moore-Penrose inverse of U.diag(D ** 2).U'. Singular values below
    tol * max(D) are treated as 0.
    """
    D_inv2 = np.zeros_like(D)
    keep = D > tol * max(D.max(), 0.)
    D_inv2[keep] = 1. / D[keep] ** 2
    return (U * D_inv2).dot(U.T)
