"""
Matrix operations for reversible substitution models.

Rate matrices are built from exchangeabilities and frequencies, and
transition probabilities come from the eigendecomposition of the
symmetrized rate matrix.
"""

import numpy as np


def eigen_decompose_rev(Q: np.ndarray, pi: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose reversible rate matrix Q = U @ diag(eigenvalues) @ V.

    Uses symmetrization trick for reversible (time-reversible) rate matrices:
    Transform Q to symmetric matrix Q' = √D @ Q @ √D^(-1), where D = diag(pi),
    then eigendecompose Q' and transform back.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying detailed balance: π_i * Q[i,j] = π_j * Q[j,i]
    pi : ndarray, shape (n,)
        Stationary distribution (strictly positive)

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues of Q, sorted in ascending order
    U : ndarray, shape (n, n)
        Left eigenvector matrix
    V : ndarray, shape (n, n)
        Right eigenvector matrix

    Notes
    -----
    P(t) = U @ diag(exp(eigenvalues * t)) @ V
    """
    sqrt_pi = np.sqrt(pi)

    # Symmetrize: Q' = √D @ Q @ √D^(-1)
    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # Remove rounding asymmetry before eigh
    Q_sym = (Q_sym + Q_sym.T) / 2.0

    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def transition_matrix(
    eigen: tuple[np.ndarray, np.ndarray, np.ndarray], t: float
) -> np.ndarray:
    """
    Transition probabilities P(t) from an eigendecomposition.

    Tiny negative entries produced by rounding are clipped to zero.

    Parameters
    ----------
    eigen : tuple
        (eigenvalues, U, V) as returned by :func:`eigen_decompose_rev`
    t : float
        Branch length

    Returns
    -------
    np.ndarray, shape (n, n)
    """
    eigenvalues, U, V = eigen
    P = U @ (np.exp(eigenvalues * t)[:, np.newaxis] * V)
    return np.maximum(P, 0.0)


def create_reversible_Q(
    rates: np.ndarray, pi: np.ndarray, normalize: bool = True
) -> np.ndarray:
    """
    Create a reversible rate matrix from exchangeability rates and stationary distribution.

    Parameters
    ----------
    rates : ndarray, shape (n, n)
        Symmetric exchangeability matrix (r[i,j] = r[j,i])
    pi : ndarray, shape (n,)
        Stationary distribution (equilibrium frequencies)
    normalize : bool, default=True
        If True, scale Q so that expected rate is 1 substitution per time unit

    Returns
    -------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying detailed balance

    Notes
    -----
    The rate matrix is constructed as Q[i,j] = r[i,j] * pi[j] for i ≠ j,
    and Q[i,i] = -sum(Q[i,j] for j ≠ i).

    Examples
    --------
    >>> # JC69 model
    >>> rates = np.ones((4, 4)) - np.eye(4)  # All rates equal
    >>> pi = np.ones(4) / 4
    >>> Q = create_reversible_Q(rates, pi)
    """
    Q = rates * pi[np.newaxis, :]

    np.fill_diagonal(Q, 0.0)
    row_sums = np.sum(Q, axis=1)
    np.fill_diagonal(Q, -row_sums)

    if normalize:
        # Expected rate = -sum(π_i * Q[i,i])
        expected_rate = -np.dot(pi, Q.diagonal())
        Q /= expected_rate

    return Q


def rates_from_joint_frequencies(
    joint: np.ndarray, floor: float = 1e-6
) -> tuple[np.ndarray, np.ndarray]:
    """
    Exchangeabilities and frequencies implied by a table of pair frequencies.

    ``joint[i, j]`` is read as the frequency of aligned pairs (i, j) after
    one unit of divergence, so ``P = diag(pi)^-1 @ joint`` is a transition
    matrix and ``log(P)`` the rate matrix behind it. The logarithm is taken
    on the eigenvalues of ``diag(pi)^-1/2 @ joint @ diag(pi)^-1/2``, the
    same symmetric frame used by :func:`eigen_decompose_rev`.

    Parameters
    ----------
    joint : ndarray, shape (n, n)
        Pair frequencies; symmetrized and normalised to sum to 1
    floor : float
        Lower bound for eigenvalues before the logarithm and for the
        resulting exchangeabilities

    Returns
    -------
    rates : ndarray, shape (n, n)
        Symmetric exchangeabilities with zero diagonal (arbitrary scale)
    pi : ndarray, shape (n,)
        Marginal frequencies of the table
    """
    joint = np.asarray(joint, dtype=np.float64)
    joint = (joint + joint.T) / 2.0
    joint = joint / joint.sum()
    pi = joint.sum(axis=1)

    inv_sqrt_pi = 1.0 / np.sqrt(pi)
    sym = joint * inv_sqrt_pi[:, np.newaxis] * inv_sqrt_pi[np.newaxis, :]
    eigenvalues, eigenvectors = np.linalg.eigh(sym)
    log_sym = (eigenvectors * np.log(np.maximum(eigenvalues, floor))) @ eigenvectors.T

    # r[i,j] = Q[i,j] / pi[j] = log_sym[i,j] / sqrt(pi[i] * pi[j])
    rates = log_sym * inv_sqrt_pi[:, np.newaxis] * inv_sqrt_pi[np.newaxis, :]
    rates = np.maximum((rates + rates.T) / 2.0, floor)
    np.fill_diagonal(rates, 0.0)
    return rates, pi
