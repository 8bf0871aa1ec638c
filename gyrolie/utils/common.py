"""
Consistency and finite-difference helpers shared by the tests and by users
checking their own preintegration setups.
"""

import logging
from typing import Any, Callable, List, Union

import numpy as np
from joblib import Parallel, delayed
from scipy.stats.distributions import chi2

from gyrolie.types import State, StateWithCovariance

logger = logging.getLogger(__name__)


class GaussianResult:
    """
    Error of a single Gaussian estimate against the ground truth, along with
    its normalized estimation error squared (NEES).
    """

    __slots__ = ["stamp", "state", "state_true", "covariance", "error", "nees"]

    def __init__(self, estimate: StateWithCovariance, state_true: State):
        """
        Parameters
        ----------
        estimate : StateWithCovariance
            Estimated state and corresponding covariance.
        state_true : State
            The true state. The error is ``state_true.minus(estimate.state)``,
            so it lives in the tangent space of the estimate.
        """
        self.stamp = estimate.state.stamp
        self.state = estimate.state
        self.state_true = state_true
        self.covariance = estimate.covariance

        #:numpy.ndarray: error between the true and estimated states
        self.error = np.ravel(state_true.minus(estimate.state))

        #:float: error squared, weighted by the inverse covariance
        self.nees = float(self.error @ np.linalg.solve(self.covariance, self.error))


class GaussianResultList:
    """
    Stacks the ``GaussianResult`` of one trial, one entry per recorded time.
    """

    __slots__ = ["stamp", "error", "nees", "dof"]

    def __init__(self, result_list: List[GaussianResult]):
        #:numpy.ndarray with shape (N,): timestamps
        self.stamp = np.array([r.stamp for r in result_list])
        #:numpy.ndarray with shape (N, dof): errors
        self.error = np.array([r.error for r in result_list])
        #:numpy.ndarray with shape (N,): NEES of each estimate
        self.nees = np.array([r.nees for r in result_list])
        #:numpy.ndarray with shape (N,): degrees of freedom of each estimate
        self.dof = np.array([r.state.dof for r in result_list])

    @staticmethod
    def from_estimates(
        estimate_list: List[StateWithCovariance],
        state_true_list: List[State],
    ) -> "GaussianResultList":
        """
        Pairs estimates with true states of matching order.
        """
        if len(estimate_list) != len(state_true_list):
            raise ValueError("Estimates and true states must have the same length.")

        return GaussianResultList(
            [GaussianResult(x, x_true) for x, x_true in zip(estimate_list, state_true_list)]
        )


class MonteCarloResult:
    r"""
    Average NEES over many trials sharing the same timestamps.

    For a consistent estimator, the sum of the NEES of :math:`M` independent
    trials follows a :math:`\chi^2` distribution with :math:`M \cdot dof`
    degrees of freedom, which gives the bounds returned by
    ``nees_lower_bound`` and ``nees_upper_bound``.
    """

    def __init__(self, trial_results: List[GaussianResultList]):
        #:int: number of trials
        self.num_trials = len(trial_results)
        #:numpy.ndarray with shape (N,): timestamps, taken from the first trial
        self.stamp = trial_results[0].stamp
        #:numpy.ndarray with shape (N,): dof of each estimate
        self.dof = trial_results[0].dof
        #:numpy.ndarray with shape (N,): expected value of the average NEES
        self.expected_nees = self.dof.copy()
        #:numpy.ndarray with shape (N,): NEES averaged over the trials
        self.average_nees = np.mean([t.nees for t in trial_results], axis=0)

    def _chi2_bound(self, probability: float) -> np.ndarray:
        df = self.num_trials * self.dof
        return chi2.ppf(probability, df=df) / self.num_trials

    def nees_lower_bound(self, confidence_interval: float) -> np.ndarray:
        """
        Lower end of the two-sided ``confidence_interval`` on the average NEES.
        """
        if not 0 < confidence_interval < 1:
            raise ValueError("Confidence interval must lie in (0, 1)")
        return self._chi2_bound(0.5 * (1 - confidence_interval))

    def nees_upper_bound(self, confidence_interval: float) -> np.ndarray:
        """
        Upper end of the two-sided ``confidence_interval`` on the average NEES.
        """
        if not 0 < confidence_interval < 1:
            raise ValueError("Confidence interval must lie in (0, 1)")
        return self._chi2_bound(0.5 * (1 + confidence_interval))


def monte_carlo(
    trial: Callable[[int], GaussianResultList],
    num_trials: int,
    num_jobs: int = -1,
    verbose: int = 0,
) -> MonteCarloResult:
    """
    Runs ``trial(0), ..., trial(num_trials - 1)`` with joblib and aggregates
    the results.

    Parameters
    ----------
    trial : Callable[[int], GaussianResultList]
        Runs one trial given its number, which is typically used to seed the
        trial's random generator. All trials must record the same stamps.
    num_trials : int
        Number of trials.
    num_jobs: int, optional
        Passed to ``joblib.Parallel``, by default -1 (all CPUs). Use 1 to run
        the trials sequentially in this process.
    verbose: int, optional
        Verbosity level passed to joblib, by default 0.
    """
    logger.info("Starting Monte Carlo experiment with %d trials.", num_trials)
    trial_results = Parallel(n_jobs=num_jobs, verbose=verbose)(
        delayed(trial)(i) for i in range(num_trials)
    )

    return MonteCarloResult(trial_results)


def randvec(cov: np.ndarray, num_samples: int = 1, rng=None) -> np.ndarray:
    """
    Draws zero-mean samples with covariance ``cov``, one per column, so the
    result has shape ``(n, num_samples)``. ``rng`` is an optional
    ``np.random.Generator``; the global numpy state is used otherwise.
    """
    if rng is None:
        rng = np.random
    w = rng.normal(0, 1, (cov.shape[0], num_samples))
    return np.linalg.cholesky(cov) @ w


def jacobian(
    fun: Callable,
    x: Union[np.ndarray, State],
    step_size: float = None,
    method: str = "forward",
    *args: Any,
    **kwargs: Any,
) -> np.ndarray:
    """
    Compute the Jacobian of a function with finite differences. The input and
    output may be numpy arrays or ``State`` objects, in which case the
    derivative is taken on-manifold using ``plus`` and ``minus``. Example use:

    .. code-block:: python

        C = SO3State([0.1, 0.2, 0.3], direction="right")

        def fun(C: SO3State):
            return SO3.Log(C.value)

        # Approximately SO3.right_jacobian_inv([0.1, 0.2, 0.3])
        jac_fd = jacobian(fun, C)

    Parameters
    ----------
    fun : Callable
        function to compute the Jacobian of
    x : Union[np.ndarray, State]
        input to the function
    step_size : float, optional
        finite difference step size, by default 1e-6
    method : str, optional
        "forward" or "central", by default "forward".

    Returns
    -------
    np.ndarray with shape (M, N)
        Jacobian of the function, where ``M`` is the DOF of the output and
        ``N`` is the DOF of the input.
    """
    if method not in ("forward", "central"):
        raise ValueError(
            f"Unknown method '{method}'. Must be 'forward' or 'central'."
        )

    if step_size is None:
        step_size = 1e-6

    x = x.copy()
    is_state = hasattr(x, "plus")
    N = x.dof if is_state else x.size

    Y_bar = fun(x.copy(), *args, **kwargs)
    M = Y_bar.dof if hasattr(Y_bar, "dof") else np.size(Y_bar)

    def diff_at(dx: np.ndarray) -> np.ndarray:
        x_pert = x.plus(dx) if is_state else x + dx.reshape(x.shape)
        Y = fun(x_pert, *args, **kwargs)
        if hasattr(Y_bar, "minus"):
            return np.ravel(Y.minus(Y_bar))
        return np.ravel(np.asarray(Y) - np.asarray(Y_bar))

    # Round-off of minus() at the unperturbed input
    diff_bar = diff_at(np.zeros(N))

    jac_fd = np.zeros((M, N))
    for i in range(N):
        dx = np.zeros(N)
        dx[i] = step_size
        if method == "forward":
            jac_fd[:, i] = (diff_at(dx) - diff_bar) / step_size
        else:
            jac_fd[:, i] = (diff_at(dx) - diff_at(-dx)) / (2 * step_size)

    return jac_fd
