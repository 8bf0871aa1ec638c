"""Nonlinear least squares over a set of keyed variables.

A ``Problem`` collects variables and residuals (prior residuals, attitude
residuals built from preintegrated gyro measurements, ...) and minimizes the
sum of their robust costs with Gauss-Newton or Levenberg-Marquardt, working
on sparse normal equations.
"""

import collections.abc
import logging
import time
from typing import Dict, Hashable, List, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as sparse_linalg

from gyrolie.batch.losses import L2Loss, LossFunction
from gyrolie.batch.residuals import Residual
from gyrolie.types import State

logger = logging.getLogger(__name__)


class OptimizationSummary:
    """Sizes, cost history and timing of a call to ``Problem.solve``."""

    def __init__(
        self,
        size_state: int,
        size_error: int,
        cost: List[float],
        time: float,
        iterations: int = 0,
    ):
        self.size_state = size_state
        self.size_error = size_error
        self.cost = cost
        self.time = time
        self.iterations = iterations

    def __repr__(self):
        lines = [
            f"Number of states optimized: {self.size_state}.",
            f"Number of error terms: {self.size_error}.",
            f"Cost: {self.cost[0]} -> {self.cost[-1]} in {self.iterations} iterations.",
            f"Total time: {self.time}",
        ]
        return "\n".join(lines)


class Problem:
    """
    Main class for building and solving nonlinear least squares problems.

    Parameters
    ----------
    solver : str, optional
        ``"GN"`` (Gauss-Newton) or ``"LM"`` (Levenberg-Marquardt), by
        default ``"GN"``.
    max_iters : int, optional
        Maximum number of iterations, by default 100.
    step_tol : float, optional
        The solver stops once the norm of a step falls below this value.
    tau : float, optional
        Initial LM damping, relative to the largest diagonal entry of the
        information matrix.
    verbose : bool, optional
        Prints one line per iteration, by default True.
    """

    _solvers = ("GN", "LM")

    def __init__(
        self,
        solver: str = "GN",
        max_iters: int = 100,
        step_tol: float = 1e-7,
        tau: float = 1e-11,
        verbose: bool = True,
    ):
        if solver not in self._solvers:
            raise ValueError(
                f"Unknown solver '{solver}', expected one of {self._solvers}."
            )

        self.solver = solver
        self.max_iters = max_iters
        self.step_tol = step_tol
        self.tau = tau
        self.verbose = verbose

        #:Dict[Hashable, State]: variables as given by the user, never modified
        self.variables_init: Dict[Hashable, State] = {}
        #:Dict[Hashable, State]: current estimate during and after ``solve``
        self.variables: Dict[Hashable, State] = {}
        self.constant_variable_keys: List[Hashable] = []
        self.residual_list: List[Residual] = []
        self.loss_list: List[LossFunction] = []

        # Column range of each optimized variable, row range of each residual
        self.variable_slices: Dict[Hashable, slice] = {}
        self.residual_slices: List[slice] = []
        self._size_state: int = None
        self._size_errors: int = None

        self._iterations = 0
        self._information_matrix: sparse.csc_matrix = None
        self._covariance_matrix: np.ndarray = None

    def add_residual(self, residual: Residual, loss: LossFunction = None):
        """Adds one residual, or a list of residuals, to the problem.

        Parameters
        ----------
        residual : Residual or List[Residual]
            the error term(s) to be added to the problem.
        loss : LossFunction or List[LossFunction], optional
            robust loss for the residual(s), by default L2Loss(). A single
            loss is shared by every residual of a list.
        """
        residuals = residual if isinstance(residual, list) else [residual]
        if loss is None:
            loss = L2Loss()
        losses = loss if isinstance(loss, list) else [loss] * len(residuals)

        self.residual_list.extend(residuals)
        self.loss_list.extend(losses)

    def add_variable(self, key: Hashable, variable: State):
        self.variables_init[key] = variable

    def set_variables_constant(self, keys: List[Hashable]):
        """Holds one key, or a list of keys, fixed during optimization."""
        if isinstance(keys, collections.abc.Hashable):
            keys = [keys]

        for key in keys:
            if key not in self.constant_variable_keys:
                self.constant_variable_keys.append(key)

    def solve(self) -> dict:
        """Runs the selected solver from ``variables_init``.

        Returns
        -------
        dict
            ``"variables"``: the optimized variables, ``"info_matrix"``: the
            information matrix at the solution, ``"summary"``: an
            ``OptimizationSummary``.
        """
        start_t = time.time()

        self.variables = {k: v.copy() for k, v in self.variables_init.items()}
        self._covariance_matrix = None
        self._index_problem()

        if self.solver == "GN":
            cost_history = self._solve_gauss_newton()
        else:
            cost_history = self._solve_LM()

        summary = OptimizationSummary(
            self._size_state,
            self._size_errors,
            cost_history,
            time.time() - start_t,
            self._iterations,
        )
        logger.debug(
            "%s terminated after %d iterations, cost %.4e -> %.4e.",
            self.solver,
            self._iterations,
            cost_history[0],
            cost_history[-1],
        )

        return {
            "variables": self.variables,
            "info_matrix": self._information_matrix,
            "summary": summary,
        }

    def _solve_gauss_newton(self) -> np.ndarray:
        A, b, cost = self._linearize(self.variables)
        cost_list = [cost]
        if self.verbose:
            print("Initial cost: " + str(cost))

        iter_idx = 0
        step_norm = np.inf
        while iter_idx < self.max_iters and step_norm > self.step_tol:
            delta_x = np.atleast_1d(sparse_linalg.spsolve(A, -b))
            self.variables = self._apply_step(self.variables, delta_x)

            # Relinearize so that the information matrix matches the result
            A, b, cost = self._linearize(self.variables)
            cost_list.append(cost)

            step_norm = np.linalg.norm(delta_x)
            iter_idx += 1
            if self.verbose:
                self._display_header(iter_idx, cost, step_norm)

        self._iterations = iter_idx
        self._information_matrix = A
        return np.array(cost_list)

    def _solve_LM(self) -> np.ndarray:
        A, b, cost = self._linearize(self.variables)
        cost_list = [cost]
        if self.verbose:
            print("Initial cost: " + str(cost))

        mu = self.tau * np.amax(A.diagonal())
        nu = 2.0
        identity = sparse.identity(A.shape[0], format="csc")

        iter_idx = 0
        step_norm = np.inf
        while iter_idx < self.max_iters and step_norm > self.step_tol:
            delta_x = np.atleast_1d(sparse_linalg.spsolve(A + mu * identity, -b))
            candidate = self._apply_step(self.variables, delta_x)
            A_new, b_new, cost_new = self._linearize(candidate)

            # Actual over predicted decrease of the cost
            predicted = 0.5 * delta_x @ (mu * delta_x - b)
            gain_ratio = (cost_list[-1] - cost_new) / predicted

            if gain_ratio > 0:
                self.variables = candidate
                A, b = A_new, b_new
                cost_list.append(cost_new)
                mu *= max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                nu = 2.0
                status = "Accepted."
            else:
                mu *= nu
                nu *= 2.0
                status = "Rejected."

            step_norm = np.linalg.norm(delta_x)
            iter_idx += 1
            if self.verbose:
                self._display_header(iter_idx, cost_new, step_norm, status=status)

        self._iterations = iter_idx
        self._information_matrix = A
        return np.array(cost_list)

    def _linearize(
        self, variables: Dict[Hashable, State]
    ) -> Tuple[sparse.csc_matrix, np.ndarray, float]:
        """Evaluates every residual at ``variables``.

        Returns
        -------
        Tuple[sparse.csc_matrix, np.ndarray, float]
            The normal equations ``A = H^T H`` and ``b = H^T e`` of the
            loss-weighted residuals, and the total cost.
        """
        e = np.zeros(self._size_errors)
        H = np.zeros((self._size_errors, self._size_state))
        cost = 0.0

        for residual, loss, rows in zip(
            self.residual_list, self.loss_list, self.residual_slices
        ):
            states = [variables[key] for key in residual.keys]
            compute_jacobians = [
                key not in self.constant_variable_keys for key in residual.keys
            ]
            error, jacobians = residual.evaluate(states, compute_jacobians)

            # Iteratively reweighted least squares for robust losses
            u = np.linalg.norm(error)
            sqrt_weight = np.sqrt(loss.weight(u))
            cost += np.sum(loss.loss(u))
            e[rows] = sqrt_weight * np.ravel(error)

            for key, jac in zip(residual.keys, jacobians):
                if jac is not None:
                    H[rows, self.variable_slices[key]] = sqrt_weight * jac

        H = sparse.csc_matrix(H)
        A = sparse.csc_matrix(H.T @ H)
        b = np.asarray(H.T @ e).ravel()
        return A, b, cost

    def _index_problem(self) -> None:
        """Assigns a column range to every optimized variable and a row range
        to every residual."""
        if not self.variables:
            self.variables = {k: v.copy() for k, v in self.variables_init.items()}

        idx = 0
        self.variable_slices = {}
        for key, var in self.variables.items():
            if key not in self.constant_variable_keys:
                self.variable_slices[key] = slice(idx, idx + var.dof)
                idx += var.dof
        self._size_state = idx

        idx = 0
        self.residual_slices = []
        for residual in self.residual_list:
            states = [self.variables[key] for key in residual.keys]
            size = np.size(residual.evaluate(states))
            self.residual_slices.append(slice(idx, idx + size))
            idx += size
        self._size_errors = idx

    def _apply_step(
        self, variables: Dict[Hashable, State], delta_x: np.ndarray
    ) -> Dict[Hashable, State]:
        """Returns new variables, each optimized one moved by its part of
        ``delta_x`` through its own ``plus``."""
        return {
            key: var.plus(delta_x[self.variable_slices[key]])
            if key in self.variable_slices
            else var
            for key, var in variables.items()
        }

    def get_covariance_block(
        self, key_1: Hashable, key_2: Hashable
    ) -> np.ndarray:
        """Marginal covariance block between two optimized variables.

        Returns
        -------
        np.ndarray
            The block, or None if the covariance could not be computed.

        Raises
        ------
        KeyError
            If either key is not an optimized variable of the problem.
        """
        if self._covariance_matrix is None:
            if self.compute_covariance() is None:
                return None

        try:
            rows = self.variable_slices[key_1]
            cols = self.variable_slices[key_2]
        except KeyError:
            logger.error(
                "Cannot compute covariance block for keys (%s, %s).", key_1, key_2
            )
            raise

        return self._covariance_matrix[rows, cols]

    def compute_covariance(self) -> np.ndarray:
        """Inverts the information matrix at the solution."""
        try:
            self._covariance_matrix = np.atleast_2d(
                sparse_linalg.inv(sparse.csc_matrix(self._information_matrix)).toarray()
            )
            return self._covariance_matrix
        except Exception as e:
            logger.warning("Covariance computation failed: %s", e)
            return None

    def _display_header(
        self, iter_idx: int, current_cost: float, dx: float, status: str = None
    ):
        header = f"Iter: {iter_idx} || Cost: {current_cost:.4e} || Step size: {dx:.4e}"
        if status is not None:
            header += " || Status: " + status
        print(header)
