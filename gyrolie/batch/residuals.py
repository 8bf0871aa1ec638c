"""
Residuals used in batch estimation.

These residuals are
    - the PriorResidual, to assign a prior estimate on the state,
    - the AttitudeResidual, which compares the attitude predicted by a
      preintegrated gyro increment with the estimated attitude at the end of
      the integration window.

"""

from abc import ABC, abstractmethod
import logging
from typing import Hashable, List, NamedTuple, Optional, Tuple

import numpy as np

from gyrolie.lib.groups import SO3
from gyrolie.lib.preintegration import AngularVelocityIncrement, gyro_bias_from
from gyrolie.lib.states import SO3State
from gyrolie.types import State

logger = logging.getLogger(__name__)


class Residual(ABC):
    """
    Abstract class for a residual to be used in batch estimation.

    Each residual must implement an evaluate(self, states) method,
    which returns an error and Jacobian of the error with
    respect to each of the states.

    Each residual must contain a list of keys, where each key corresponds to a
    variable for optimization.
    """

    def __init__(self, keys: List[Hashable]):
        # Wrap a single key in a list
        if isinstance(keys, list):
            self.keys = keys
        else:
            self.keys = [keys]

    @abstractmethod
    def evaluate(
        self,
        states: List[State],
        compute_jacobians: List[bool] = None,
    ) -> Tuple[np.ndarray, List[np.ndarray]]:
        """
        Evaluates the residual and Jacobians.

        Parameters
        ----------
        states : List[State]
            List of states for optimization, in the same order as ``keys``.
        compute_jacobians : List[bool], optional
            optional flag to compute Jacobians, by default None

        Returns
        -------
        Tuple[np.ndarray, List[np.ndarray]]
            Returns the error and a list of Jacobians. If ``compute_jacobians``
            is not supplied, only the error is returned.
        """
        pass

    def jacobian_fd(
        self, states: List[State], step_size: float = 1e-6
    ) -> List[np.ndarray]:
        """
        Calculates the Jacobians of the residual with respect to each of the
        states with finite difference.
        """
        e_bar = np.array(self.evaluate(states)).ravel()
        jac_list = []
        for k, x in enumerate(states):
            jac_fd = np.zeros((e_bar.size, x.dof))
            for i in range(x.dof):
                dx = np.zeros((x.dof,))
                dx[i] = step_size
                states_pert = list(states)
                states_pert[k] = x.plus(dx)
                e = np.array(self.evaluate(states_pert)).ravel()
                jac_fd[:, i] = (e - e_bar) / step_size
            jac_list.append(jac_fd)

        return jac_list


class PriorResidual(Residual):
    """
    A generic prior error.
    """

    def __init__(
        self,
        keys: List[Hashable],
        prior_state: State,
        prior_covariance: np.ndarray,
    ):
        super().__init__(keys)
        self._cov = prior_covariance
        self._x0 = prior_state
        # Precompute square-root of info matrix
        self._L = np.linalg.cholesky(np.linalg.inv(self._cov))

    def evaluate(
        self,
        states: List[State],
        compute_jacobians: List[bool] = None,
    ) -> Tuple[np.ndarray, List[np.ndarray]]:
        r"""
        Evaluates the prior error of the form

            e = x.minus(x0),

        where :math:`\mathbf{x}` is our operating point and
        :math:`\mathbf{x}_0` is a prior guess.
        """
        x = states[0]
        error = x.minus(self._x0)
        # Weight the error
        error = self._L.T @ error
        # Compute Jacobian of error w.r.t x
        if compute_jacobians:
            jacobians = [None]

            if compute_jacobians[0]:
                jacobians[0] = self._L.T @ x.minus_jacobian(self._x0)
            return error, jacobians

        return error


class AttitudeError(NamedTuple):
    """
    Result of ``AttitudeResidual.evaluate_error``. ``jacobians`` is ``None``
    unless Jacobians were requested, in which case it holds the Jacobians with
    respect to ``[rot_i, rot_j, bias]``.
    """

    error: np.ndarray
    jacobians: Optional[List[np.ndarray]]


class AttitudeResidual(Residual):
    r"""
    Attitude residual built from preintegrated gyro measurements, binding the
    attitude at time :math:`i`, the attitude at time :math:`j` and the IMU
    bias.

    Given the frozen RMI :math:`\Delta \bar{\mathbf{C}}_{ij}` computed at the
    bias linearization point :math:`\bar{\mathbf{b}}`, with bias Jacobian
    :math:`\mathbf{B}_{ij}` and duration :math:`\Delta t_{ij}`, the RMI is
    first corrected for the current bias estimate,

    .. math::
        \Delta \mathbf{C}_{ij} = \Delta \bar{\mathbf{C}}_{ij}
        \exp\left((\mathbf{B}_{ij} (\mathbf{b}_g - \bar{\mathbf{b}}_g))^\wedge\right)
        \exp\left((-\boldsymbol{\omega}_c \Delta t_{ij})^\wedge\right),

    where the last factor is the optional Coriolis correction. The error is then

    .. math::
        \mathbf{e} = \log\left( (\mathbf{C}_i \Delta \mathbf{C}_{ij})^T \mathbf{C}_j \right)^\vee.

    All Jacobians are computed in closed form. The residual never modifies its
    RMI, so it can be evaluated concurrently from several threads.
    """

    def __init__(
        self,
        keys: List[Hashable],
        rmi: AngularVelocityIncrement,
        omega_coriolis: np.ndarray = None,
        use_coriolis: bool = True,
    ):
        """
        Parameters
        ----------
        keys : List[Hashable]
            Keys of the attitude at time i, the attitude at time j and the bias,
            in that order.
        rmi : AngularVelocityIncrement
            The preintegrated gyro measurements between times i and j. The RMI
            is frozen by this constructor and cannot be integrated further.
        omega_coriolis : np.ndarray, optional
            Rotation rate of the reference frame, resolved in the body frame
            at time i, in rad/s. By default zero.
        use_coriolis : bool, optional
            Whether the Coriolis correction is applied, by default True.
        """
        super().__init__(keys)
        if len(self.keys) != 3:
            raise ValueError(
                "AttitudeResidual requires exactly 3 keys: rot_i, rot_j, bias."
            )

        if omega_coriolis is None:
            omega_coriolis = np.zeros(3)
        omega_coriolis = np.array(omega_coriolis, dtype=np.float64).ravel()
        if omega_coriolis.size != 3:
            raise ValueError("omega_coriolis must have exactly 3 elements.")

        self._rmi = rmi.freeze()
        self._omega_coriolis = omega_coriolis
        self._use_coriolis = use_coriolis
        # Precompute square-root of info matrix
        self._L = np.linalg.cholesky(np.linalg.inv(self._rmi.covariance))

        logger.debug(
            "Created AttitudeResidual %s over %.6f s.", self.keys, rmi.delta_t
        )

    @property
    def rmi(self) -> AngularVelocityIncrement:
        return self._rmi

    @property
    def omega_coriolis(self) -> np.ndarray:
        return self._omega_coriolis.copy()

    @property
    def use_coriolis(self) -> bool:
        return self._use_coriolis

    def dimension(self) -> int:
        return 3

    def covariance(self) -> np.ndarray:
        """
        Covariance of the residual, taken from the RMI.
        """
        return self._rmi.covariance.copy()

    def sqrt_information(self) -> np.ndarray:
        r"""
        Lower Cholesky factor :math:`\mathbf{L}` of the information matrix,
        such that :math:`\mathbf{L} \mathbf{L}^T = \mathbf{Q}_{ij}^{-1}`.
        """
        return self._L.copy()

    def _corrected_rmi(
        self, bias: State
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns the bias- and Coriolis-corrected RMI, along with the bias
        correction vector and the Coriolis rotation used to build it.
        """
        rmi = self._rmi
        db = gyro_bias_from(bias if hasattr(bias, "gyro") else bias.value) - rmi.bias
        phi = rmi.bias_jacobian @ db
        DC = rmi.original_value @ SO3.Exp(phi)

        if self._use_coriolis:
            C_cor = SO3.Exp(-self._omega_coriolis * rmi.delta_t)
            DC = DC @ C_cor
        else:
            C_cor = SO3.identity()

        return DC, phi, C_cor

    def predict(self, rot_i: SO3State, bias: State) -> SO3State:
        """
        Predicts the attitude at time j from the attitude at time i.
        """
        DC, _, _ = self._corrected_rmi(bias)
        rot_j = rot_i.copy()
        rot_j.value = SO3.normalize(rot_i.value @ DC)
        if self._rmi.stamps[1] is not None:
            rot_j.stamp = self._rmi.stamps[1]
        return rot_j

    def evaluate_error(
        self,
        rot_i: SO3State,
        rot_j: SO3State,
        bias: State,
        compute_jacobians: bool = False,
    ) -> AttitudeError:
        """
        Evaluates the unweighted attitude error and, optionally, its Jacobians.

        Parameters
        ----------
        rot_i : SO3State
            Attitude at time i.
        rot_j : SO3State
            Attitude at time j.
        bias : State
            Bias estimate. Either a ``GyroBiasState``, an ``IMUBiasState`` or
            a ``VectorState`` with 3 or 6 elements.
        compute_jacobians : bool, optional
            Whether to also compute the Jacobians, by default False.

        Returns
        -------
        AttitudeError
            The error, and the Jacobians with respect to ``rot_i``, ``rot_j``
            and ``bias`` if requested. Each Jacobian is expressed with respect
            to the perturbation direction of the corresponding state; bias
            perturbations are additive and the columns of any accelerometer
            bias components are zero.
        """
        C_i = rot_i.value
        C_j = rot_j.value
        DC, phi, C_cor = self._corrected_rmi(bias)

        E = DC.T @ C_i.T @ C_j
        e = SO3.Log(E)

        if not compute_jacobians:
            return AttitudeError(e, None)

        J_inv = SO3.right_jacobian_inv(e)

        # Left-perturbation Jacobians, mapped to right perturbations by the
        # adjoint of the state itself.
        H_i = -J_inv @ C_j.T
        H_j = J_inv @ C_j.T
        if rot_i.direction == "right":
            H_i = H_i @ C_i
        if rot_j.direction == "right":
            H_j = H_j @ C_j

        H_bg = (
            -J_inv
            @ E.T
            @ C_cor.T
            @ SO3.right_jacobian(phi)
            @ self._rmi.bias_jacobian
        )
        H_b = np.zeros((3, bias.dof))
        H_b[:, 0:3] = H_bg

        return AttitudeError(e, [H_i, H_j, H_b])

    def evaluate(
        self,
        states: List[State],
        compute_jacobians: List[bool] = None,
    ) -> Tuple[np.ndarray, List[np.ndarray]]:
        """
        Evaluates the attitude error weighted by the square root of the
        information matrix of the RMI, along with the weighted Jacobians
        with respect to ``[rot_i, rot_j, bias]``.
        """
        rot_i, rot_j, bias = states

        result = self.evaluate_error(
            rot_i, rot_j, bias, compute_jacobians=bool(compute_jacobians)
        )

        # Scale the error by the square root of the info matrix
        L = self._L
        e = L.T @ result.error

        if compute_jacobians:
            jac_list = [None] * len(states)
            for k, compute in enumerate(compute_jacobians):
                if compute:
                    jac_list[k] = L.T @ result.jacobians[k]
            return e, jac_list

        return e
