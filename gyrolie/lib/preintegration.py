r"""
Preintegration of gyroscope measurements.

Many high-rate angular velocity samples between two estimation times
:math:`t_i` and :math:`t_j` are folded once into a single relative motion
increment (RMI)

.. math::
    \Delta \mathbf{C}_{ij} = \prod_{k=i}^{j-1}
    \exp\left(((\tilde{\boldsymbol{\omega}}_k - \bar{\mathbf{b}}_g) \Delta t_k)^\wedge\right),

together with its Jacobian with respect to the gyro bias and its covariance,
so that the summary can be reused unchanged while the estimate of the bias
(and of the endpoint attitudes) changes.
"""

from abc import abstractmethod
import logging
from typing import Any, List, Union

import numpy as np
from tqdm import tqdm

from gyrolie.lib.groups import SO3
from gyrolie.lib.imu import Gyro
from gyrolie.lib.states import MatrixLieGroupState
from gyrolie.types import Input, ProcessModel

logger = logging.getLogger(__name__)


class InvalidDurationError(ValueError):
    """Raised when a non-positive or non-finite duration is integrated."""


class FrozenIncrementError(RuntimeError):
    """Raised when a frozen increment is asked to integrate more data."""


def gyro_bias_from(bias) -> np.ndarray:
    """
    Extracts the gyro part of any supported bias representation: ``None``
    (zero bias), a 3-vector, a stacked ``[gyro, accel]`` 6-vector, or any
    object with a ``gyro`` attribute such as the bias states.
    """
    if bias is None:
        return np.zeros(3)

    if hasattr(bias, "gyro"):
        return np.array(bias.gyro, dtype=np.float64).ravel()

    bias = np.array(bias, dtype=np.float64).ravel()
    if bias.size not in (3, 6):
        raise ValueError(
            "Bias must have 3 (gyro) or 6 (gyro, accel) elements, "
            f"got {bias.size}."
        )
    return bias[0:3]


class RelativeMotionIncrement(Input):
    __slots__ = ["stamps", "covariance", "state_id", "_frozen"]

    def __init__(self, dof: int):
        #:int: Degrees of freedom of the RMI
        self.dof = dof

        #:List[float, float]: the two timestamps i, j associated with the RMI
        self.stamps = [None, None]

        #:np.ndarray: the covariance matrix of the RMI
        self.covariance = None

        #:Any: an ID associated with the RMI
        self.state_id = None

        self._frozen = False

    @property
    def stamp(self):
        """
        The later timestamp :math:`j` of the RMI.
        """
        return self.stamps[1]

    @property
    def is_frozen(self) -> bool:
        """
        Whether the RMI has been frozen, after which it is read-only.
        """
        return self._frozen

    @abstractmethod
    def increment(self, u, dt):
        """
        In-place updating the RMI given an input measurement `u` and a duration `dt`
        over which to preintegrate.
        """
        pass

    @abstractmethod
    def new(self) -> "RelativeMotionIncrement":
        pass

    def freeze(self) -> "RelativeMotionIncrement":
        """
        Ends the integration window. The RMI becomes read-only and any further
        call to ``increment`` raises a ``FrozenIncrementError``. Freezing is
        idempotent, and the RMI itself is returned for convenience.
        """
        if not self._frozen:
            self._frozen = True
            for arr in self._frozen_arrays():
                arr.setflags(write=False)
            logger.debug("Froze %s with stamps %s.", self.__class__.__name__, self.stamps)
        return self

    def _frozen_arrays(self) -> List[np.ndarray]:
        return [self.covariance]

    def _check_open(self):
        if self._frozen:
            raise FrozenIncrementError(
                f"{self.__class__.__name__} is frozen and read-only. "
                "Use .copy() to continue from its current value."
            )

    def symmetrize(self):
        """
        Symmetrize the covariance matrix of the RMI.
        """
        self._check_open()
        self.covariance = 0.5 * (self.covariance + self.covariance.T)

    def update_bias(self, new_bias):
        """
        Update the bias of the RMI such that the new `.value` attribute of this
        RMI instance incorporates the new bias values.
        """
        raise NotImplementedError()


class AngularVelocityIncrement(RelativeMotionIncrement):
    r"""
    This is a preintegration class for angular velocity measurements, on only
    attitude. Given a rotation matrix :math:`\mathbf{C}_{k}`, the preintegrated
    process model is of the form

    .. math::
        \mathbf{C}_{j} = \mathbf{C}_{i} \Delta \mathbf{C}_{ij},

    where :math:`\Delta \mathbf{C}_{ij}` is the preintegrated increment given by

    .. math::
        \Delta \mathbf{C}_{ij} = \prod_{k=i}^{j-1} \exp(\Delta t_k (\mathbf{\omega}_{k} - \bar{\mathbf{b}})^\wedge)

    and :math:`\mathbf{\omega}_{k}` is the angular velocity measurement at time
    :math:`k`. Each increment is composed on the right, so measurements must be
    supplied in chronological order.

    Alongside the rotation, the RMI tracks the first-order sensitivity of
    :math:`\Delta \mathbf{C}_{ij}` to the gyro bias,

    .. math::
        \Delta \mathbf{C}_{ij}(\mathbf{b}) \approx \Delta \mathbf{C}_{ij}(\bar{\mathbf{b}})
        \exp\left((\mathbf{B}_{ij} (\mathbf{b} - \bar{\mathbf{b}}))^\wedge\right),

    and the covariance of a right perturbation of the RMI.
    """

    __slots__ = [
        "original_value",
        "bias",
        "new_bias",
        "delta_t",
        "bias_jacobian",
        "input_covariance",
        "initial_covariance",
    ]

    def __init__(
        self,
        Q: np.ndarray,
        bias: Any = None,
        state_id: Any = None,
        initial_covariance: np.ndarray = None,
    ):
        """
        Initializes an "identity" RMI.

        Parameters
        ----------
        Q : np.ndarray with shape (3, 3)
            Continuous-time covariance (power spectral density) of the gyro
            noise, in rad^2/s. Each integration step adds ``Q * dt`` to the
            RMI covariance.
        bias : Any, optional
            Gyro bias used as the linearization point throughout the window.
            Can be a 3-vector, a stacked ``[gyro, accel]`` 6-vector or a bias
            state, by default zero.
        state_id : Any, optional
            Optional container for other identifying information, by default None.
        initial_covariance : np.ndarray with shape (3, 3), optional
            Covariance the RMI starts from, by default zero.
        """
        super().__init__(dof=3)
        Q = np.atleast_2d(np.array(Q, dtype=np.float64))
        if Q.shape != (3, 3):
            raise ValueError("Input covariance must be 3x3.")

        if initial_covariance is None:
            initial_covariance = np.zeros((3, 3))
        initial_covariance = np.array(initial_covariance, dtype=np.float64)
        if initial_covariance.shape != (3, 3):
            raise ValueError("Initial covariance must be 3x3.")

        self.state_id = state_id
        self.input_covariance = Q
        self.initial_covariance = initial_covariance

        #:numpy.ndarray: the bias value used when computing the RMI
        self.bias = gyro_bias_from(bias)

        #:numpy.ndarray: the bias value used to correct ``value``
        self.new_bias = self.bias

        #:numpy.ndarray: the RMI value before any bias correction
        self.original_value: np.ndarray = SO3.identity()

        #:float: total integrated duration
        self.delta_t = 0.0

        #:numpy.ndarray: the bias jacobian :math:`\mathbf{B}_{ij}`
        self.bias_jacobian = np.zeros((3, 3))

        self.covariance = initial_covariance.copy()

    @property
    def gyro_bias(self) -> np.ndarray:
        return self.bias

    def increment(self, u: Union[Gyro, np.ndarray], dt: float):
        """
        In-place updating the RMI given a gyro reading `u` and a duration `dt`
        over which to preintegrate.

        Parameters
        ----------
        u : Gyro or np.ndarray
            Gyro reading in rad/s. A raw 3-vector is accepted when no
            timestamp bookkeeping is needed.
        dt : float
            Duration in seconds, must be positive.

        Raises
        ------
        InvalidDurationError
            If ``dt`` is not a positive, finite number.
        FrozenIncrementError
            If the RMI has been frozen.
        """
        self._check_open()

        if not np.isfinite(dt) or dt <= 0:
            raise InvalidDurationError(
                f"Integration duration must be positive, got dt={dt}."
            )

        if hasattr(u, "gyro"):
            omega = u.gyro
            stamp = u.stamp
        else:
            omega = np.array(u, dtype=np.float64).ravel()
            stamp = None

        if self.stamps[0] is None:
            if stamp is not None:
                self.stamps[0] = stamp
                self.stamps[1] = stamp + dt
        else:
            self.stamps[1] += dt

        unbiased_gyro = omega - self.bias
        theta = unbiased_gyro * dt

        # Increment the value
        U = SO3.Exp(theta)
        self.original_value = SO3.normalize(self.original_value @ U)

        # Increment the bias jacobian
        A = SO3.adjoint(SO3.inverse(U))
        self.bias_jacobian = A @ self.bias_jacobian - SO3.right_jacobian(theta) * dt

        # Increment the covariance
        self.covariance = A @ self.covariance @ A.T + self.input_covariance * dt
        self.symmetrize()

        self.delta_t += dt

    def update_bias(self, new_bias: Any):
        """
        Internally updates the RMI given a new bias. Only ``value`` is
        affected; the integrated quantities are left untouched. A frozen RMI
        cannot be corrected in place, use ``copy()`` first.

        Parameters
        ----------
        new_bias : Any
            New bias value, in any form accepted by the constructor.
        """
        self._check_open()
        self.new_bias = gyro_bias_from(new_bias)

    @property
    def value(self) -> np.ndarray:
        r"""
        Returns
        -------
        numpy.ndarray
            The bias-corrected RMI matrix :math:`\Delta \mathbf{C}_{ij}`.
        """
        db = self.new_bias - self.bias
        return self.original_value @ SO3.Exp(self.bias_jacobian @ db)

    def plus(self, w: np.ndarray) -> "AngularVelocityIncrement":
        """
        Adds noise to the RMI

        Parameters
        ----------
        w : np.ndarray
            The noise to add

        Returns
        -------
        AngularVelocityIncrement
            The updated RMI
        """
        new = self.copy()
        new.original_value = new.original_value @ SO3.Exp(w)
        return new

    def copy(self) -> "AngularVelocityIncrement":
        """
        Returns
        -------
        AngularVelocityIncrement
            A copy of the RMI. The copy is never frozen, even if this RMI is.
        """
        new = self.new()
        new.original_value = self.original_value.copy()
        new.covariance = self.covariance.copy()
        new.bias_jacobian = self.bias_jacobian.copy()
        new.stamps = self.stamps.copy()
        new.delta_t = self.delta_t
        new.new_bias = self.new_bias.copy()
        return new

    def new(self) -> "AngularVelocityIncrement":
        """
        Returns
        -------
        AngularVelocityIncrement
            A new AngularVelocityIncrement with reinitialized values
        """
        return self.__class__(
            self.input_covariance,
            self.bias,
            self.state_id,
            self.initial_covariance,
        )

    def _frozen_arrays(self) -> List[np.ndarray]:
        return [self.original_value, self.bias, self.bias_jacobian, self.covariance]

    def __repr__(self):
        s = [
            f"{self.__class__.__name__}(stamps={self.stamps}, "
            + f"delta_t={self.delta_t}, frozen={self.is_frozen})",
            "    " + "\n    ".join(str(self.original_value).split("\n")),
        ]
        return "\n".join(s)


class PreintegratedAngularVelocity(ProcessModel):
    r"""
    Process model that performs prediction of an attitude state given an RMI
    :math:`\Delta \mathbf{C}_{ij}` according to the equation

    .. math::
        \mathbf{C}_{j} = \mathbf{C}_{i} \Delta \mathbf{C}_{ij}.

    The covariance is also propagated accordingly. Useful to build initial
    guesses for a batch problem from a chain of RMIs.
    """

    def evaluate(
        self, x: MatrixLieGroupState, rmi: AngularVelocityIncrement, dt=None
    ) -> MatrixLieGroupState:
        x = x.copy()
        if rmi.stamps[-1] is not None and rmi.stamps[0] is not None:
            x.stamp = rmi.stamps[-1]
        x.value = SO3.normalize(x.value @ rmi.value)
        return x

    def jacobian(
        self, x: MatrixLieGroupState, rmi: AngularVelocityIncrement, dt=None
    ) -> np.ndarray:
        if x.direction == "right":
            return SO3.adjoint(SO3.inverse(rmi.value))
        return np.identity(3)

    def covariance(
        self, x: MatrixLieGroupState, rmi: AngularVelocityIncrement, dt=None
    ) -> np.ndarray:
        if x.direction == "right":
            return rmi.covariance.copy()

        Ad = SO3.adjoint(x.value @ rmi.value)
        return Ad @ rmi.covariance @ Ad.T


def integrate_measurements(
    rmi: AngularVelocityIncrement,
    gyro_data: List[Gyro],
    end_stamp: float = None,
    disable_progress_bar: bool = True,
) -> AngularVelocityIncrement:
    """
    Preintegrates a sequence of gyro readings into an RMI, holding each reading
    constant until the stamp of the next one.

    All durations are checked before anything is integrated, so the RMI is
    left untouched when an error is raised.

    Parameters
    ----------
    rmi : AngularVelocityIncrement
        The RMI to integrate into, modified in place.
    gyro_data : List[Gyro]
        Gyro readings. They are sorted by timestamp before integration.
    end_stamp : float, optional
        If provided, the last reading is also integrated up to this time. A
        last reading stamped exactly at ``end_stamp`` adds nothing.
    disable_progress_bar : bool, optional
        Disables the tqdm progress bar, by default True.

    Returns
    -------
    AngularVelocityIncrement
        The same RMI, for convenience.

    Raises
    ------
    InvalidDurationError
        If two readings share a stamp, or ``end_stamp`` is before the last
        reading.
    FrozenIncrementError
        If the RMI has been frozen.
    """
    rmi._check_open()
    gyro_data = sorted(gyro_data, key=lambda u: u.stamp)

    stamps = [u.stamp for u in gyro_data]
    if end_stamp is not None and len(stamps) > 0 and end_stamp != stamps[-1]:
        stamps.append(end_stamp)

    steps = list(zip(gyro_data, np.diff(stamps)))
    for u, dt in steps:
        if not np.isfinite(dt) or dt <= 0:
            raise InvalidDurationError(
                f"Gyro reading at t={u.stamp} spans an invalid duration dt={dt}."
            )

    for u, dt in tqdm(steps, disable=disable_progress_bar):
        rmi.increment(u, dt)

    return rmi
