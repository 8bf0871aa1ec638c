"""
Abstract types shared by the rest of gyrolie: inputs fed to preintegration,
states optimized by the batch solver, and process models relating two states.
"""

import numpy as np
from typing import Any
from abc import ABC, abstractmethod


class Input(ABC):
    """
    Base class for anything integrated by a process model, such as a gyro
    reading or a relative motion increment.
    """

    __slots__ = ["stamp", "dof", "covariance", "state_id"]

    def __init__(
        self,
        dof: int,
        stamp: float = None,
        state_id: Any = None,
        covariance: np.ndarray = None,
    ):
        self.stamp = stamp  #:float: Timestamp
        self.dof = dof  #:int: Degrees of freedom of the input
        self.state_id = state_id  #:Any: Optional identifier
        self.covariance = covariance  #:np.ndarray: Optional (dof, dof) covariance

    @abstractmethod
    def plus(self, w: np.ndarray) -> "Input":
        """
        Returns a copy of the input perturbed by ``w``, typically noise.
        """
        pass

    @abstractmethod
    def copy(self) -> "Input":
        pass


class State(ABC):
    r"""
    An element :math:`\mathcal{X}` of a space with ``dof`` degrees of freedom,
    equipped with ``plus`` and ``minus`` so that

    .. math::

        \delta \mathbf{x} = (\mathcal{X} \oplus \delta \mathbf{x}) \ominus \mathcal{X}.

    States are the variables of a batch problem. The solver never modifies a
    state in place: each step produces ``plus``-updated copies.
    """

    __slots__ = ["value", "dof", "stamp", "state_id"]

    def __init__(self, value: Any, dof: int, stamp: float = None, state_id=None):
        self.value = value  #:Any: State value
        self.dof = dof  #:int: Degrees of freedom of the state
        self.stamp = stamp  #:float: Timestamp
        self.state_id = state_id  #:Any: Optional identifier

    @abstractmethod
    def plus(self, dx: np.ndarray) -> "State":
        pass

    @abstractmethod
    def minus(self, x: "State") -> np.ndarray:
        pass

    @abstractmethod
    def copy(self) -> "State":
        pass

    def plus_jacobian(self, dx: np.ndarray) -> np.ndarray:
        r"""
        Derivative of :math:`\mathcal{X} \oplus \delta \mathbf{x}` with respect
        to :math:`\delta \mathbf{x}`. Subclasses override this with a closed
        form; the default is a finite difference.
        """
        return self.plus_jacobian_fd(dx)

    def plus_jacobian_fd(self, dx: np.ndarray, step_size=1e-8) -> np.ndarray:
        dx = np.ravel(dx)
        Y_bar = self.plus(dx)
        jac_fd = np.zeros((self.dof, self.dof))
        for i in range(self.dof):
            step = np.zeros(self.dof)
            step[i] = step_size
            jac_fd[:, i] = np.ravel(self.plus(dx + step).minus(Y_bar)) / step_size
        return jac_fd

    def minus_jacobian(self, x: "State") -> np.ndarray:
        r"""
        Derivative of :math:`\mathcal{X} \ominus \mathcal{Y}` with respect to
        :math:`\mathcal{X}`, where ``x`` plays the role of :math:`\mathcal{Y}`.
        """
        return self.minus_jacobian_fd(x)

    def minus_jacobian_fd(self, x: "State", step_size=1e-8) -> np.ndarray:
        dy_bar = self.minus(x)
        jac_fd = np.zeros((self.dof, self.dof))
        for i in range(self.dof):
            step = np.zeros(self.dof)
            step[i] = step_size
            dy = self.plus(step).minus(x)
            jac_fd[:, i] = np.ravel(dy - dy_bar) / step_size
        return jac_fd

    def __repr__(self):
        value_str = "\n".join("    " + s for s in str(self.value).split("\n"))
        return (
            f"{self.__class__.__name__}(stamp={self.stamp}, dof={self.dof}, "
            f"state_id={self.state_id})\n{value_str}"
        )


class ProcessModel(ABC):
    r"""
    A model :math:`\mathcal{X}_j = f(\mathcal{X}_i, \mathbf{u}) \oplus
    \mathbf{w}` with :math:`\mathbf{w} \sim \mathcal{N}(\mathbf{0},
    \mathbf{Q})`. Implement ``evaluate`` and ``covariance``; ``jacobian``
    falls back to finite differences.
    """

    @abstractmethod
    def evaluate(self, x: State, u: Input, dt: float) -> State:
        """
        Propagates ``x`` with the input ``u``. Must not modify ``x``.
        """
        pass

    @abstractmethod
    def covariance(self, x: State, u: Input, dt: float) -> np.ndarray:
        pass

    def jacobian(self, x: State, u: Input, dt: float) -> np.ndarray:
        """
        Jacobian of ``evaluate`` with respect to ``x``.
        """
        return self.jacobian_fd(x, u, dt)

    def jacobian_fd(
        self, x: State, u: Input, dt: float, step_size=1e-6
    ) -> np.ndarray:
        Y_bar = self.evaluate(x.copy(), u, dt)
        jac_fd = np.zeros((x.dof, x.dof))
        for i in range(x.dof):
            dx = np.zeros(x.dof)
            dx[i] = step_size
            Y = self.evaluate(x.plus(dx), u, dt)
            jac_fd[:, i] = np.ravel(Y.minus(Y_bar)) / step_size
        return jac_fd

    def __repr__(self):
        return f"{self.__class__.__name__} at {hex(id(self))}"


class StateWithCovariance:
    """
    A state paired with the covariance of a perturbation about it, as used to
    score estimates against the ground truth.
    """

    __slots__ = ["state", "covariance"]

    def __init__(self, state: State, covariance: np.ndarray):
        """
        Raises
        ------
        ValueError
            If ``covariance`` is not a ``(state.dof, state.dof)`` array.
        """
        if covariance.shape != (state.dof, state.dof):
            raise ValueError(
                f"Covariance of shape {covariance.shape} does not match a state "
                f"with {state.dof} degrees of freedom."
            )

        #:gyrolie.types.State: state object
        self.state = state

        #:numpy.ndarray: covariance associated with state
        self.covariance = covariance

    @property
    def stamp(self):
        return self.state.stamp

    def copy(self) -> "StateWithCovariance":
        return StateWithCovariance(self.state.copy(), self.covariance.copy())

    def __repr__(self):
        return f"StateWithCovariance(stamp={self.stamp})"
