import numpy as np
from typing import Any

from gyrolie.lib.groups import MatrixLieGroup, SO3
from gyrolie.types import State


class VectorState(State):
    """
    A standard vector-based state, with value represented by a 1D numpy array.
    """

    def __init__(self, value: np.ndarray, stamp: float = None, state_id=None):
        value = np.array(value, dtype=np.float64).ravel()
        super(VectorState, self).__init__(
            value=value,
            dof=value.size,
            stamp=stamp,
            state_id=state_id,
        )
        self.value: np.ndarray = self.value  # just for type hinting

    def plus(self, dx: np.ndarray) -> "VectorState":
        new = self.copy()
        dx = np.array(dx)
        if dx.size == self.dof:
            new.value = new.value.ravel() + dx.ravel()
            return new
        else:
            raise ValueError("Array of mismatched size added to VectorState.")

    def minus(self, x: "VectorState") -> np.ndarray:
        og_shape = self.value.shape
        return (self.value.ravel() - x.value.ravel()).reshape(og_shape)

    def plus_jacobian(self, dx: np.ndarray) -> np.ndarray:
        return np.identity(self.dof)

    def minus_jacobian(self, x: State) -> np.ndarray:
        return np.identity(self.dof)

    def copy(self) -> "VectorState":
        return VectorState(self.value.copy(), self.stamp, self.state_id)


class GyroBiasState(VectorState):
    """
    A constant gyroscope bias, a 3-vector in rad/s. This is the only bias
    quantity that participates in attitude preintegration.
    """

    def __init__(self, value: np.ndarray = None, stamp: float = None, state_id=None):
        if value is None:
            value = np.zeros(3)

        value = np.array(value, dtype=np.float64).ravel()
        if value.size != 3:
            raise ValueError("Gyro bias must have exactly 3 elements.")

        super().__init__(value, stamp, state_id)

    @property
    def gyro(self) -> np.ndarray:
        return self.value

    @gyro.setter
    def gyro(self, b):
        self.value = np.array(b, dtype=np.float64).ravel()

    @staticmethod
    def from_imu_bias(bias: "IMUBiasState") -> "GyroBiasState":
        """
        Keeps only the gyroscope part of a full IMU bias.
        """
        return GyroBiasState(bias.gyro.copy(), bias.stamp, bias.state_id)

    def copy(self) -> "GyroBiasState":
        return GyroBiasState(self.value.copy(), self.stamp, self.state_id)


class IMUBiasState(VectorState):
    """
    Full IMU bias, stacked as ``[gyro_bias, accel_bias]``. Factors that only
    involve attitude read the gyro part and leave the accelerometer part
    untouched, so that the same bias variable can be shared with factors
    that do use it.
    """

    def __init__(
        self,
        gyro_bias: np.ndarray = None,
        accel_bias: np.ndarray = None,
        stamp: float = None,
        state_id=None,
    ):
        if gyro_bias is None:
            gyro_bias = np.zeros(3)
        if accel_bias is None:
            accel_bias = np.zeros(3)

        gyro_bias = np.array(gyro_bias, dtype=np.float64).ravel()
        accel_bias = np.array(accel_bias, dtype=np.float64).ravel()
        if gyro_bias.size != 3 or accel_bias.size != 3:
            raise ValueError("Gyro and accel biases must each have 3 elements.")

        super().__init__(np.hstack([gyro_bias, accel_bias]), stamp, state_id)

    @property
    def gyro(self) -> np.ndarray:
        return self.value[0:3]

    @gyro.setter
    def gyro(self, b):
        self.value[0:3] = np.array(b).ravel()

    @property
    def accel(self) -> np.ndarray:
        return self.value[3:6]

    @accel.setter
    def accel(self, b):
        self.value[3:6] = np.array(b).ravel()

    def copy(self) -> "IMUBiasState":
        return IMUBiasState(
            self.gyro.copy(), self.accel.copy(), self.stamp, self.state_id
        )


class MatrixLieGroupState(State):
    """
    The MatrixLieGroupState class. Although this class can technically be used
    directly, it is recommended to use one of the subclasses instead, such as
    ``SO3State``.
    """

    __slots__ = ["group", "direction"]

    def __init__(
        self,
        value: np.ndarray,
        group: MatrixLieGroup,
        stamp: float = None,
        state_id: Any = None,
        direction="right",
    ):
        r"""
        Parameters
        ----------
        value : np.ndarray
            Value of of the state. If the value has as many elements as the
            DOF of the group, then it is assumed to be a vector of exponential
            coordinates. Otherwise, the value must be a 2D numpy array representing
            a direct element of the group in matrix form.
        group : MatrixLieGroup
            A ``MatrixLieGroup`` class, such as ``gyrolie.lib.groups.SO3``.
        stamp : float, optional
            timestamp, by default None
        state_id : Any, optional
            optional state ID, by default None
        direction : str, optional
            either "left" or "right", by default "right". Defines the perturbation
            :math:`\delta \mathbf{x}` as either

            .. math::
                \mathbf{X} = \mathbf{X} \exp(\delta \mathbf{x}^\wedge) \text{ (right)}

                \mathbf{X} = \exp(\delta \mathbf{x}^\wedge) \mathbf{X} \text{ (left)}
        """
        value = np.array(value, dtype=np.float64)

        if value.size == group.dof:
            value = group.Exp(value)
        elif value.ndim != 2 or value.shape[0] != value.shape[1]:
            raise ValueError(
                f"value must either be a {group.dof}-length vector of exponential"
                " coordinates or a matrix direct element of the group."
            )

        if direction not in ("left", "right"):
            raise ValueError("direction must either be 'left' or 'right'.")

        self.direction = direction
        self.group = group
        super(MatrixLieGroupState, self).__init__(
            value, self.group.dof, stamp, state_id
        )
        self.value: np.ndarray = self.value  # just for type hinting

    def plus(self, dx: np.ndarray) -> "MatrixLieGroupState":
        new = self.copy()
        if self.direction == "right":
            new.value = self.value @ self.group.Exp(dx)
        elif self.direction == "left":
            new.value = self.group.Exp(dx) @ self.value
        else:
            raise ValueError("direction must either be 'left' or 'right'.")
        return new

    def minus(self, x: "MatrixLieGroupState") -> np.ndarray:
        if self.direction == "right":
            diff = self.group.Log(self.group.inverse(x.value) @ self.value)
        elif self.direction == "left":
            diff = self.group.Log(self.value @ self.group.inverse(x.value))
        else:
            raise ValueError("direction must either be 'left' or 'right'.")
        return diff.ravel()

    def copy(self) -> "MatrixLieGroupState":
        # Check if instance of this class as opposed to a child class
        if type(self) == MatrixLieGroupState:
            return MatrixLieGroupState(
                self.value.copy(),
                self.group,
                self.stamp,
                self.state_id,
                self.direction,
            )
        else:
            return self.__class__(
                self.value.copy(),
                self.stamp,
                self.state_id,
                self.direction,
            )

    def plus_jacobian(self, dx: np.ndarray) -> np.ndarray:
        if self.direction == "right":
            jac = self.group.right_jacobian(dx)
        elif self.direction == "left":
            jac = self.group.left_jacobian(dx)
        else:
            raise ValueError("direction must either be 'left' or 'right'.")
        return jac

    def minus_jacobian(self, x: "MatrixLieGroupState") -> np.ndarray:
        dx = self.minus(x)
        if self.direction == "right":
            jac = self.group.right_jacobian_inv(dx)
        elif self.direction == "left":
            jac = self.group.left_jacobian_inv(dx)
        else:
            raise ValueError("direction must either be 'left' or 'right'.")
        return jac

    def dot(self, other: "MatrixLieGroupState") -> "MatrixLieGroupState":
        new = self.copy()
        new.value = self.value @ other.value
        return new

    def __repr__(self):
        value_str = str(self.value).split("\n")
        value_str = "\n".join(["    " + s for s in value_str])
        s = [
            f"{self.__class__.__name__}(stamp={self.stamp},"
            + f" state_id={self.state_id}, direction={self.direction})",
            f"{value_str}",
        ]
        return "\n".join(s)


class SO3State(MatrixLieGroupState):
    r"""
    A state object for rotations in 3D. The value of this state is stored as a
    3x3 numpy array representing a direct element of the SO3 group. I.e.,

    .. math::

        \mathbf{C} \in \mathbb{R}^{3 \times 3}, \quad
        \mathbf{C}^T \mathbf{C} = \mathbf{1}, \quad \det(\mathbf{C}) = 1

    """

    group = SO3

    def __init__(
        self,
        value: np.ndarray,
        stamp: float = None,
        state_id=None,
        direction="right",
    ):
        super().__init__(value, self.group, stamp, state_id, direction)

    @property
    def attitude(self):
        return self.value

    @attitude.setter
    def attitude(self, C):
        self.value = C

    def dot(self, other: "SO3State") -> "SO3State":
        new = self.copy()
        new.value = SO3.normalize(self.value @ other.value)
        return new

    @staticmethod
    def from_euler(
        angles: np.ndarray, stamp: float = None, state_id=None, direction="right"
    ) -> "SO3State":
        """
        Creates a rotation state from ``[roll, pitch, yaw]`` angles in radians.
        """
        return SO3State(
            SO3.from_euler(angles),
            stamp=stamp,
            state_id=state_id,
            direction=direction,
        )

    @staticmethod
    def random(stamp: float = None, state_id=None, direction="right"):
        return SO3State(
            SO3.random(), stamp=stamp, state_id=state_id, direction=direction
        )
