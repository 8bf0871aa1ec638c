r"""
Matrix Lie group calculus used throughout gyrolie.

Only the rotation group :math:`SO(3)` is needed here. The ``SO3`` class is a
collection of static methods acting on plain numpy arrays, so that a rotation
is simply a 3 x 3 orthonormal matrix and a tangent-space element is simply a
3-vector. All closed forms are guarded by explicit small-angle (and, for the
logarithm, near-:math:`\pi`) branches so that results stay finite and
continuous without ever raising.
"""

from abc import ABC, abstractmethod
import numpy as np

#: Below this angle, the exponential and logarithm use Taylor expansions.
SMALL_ANGLE_TOL = 1e-8

#: Below this angle, the group Jacobians use second-order Taylor expansions.
SMALL_ANGLE_TOL_JACOBIAN = 1e-6

#: Within this distance of pi, the logarithm extracts the rotation axis from
#: the symmetric part of the matrix.
NEAR_PI_TOL = 1e-4


class MatrixLieGroup(ABC):
    """
    Base class for matrix Lie groups. Concrete groups only need to implement
    ``wedge``, ``vee``, ``exp``, ``log``, ``adjoint`` and ``left_jacobian``.
    """

    #:int: degrees of freedom of the group
    dof = None

    #:int: size of the square matrices representing group elements
    matrix_size = None

    @staticmethod
    @abstractmethod
    def wedge(x: np.ndarray) -> np.ndarray:
        pass

    @staticmethod
    @abstractmethod
    def vee(Xi: np.ndarray) -> np.ndarray:
        pass

    @classmethod
    def identity(cls) -> np.ndarray:
        return np.identity(cls.matrix_size)

    @classmethod
    def Exp(cls, x: np.ndarray) -> np.ndarray:
        """
        Shortcut for ``exp(wedge(x))``, mapping exponential coordinates
        directly to a group element.
        """
        return cls.exp(cls.wedge(x))

    @classmethod
    def Log(cls, X: np.ndarray) -> np.ndarray:
        """
        Shortcut for ``vee(log(X))``, mapping a group element directly to its
        exponential coordinates.
        """
        return cls.vee(cls.log(X))

    @classmethod
    def inverse(cls, X: np.ndarray) -> np.ndarray:
        return np.linalg.inv(X)

    @classmethod
    def random(cls) -> np.ndarray:
        return cls.Exp(np.random.randn(cls.dof))

    @classmethod
    def right_jacobian(cls, x: np.ndarray) -> np.ndarray:
        return cls.left_jacobian(-np.array(x, dtype=float))

    @classmethod
    def left_jacobian_inv(cls, x: np.ndarray) -> np.ndarray:
        return np.linalg.inv(cls.left_jacobian(x))

    @classmethod
    def right_jacobian_inv(cls, x: np.ndarray) -> np.ndarray:
        return cls.left_jacobian_inv(-np.array(x, dtype=float))


class SO3(MatrixLieGroup):
    r"""
    The special orthogonal group of 3D rotations,

    .. math::

        SO(3) = \{ \mathbf{C} \in \mathbb{R}^{3 \times 3} \;|\;
        \mathbf{C}^T \mathbf{C} = \mathbf{1}, \det \mathbf{C} = 1 \}.

    Exponential coordinates are rotation vectors (axis times angle) and the
    wedge operator is the usual cross-product (skew-symmetric) matrix.
    """

    dof = 3
    matrix_size = 3

    @staticmethod
    def wedge(x: np.ndarray) -> np.ndarray:
        x = np.array(x, dtype=float).ravel()
        return np.array(
            [
                [0.0, -x[2], x[1]],
                [x[2], 0.0, -x[0]],
                [-x[1], x[0], 0.0],
            ]
        )

    @staticmethod
    def vee(Xi: np.ndarray) -> np.ndarray:
        return np.array([Xi[2, 1], Xi[0, 2], Xi[1, 0]])

    @staticmethod
    def exp(Xi: np.ndarray) -> np.ndarray:
        r"""
        Closed-form matrix exponential (Rodrigues formula)

        .. math::
            \exp(\boldsymbol{\phi}^\wedge) = \mathbf{1}
            + \frac{\sin\phi}{\phi} \boldsymbol{\phi}^\wedge
            + \frac{1 - \cos\phi}{\phi^2} (\boldsymbol{\phi}^\wedge)^2,

        falling back to its second-order Taylor expansion as
        :math:`\phi \to 0`.
        """
        Xi = np.array(Xi, dtype=float)
        phi = SO3.vee(Xi)
        angle = np.linalg.norm(phi)
        Xi2 = Xi @ Xi

        if angle < SMALL_ANGLE_TOL:
            return np.identity(3) + Xi + 0.5 * Xi2

        return (
            np.identity(3)
            + (np.sin(angle) / angle) * Xi
            + ((1.0 - np.cos(angle)) / angle**2) * Xi2
        )

    @staticmethod
    def log(C: np.ndarray) -> np.ndarray:
        r"""
        Matrix logarithm returning the principal value, i.e. a rotation
        angle in :math:`[0, \pi]`.

        The angle is recovered with ``arctan2`` from both the antisymmetric
        and trace parts of the matrix, which is well conditioned everywhere.
        Near :math:`\pi` the rotation axis comes from the symmetric part
        instead, since the antisymmetric part vanishes there.
        """
        C = np.array(C, dtype=float)
        s = 0.5 * SO3.vee(C - C.T)
        c = 0.5 * (np.trace(C) - 1.0)
        sin_angle = np.linalg.norm(s)
        angle = np.arctan2(sin_angle, c)

        if angle < SMALL_ANGLE_TOL:
            phi = (1.0 + angle**2 / 6.0) * s
        elif np.pi - angle < NEAR_PI_TOL:
            # C + C^T = 2 cos(angle) 1 + 2 (1 - cos(angle)) a a^T
            B = (0.5 * (C + C.T) - c * np.identity(3)) / (1.0 - c)
            k = np.argmax(np.diag(B))
            axis = B[:, k] / np.sqrt(B[k, k])
            if axis @ s < 0:
                axis = -axis
            phi = angle * axis / np.linalg.norm(axis)
        else:
            phi = (angle / sin_angle) * s

        return SO3.wedge(phi)

    @staticmethod
    def Log(C: np.ndarray) -> np.ndarray:
        return SO3.vee(SO3.log(C))

    @staticmethod
    def inverse(C: np.ndarray) -> np.ndarray:
        return np.array(C).T

    @staticmethod
    def adjoint(C: np.ndarray) -> np.ndarray:
        return np.array(C)

    @staticmethod
    def left_jacobian(x: np.ndarray) -> np.ndarray:
        """
        Left Jacobian of the exponential map. Equal to ``right_jacobian(-x)``.
        """
        return SO3.right_jacobian(-np.array(x, dtype=float))

    @staticmethod
    def right_jacobian(x: np.ndarray) -> np.ndarray:
        r"""
        Right Jacobian of the exponential map,

        .. math::
            \mathbf{J}_r(\boldsymbol{\phi}) = \mathbf{1}
            - \frac{1 - \cos\phi}{\phi^2} \boldsymbol{\phi}^\wedge
            + \frac{\phi - \sin\phi}{\phi^3} (\boldsymbol{\phi}^\wedge)^2,

        which satisfies, to first order,

        .. math::
            \exp((\boldsymbol{\phi} + \delta\boldsymbol{\phi})^\wedge)
            \approx \exp(\boldsymbol{\phi}^\wedge)
            \exp((\mathbf{J}_r(\boldsymbol{\phi}) \delta\boldsymbol{\phi})^\wedge).
        """
        x = np.array(x, dtype=float).ravel()
        angle = np.linalg.norm(x)
        X = SO3.wedge(x)
        X2 = X @ X

        if angle < SMALL_ANGLE_TOL_JACOBIAN:
            return np.identity(3) - 0.5 * X + (1.0 / 6.0) * X2

        return (
            np.identity(3)
            - ((1.0 - np.cos(angle)) / angle**2) * X
            + ((angle - np.sin(angle)) / angle**3) * X2
        )

    @staticmethod
    def right_jacobian_inv(x: np.ndarray) -> np.ndarray:
        r"""
        Inverse of the right Jacobian,

        .. math::
            \mathbf{J}_r^{-1}(\boldsymbol{\phi}) = \mathbf{1}
            + \frac{1}{2} \boldsymbol{\phi}^\wedge
            + \left(\frac{1}{\phi^2} - \frac{\cot(\phi/2)}{2\phi}\right)
            (\boldsymbol{\phi}^\wedge)^2.

        This is the derivative of ``Log`` with respect to a right
        perturbation of its argument.
        """
        x = np.array(x, dtype=float).ravel()
        angle = np.linalg.norm(x)
        X = SO3.wedge(x)
        X2 = X @ X

        if angle < SMALL_ANGLE_TOL_JACOBIAN:
            return np.identity(3) + 0.5 * X + (1.0 / 12.0) * X2

        half = 0.5 * angle
        coeff = 1.0 / angle**2 - np.cos(half) / (2.0 * angle * np.sin(half))
        return np.identity(3) + 0.5 * X + coeff * X2

    @staticmethod
    def left_jacobian_inv(x: np.ndarray) -> np.ndarray:
        return SO3.right_jacobian_inv(-np.array(x, dtype=float))

    @staticmethod
    def normalize(C: np.ndarray) -> np.ndarray:
        """
        Projects a nearly-orthonormal matrix back onto :math:`SO(3)`, removing
        the drift accumulated by repeated matrix products.
        """
        U, _, Vt = np.linalg.svd(np.array(C, dtype=float))
        if np.linalg.det(U @ Vt) < 0:
            U[:, -1] = -U[:, -1]
        return U @ Vt

    @staticmethod
    def from_euler(angles: np.ndarray) -> np.ndarray:
        r"""
        Rotation matrix from roll, pitch and yaw angles, composed as

        .. math::
            \mathbf{C} = \mathbf{C}_z(\text{yaw})
            \mathbf{C}_y(\text{pitch}) \mathbf{C}_x(\text{roll}).

        Parameters
        ----------
        angles : np.ndarray with size 3
            ``[roll, pitch, yaw]`` in radians.
        """
        roll, pitch, yaw = np.array(angles, dtype=float).ravel()
        return (
            SO3.Exp([0, 0, yaw]) @ SO3.Exp([0, pitch, 0]) @ SO3.Exp([roll, 0, 0])
        )

