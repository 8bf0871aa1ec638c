"""Robust loss functions to be used in nonlinear least squares problems.

Each loss acts on the norm of a whitened residual and provides both the cost
and the weight used to reweight the residual inside the solver.
"""

from abc import ABC, abstractmethod

import numpy as np


class LossFunction(ABC):
    """
    Abstract base class for any loss function.
    """

    @abstractmethod
    def loss(self, e: float) -> float:
        r"""
        The loss function defines the cost :math:`\rho(e)`, where :math:`e` is
        the norm of a whitened error term.
        """
        pass

    @abstractmethod
    def weight(self, e: float) -> float:
        """
        The weight that depends on the current value of the error, used to
        reweight the original least squares problem.
        """
        pass


class L2Loss(LossFunction):
    """
    Standard L2 loss, 0.5 * e * e, with a constant weight of one.
    """

    def loss(self, e: float) -> float:
        return 0.5 * e * e

    def weight(self, e: float) -> float:
        return 1.0


class CauchyLoss(LossFunction):
    """
    Cauchy loss, with the form of "MacTavish, Barfoot - At All Costs".
    Down-weights residuals whose whitened norm is large compared to ``c``.
    """

    def __init__(self, c: float = 1.0):
        if c <= 0:
            raise ValueError("Cauchy loss parameter must be positive.")
        self.c = c

    def loss(self, e: float) -> float:
        return (0.5 * self.c**2) * np.log(1.0 + (e / self.c) ** 2)

    def weight(self, e: float) -> float:
        return 1.0 / (1.0 + (e / self.c) ** 2)
