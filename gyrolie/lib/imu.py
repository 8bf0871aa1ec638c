import numpy as np
from typing import Any

from gyrolie.types import Input


class Gyro(Input):
    """
    Data container for a gyroscope reading, an angular rate in rad/s
    resolved in the body frame.
    """

    def __init__(
        self,
        gyro: np.ndarray,
        stamp: float = None,
        state_id: Any = None,
        covariance: np.ndarray = None,
    ):
        super().__init__(dof=3, stamp=stamp, state_id=state_id, covariance=covariance)
        self.gyro = np.array(gyro, dtype=np.float64).ravel()  #:np.ndarray: Gyro reading

        if self.gyro.size != 3:
            raise ValueError("Gyro reading must have exactly 3 elements.")

    @property
    def value(self) -> np.ndarray:
        return self.gyro

    def plus(self, w: np.ndarray) -> "Gyro":
        """
        Modifies the gyro reading. This is used to add noise to the data.

        Parameters
        ----------
        w : np.ndarray with size 3
            additive angular rate noise
        """
        new = self.copy()
        new.gyro = new.gyro + np.array(w).ravel()
        return new

    def copy(self) -> "Gyro":
        if self.covariance is None:
            cov_copy = None
        else:
            cov_copy = self.covariance.copy()
        return Gyro(self.gyro.copy(), self.stamp, self.state_id, cov_copy)

    def __repr__(self):
        s = [
            f"Gyro(stamp={self.stamp}, state_id={self.state_id})",
            f"    gyro: {self.gyro.ravel()}",
        ]
        return "\n".join(s)
