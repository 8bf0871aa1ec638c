"""
The built-in library of rotation groups, states, and gyro preintegration.
"""

from .groups import MatrixLieGroup, SO3

from .states import (
    VectorState,
    GyroBiasState,
    IMUBiasState,
    MatrixLieGroupState,
    SO3State,
)

from .imu import Gyro

from .preintegration import (
    InvalidDurationError,
    FrozenIncrementError,
    RelativeMotionIncrement,
    AngularVelocityIncrement,
    PreintegratedAngularVelocity,
    integrate_measurements,
)
