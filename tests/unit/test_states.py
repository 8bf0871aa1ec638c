from gyrolie.lib import (
    VectorState,
    SO3State,
    GyroBiasState,
    IMUBiasState,
    MatrixLieGroupState,
)
from gyrolie.lib.groups import SO3
from gyrolie.types import State, StateWithCovariance
import numpy as np
import pytest
from typing import Dict

sample_states: Dict[str, State] = {
    "vector": VectorState([1, 2, 3]),
    "so3_right": SO3State([0.1, 0.2, 0.3], direction="right"),
    "so3_left": SO3State([0.1, 0.2, 0.3], direction="left"),
    "gyro_bias": GyroBiasState([0.01, -0.02, 0.03]),
    "imu_bias": IMUBiasState([0.01, -0.02, 0.03], [0.1, 0.2, 0.3]),
    "mlg": MatrixLieGroupState(SO3.Exp([0.4, -0.1, 1.2]), SO3),
}
state_names = list(sample_states.keys())


@pytest.mark.parametrize("s", state_names)
def test_plus_minus(s: str):
    x = sample_states[s]
    dx = 0.3 * np.random.randn(x.dof)
    x2 = x.plus(dx)
    dx_test = x2.minus(x).ravel()
    assert np.allclose(dx, dx_test)


@pytest.mark.parametrize("s", state_names)
def test_plus_jacobian(s: str):
    x = sample_states[s]
    dx = 0.3 * np.random.randn(x.dof)
    jac = x.plus_jacobian(dx)
    jac_test = x.plus_jacobian_fd(dx)
    assert np.allclose(jac, jac_test, atol=1e-5)


@pytest.mark.parametrize("s", state_names)
def test_minus_jacobian(s: str):
    x = sample_states[s]
    dx = 0.3 * np.random.randn(x.dof)
    x2 = x.plus(dx)
    jac = x.minus_jacobian(x2)
    jac_test = x.minus_jacobian_fd(x2)
    assert np.allclose(jac, jac_test, atol=1e-5)


@pytest.mark.parametrize("s", state_names)
def test_copy_is_independent(s: str):
    x = sample_states[s]
    x_copy = x.copy()
    assert type(x_copy) == type(x)
    x_copy.value[0] += 1.0
    assert not np.allclose(x_copy.value, x.value)


@pytest.mark.parametrize("s", ["so3_right", "so3_left", "mlg"])
def test_mlg_dot(s: str):
    x = sample_states[s]
    dx = 0.3 * np.random.randn(x.dof)
    x2 = x.plus(dx)
    xdot = x.dot(x2)
    assert np.allclose(xdot.value, x.value @ x2.value, atol=1e-5)


def test_so3_direction():
    C = SO3.Exp([0.3, 0.2, -0.1])
    dx = np.array([0.01, 0.02, -0.03])
    x_right = SO3State(C, direction="right")
    x_left = SO3State(C, direction="left")
    assert np.allclose(x_right.plus(dx).value, C @ SO3.Exp(dx))
    assert np.allclose(x_left.plus(dx).value, SO3.Exp(dx) @ C)
    assert x_left.copy().direction == "left"


def test_so3_from_euler():
    x = SO3State.from_euler([0, np.pi / 4, 0], stamp=1.0, state_id="C1")
    assert np.allclose(x.attitude, SO3.Exp([0, np.pi / 4, 0]))
    assert x.stamp == 1.0
    assert x.state_id == "C1"


def test_mlg_bad_inputs():
    with pytest.raises(ValueError):
        SO3State([0.1, 0.2])
    with pytest.raises(ValueError):
        SO3State([0.1, 0.2, 0.3], direction="up")


def test_vector_plus_size_mismatch():
    with pytest.raises(ValueError):
        VectorState([1, 2, 3]).plus(np.zeros(2))


def test_gyro_bias_state():
    b = GyroBiasState()
    assert b.dof == 3
    assert np.allclose(b.gyro, 0)

    b.gyro = [1, 2, 3]
    assert np.allclose(b.value, [1, 2, 3])

    with pytest.raises(ValueError):
        GyroBiasState([1, 2])


def test_imu_bias_state():
    b = IMUBiasState([1, 2, 3], [4, 5, 6], stamp=0.5)
    assert b.dof == 6
    assert np.allclose(b.gyro, [1, 2, 3])
    assert np.allclose(b.accel, [4, 5, 6])

    b2 = b.plus(np.array([0.1, 0, 0, 0, 0, 0.2]))
    assert isinstance(b2, IMUBiasState)
    assert np.allclose(b2.gyro, [1.1, 2, 3])
    assert np.allclose(b2.accel, [4, 5, 6.2])

    b_gyro = GyroBiasState.from_imu_bias(b)
    assert isinstance(b_gyro, GyroBiasState)
    assert np.allclose(b_gyro.gyro, [1, 2, 3])
    assert b_gyro.stamp == 0.5

    with pytest.raises(ValueError):
        IMUBiasState([1, 2, 3], [4, 5])


def test_state_with_covariance():
    x = SO3State([0.1, 0.2, 0.3], stamp=2.0)
    x_cov = StateWithCovariance(x, np.identity(3))
    assert x_cov.stamp == 2.0

    x_copy = x_cov.copy()
    x_copy.covariance[0, 0] = 2.0
    x_copy.state.value[0, 0] = 2.0
    assert x_cov.covariance[0, 0] == 1.0
    assert x_cov.state.value[0, 0] != 2.0

    with pytest.raises(ValueError):
        StateWithCovariance(x, np.identity(6))
