"""Tests for the residuals found in gyrolie.batch.residuals"""

from gyrolie.batch.residuals import AttitudeError, AttitudeResidual, PriorResidual
from gyrolie.lib.groups import SO3
from gyrolie.lib.preintegration import AngularVelocityIncrement, FrozenIncrementError
from gyrolie.lib.states import GyroBiasState, IMUBiasState, SO3State, VectorState
import numpy as np
import pytest

np.set_printoptions(precision=5, suppress=True, linewidth=200)


def make_rmi(omega, bias=None, dt=0.1, num_steps=10, Q=None):
    if Q is None:
        Q = 1e-3 * np.identity(3)
    rmi = AngularVelocityIncrement(Q, bias=bias)
    for _ in range(num_steps):
        rmi.increment(omega, dt)
    return rmi


def test_prior_residual_vector():
    x = VectorState(np.array([1, 2, 3]))
    prior_residual = PriorResidual(["p"], x.copy(), np.identity(x.dof))
    error = prior_residual.evaluate([x])
    assert np.allclose(error, 0)


@pytest.mark.parametrize("direction", ["left", "right"])
def test_prior_residual_so3(direction):
    x = SO3State(SO3.random(), direction=direction)
    x0 = x.plus(np.array([0.1, -0.2, 0.05]))
    prior_residual = PriorResidual("C", x0, 0.1 * np.identity(3))
    assert prior_residual.keys == ["C"]

    error, jacobians = prior_residual.evaluate([x], [True])
    assert error.shape == (3,)
    assert np.allclose(jacobians[0], prior_residual.jacobian_fd([x])[0], atol=1e-5)


def test_error_at_truth():
    # Rotation about each axis, with the end attitude built by composition
    omega = np.array([5e-3, 5e-3, 5e-3])
    rmi = make_rmi(omega, num_steps=1, dt=1.0)

    rot_i = SO3State(SO3.from_euler([0.0, 0.0, np.pi / 4]))
    rot_j = SO3State(rot_i.value @ SO3.Exp(omega * 1.0))
    bias = GyroBiasState()

    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)
    result = residual.evaluate_error(rot_i, rot_j, bias)

    assert isinstance(result, AttitudeError)
    assert result.jacobians is None
    assert result.error.shape == (3,)
    assert np.allclose(result.error, 0, atol=1e-6)
    assert np.allclose(residual.evaluate([rot_i, rot_j, bias]), 0, atol=1e-6)


def test_error_at_truth_with_bias():
    # Nonzero linearization point, true bias differs from it
    bias_true = np.array([0, 0, 0.3])
    omega = np.array([0, 0, np.pi / 10 + 0.3])
    rmi = make_rmi(omega, bias=np.zeros(3), dt=0.1, num_steps=10)

    rot_i = SO3State(SO3.from_euler([np.pi / 10, 0.0, np.pi / 4]))
    rot_j = SO3State(rot_i.value @ SO3.Exp(np.array([0, 0, np.pi / 10])))

    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi, use_coriolis=False)

    # At the linearization point the error is the unmodelled bias rotation
    e0 = residual.evaluate_error(rot_i, rot_j, GyroBiasState()).error
    assert np.allclose(e0, [0, 0, -0.3], atol=1e-6)

    # The first-order bias correction is exact for rotations about a fixed axis
    e = residual.evaluate_error(rot_i, rot_j, GyroBiasState(bias_true)).error
    assert np.allclose(e, 0, atol=1e-6)


def test_predict():
    omega = np.array([0.1, -0.2, 0.3])
    rmi = make_rmi(omega)
    rmi_copy = rmi.copy()
    rmi_copy.update_bias([0.01, 0.02, 0.0])

    rot_i = SO3State(SO3.random(), stamp=0.0)
    residual = AttitudeResidual(
        ["Ci", "Cj", "b"], rmi, omega_coriolis=[0, 0.1, 0.1], use_coriolis=False
    )
    rot_j = residual.predict(rot_i, GyroBiasState([0.01, 0.02, 0.0]))

    assert isinstance(rot_j, SO3State)
    assert np.allclose(rot_j.value, rot_i.value @ rmi_copy.value)
    e = residual.evaluate_error(rot_i, rot_j, GyroBiasState([0.01, 0.02, 0.0])).error
    assert np.allclose(e, 0, atol=1e-10)


def test_coriolis_correction():
    omega = np.array([0.1, -0.2, 0.3])
    omega_coriolis = np.array([0, 0.1, 0.1])
    rmi = make_rmi(omega)

    rot_i = SO3State(SO3.random())
    bias = GyroBiasState()
    res_on = AttitudeResidual(["Ci", "Cj", "b"], rmi, omega_coriolis)
    res_off = AttitudeResidual(["Ci", "Cj", "b"], rmi, omega_coriolis, False)

    pred_on = res_on.predict(rot_i, bias)
    pred_off = res_off.predict(rot_i, bias)
    C_cor = SO3.Exp(-omega_coriolis * rmi.delta_t)
    assert np.allclose(pred_on.value, pred_off.value @ C_cor)
    assert res_on.use_coriolis and not res_off.use_coriolis


@pytest.mark.parametrize("direction", ["left", "right"])
@pytest.mark.parametrize("use_coriolis", [True, False])
@pytest.mark.parametrize("bias_type", ["gyro", "imu"])
def test_jacobians_fd(direction, use_coriolis, bias_type):
    omega = np.array([0, 0, np.pi / 10 + 0.3])
    bias_hat = np.array([0.0, 0.0, 0.1])
    rmi = make_rmi(omega, bias=bias_hat, dt=0.1, num_steps=10, Q=np.identity(3))

    rot_i = SO3State(SO3.from_euler([np.pi / 10, 0.1, np.pi / 4]), direction=direction)
    rot_j = SO3State(
        rot_i.value @ SO3.Exp([0.05, -0.1, np.pi / 10]), direction=direction
    )
    if bias_type == "gyro":
        bias = GyroBiasState([0.01, -0.02, 0.3])
    else:
        bias = IMUBiasState([0.01, -0.02, 0.3], [0.1, 0.2, 0.3])

    residual = AttitudeResidual(
        ["Ci", "Cj", "b"],
        rmi,
        omega_coriolis=[0, 0.1, 0.1],
        use_coriolis=use_coriolis,
    )
    states = [rot_i, rot_j, bias]

    _, jac_list = residual.evaluate(states, [True, True, True])
    jac_fd = residual.jacobian_fd(states)

    for jac, jac_test in zip(jac_list, jac_fd):
        assert np.allclose(jac, jac_test, atol=1e-5)

    assert jac_list[2].shape == (3, bias.dof)
    if bias_type == "imu":
        assert np.all(jac_list[2][:, 3:] == 0.0)


@pytest.mark.parametrize("direction", ["left", "right"])
def test_unweighted_jacobians_fd(direction):
    rmi = make_rmi(np.array([0.3, -0.5, 0.2]), bias=[0.01, 0.0, 0.0])
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi, omega_coriolis=[1e-3, 0, 2e-3])

    rot_i = SO3State(SO3.random(), direction=direction)
    rot_j = SO3State(
        rot_i.value @ rmi.value @ SO3.Exp([0.2, -0.1, 0.3]), direction=direction
    )
    bias = GyroBiasState([0.02, -0.01, 0.03])

    result = residual.evaluate_error(rot_i, rot_j, bias, compute_jacobians=True)
    assert len(result.jacobians) == 3

    def error(states):
        return residual.evaluate_error(*states).error

    e_bar = error([rot_i, rot_j, bias])
    h = 1e-6
    for k, (x, H) in enumerate(zip([rot_i, rot_j, bias], result.jacobians)):
        H_fd = np.zeros((3, x.dof))
        for i in range(x.dof):
            dx = np.zeros(x.dof)
            dx[i] = h
            states = [rot_i, rot_j, bias]
            states[k] = x.plus(dx)
            H_fd[:, i] = (error(states) - e_bar) / h
        assert np.allclose(H, H_fd, atol=1e-5)


def test_right_jacobians_closed_form():
    rmi = make_rmi(np.array([0.3, -0.5, 0.2]))
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi, use_coriolis=False)

    rot_i = SO3State(SO3.random())
    rot_j = SO3State(SO3.random())
    result = residual.evaluate_error(rot_i, rot_j, GyroBiasState(), True)

    J_inv = SO3.right_jacobian_inv(result.error)
    H_i, H_j, _ = result.jacobians
    assert np.allclose(H_i, -J_inv @ rot_j.value.T @ rot_i.value)
    assert np.allclose(H_j, J_inv)


def test_constant_keys_have_no_jacobian():
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]))
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)
    states = [SO3State(SO3.random()), SO3State(SO3.random()), GyroBiasState()]

    _, jac_list = residual.evaluate(states, [False, True, False])
    assert jac_list[0] is None
    assert jac_list[1].shape == (3, 3)
    assert jac_list[2] is None


def test_whitening():
    Q = np.diag([1e-2, 2e-2, 4e-2])
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]), Q=Q)
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)
    states = [SO3State(SO3.random()), SO3State(SO3.random()), GyroBiasState()]

    e = residual.evaluate_error(*states).error
    e_w = residual.evaluate(states)
    L = residual.sqrt_information()

    assert np.allclose(L @ L.T, np.linalg.inv(residual.covariance()))
    assert np.allclose(e_w, L.T @ e)
    assert np.isclose(e_w @ e_w, e @ np.linalg.solve(residual.covariance(), e))
    assert residual.dimension() == 3


def test_residual_freezes_rmi():
    omega = np.array([0.1, 0.2, 0.3])
    rmi = make_rmi(omega)
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)

    assert rmi.is_frozen
    assert residual.rmi is rmi
    with pytest.raises(FrozenIncrementError):
        rmi.increment(omega, 0.1)

    # The noise model of the residual is fixed once it is built
    L = residual.sqrt_information()
    with pytest.raises(FrozenIncrementError):
        rmi.symmetrize()
    with pytest.raises(FrozenIncrementError):
        rmi.update_bias([0.5, 0.5, 0.5])
    with pytest.raises(ValueError):
        rmi.covariance[0, 0] = 99.0
    assert np.allclose(residual.covariance(), rmi.covariance)
    assert np.allclose(residual.sqrt_information(), L)


def test_sqrt_information_is_a_copy():
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]))
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)
    states = [SO3State(SO3.random()), SO3State(SO3.random()), GyroBiasState()]
    e1 = residual.evaluate(states)

    L = residual.sqrt_information()
    L[:] = 0.0
    assert np.array_equal(residual.evaluate(states), e1)
    L_new = residual.sqrt_information()
    assert np.allclose(L_new @ L_new.T, np.linalg.inv(rmi.covariance))


def test_residual_does_not_mutate():
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]))
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi, omega_coriolis=[0, 0.1, 0])
    states = [SO3State(SO3.random()), SO3State(SO3.random()), GyroBiasState([0.1, 0, 0])]

    e1, jac1 = residual.evaluate(states, [True, True, True])
    residual.evaluate([states[0], states[1], GyroBiasState([0.5, 0.5, 0.5])])
    e2, jac2 = residual.evaluate(states, [True, True, True])

    assert np.array_equal(e1, e2)
    for j1, j2 in zip(jac1, jac2):
        assert np.array_equal(j1, j2)


def test_bad_construction():
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]))
    with pytest.raises(ValueError):
        AttitudeResidual(["Ci", "Cj"], rmi)
    with pytest.raises(ValueError):
        AttitudeResidual(["Ci", "Cj", "b"], rmi, omega_coriolis=[0, 1])


def test_nan_propagates():
    rmi = make_rmi(np.array([0.1, 0.2, 0.3]))
    residual = AttitudeResidual(["Ci", "Cj", "b"], rmi)
    bias = GyroBiasState([np.nan, 0, 0])
    e = residual.evaluate_error(SO3State(np.identity(3)), SO3State(rmi.value), bias)
    assert np.any(np.isnan(e.error))
