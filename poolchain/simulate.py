import warnings

import numpy as np
from numba import njit
from scipy.integrate import odeint, ODEintWarning

from poolchain.errors import IntegrationFailure

DEFAULT_RTOL = 1e-6
DEFAULT_ATOL = 1e-8
DEFAULT_MXSTEP = 5000


@njit(cache=True)
def root_input(t, mag, dur):
    """Front-loaded input: mag at t=0, ramping linearly to 0 at t=dur, 0 afterwards."""
    if t < dur:
        return mag * (1.0 - t / dur)
    return 0.0


@njit(cache=True)
def cascade_rhs(y, t, M, mags, durs):
    """
    Right-hand side of the forced linear cascade.

    Args:
        y: pool concentrations
        t: time
        M: cascade matrix (k x k)
        mags: input magnitude per pool
        durs: input duration per pool

    Returns:
        dydt: dC_i/dt = input_i(t) + (M @ C)_i
    """
    n = y.shape[0]
    dydt = np.empty(n)
    for i in range(n):
        acc = 0.0
        for j in range(n):
            acc += M[i, j] * y[j]
        dydt[i] = root_input(t, mags[i], durs[i]) + acc
    return dydt


@njit(cache=True)
def cascade_jac(y, t, M, mags, durs):
    # Linear system: the Jacobian is the cascade matrix itself.
    return M


def simulate_cascade(y0, times, M, mags, durs,
                     rtol=DEFAULT_RTOL, atol=DEFAULT_ATOL, mxstep=DEFAULT_MXSTEP):
    """
    Integrate the cascade with LSODA and return the trajectory at `times`.

    The initial state is taken to hold at t=0. When `times` does not start at 0 the
    integration still starts there and the leading point is dropped from the output.

    Args:
        y0 (array-like): initial concentration per pool.
        times (array-like): strictly ascending, non-negative output times.
        M (np.ndarray): cascade matrix.
        mags, durs (np.ndarray): forcing arrays from `build_forcing`.
        rtol, atol (float): LSODA tolerances.
        mxstep (int): step budget per output interval; overrun is a failure.

    Returns:
        np.ndarray: shape (len(times), k).

    Raises:
        IntegrationFailure: LSODA reported an error, ran out of steps, or produced
            non-finite values.
    """
    y0 = np.ascontiguousarray(y0, dtype=np.float64)
    t_eval = np.ascontiguousarray(times, dtype=np.float64)
    if t_eval.ndim != 1 or t_eval.size == 0:
        raise ValueError("times must be a non-empty 1-D array")
    if np.any(np.diff(t_eval) <= 0):
        raise ValueError("times must be strictly ascending")
    if t_eval[0] < 0:
        raise ValueError("times must be non-negative")

    prepend = t_eval[0] > 0.0
    t_int = np.concatenate(([0.0], t_eval)) if prepend else t_eval

    with warnings.catch_warnings():
        warnings.simplefilter("error", ODEintWarning)
        try:
            ys = odeint(
                cascade_rhs,
                y0,
                t_int,
                args=(M, mags, durs),
                Dfun=cascade_jac,
                col_deriv=False,
                rtol=rtol,
                atol=atol,
                mxstep=mxstep,
            )
        except ODEintWarning as e:
            raise IntegrationFailure(
                "LSODA did not converge",
                context={"reason": str(e).strip().splitlines()[0] if str(e).strip() else "ODEintWarning"},
            ) from e

    if not np.all(np.isfinite(ys)):
        raise IntegrationFailure("non-finite values in trajectory")

    if prepend:
        ys = ys[1:]
    return np.ascontiguousarray(ys, dtype=np.float64)
