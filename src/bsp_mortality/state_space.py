"""
Time-invariant linear Gaussian state space model.

    y_t       = Z alpha_t + eps_t,     eps_t ~ N(0, H)
    alpha_t+1 = T alpha_t + eta_t,     eta_t ~ N(0, Q)
    alpha_1   ~ N(a1, P1)

Filtering uses the multivariate prediction-error form, smoothing the
fixed-interval backward recursion for (r_t, N_t), and posterior path draws the
Durbin-Koopman simulation smoother.  Missing observations are NaN entries of
``y`` and are skipped element-wise.  Arrays are time-first: ``y`` has shape
``(n, p)`` and state means ``(n, m)``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np
from numpy.linalg import LinAlgError
from scipy.linalg import cho_factor, cho_solve

from .exceptions import SmoothingInstability
from .util import draw_normal, enforce_symmetric

_LOG_2PI = math.log(2.0 * math.pi)


@dataclass
class StateSpace:
    """
    State space model with known parameters.

    Parameters
    ----------
    Z:
        Observation matrix ``(p, m)``.
    H:
        Observation noise covariance ``(p, p)``.
    T:
        Transition matrix ``(m, m)``.
    Q:
        State innovation covariance ``(m, m)``.
    a1:
        Mean of the first state ``(m,)``.
    P1:
        Covariance of the first state ``(m, m)``.
    """

    Z: np.ndarray
    H: np.ndarray
    T: np.ndarray
    Q: np.ndarray
    a1: np.ndarray
    P1: np.ndarray

    def __post_init__(self) -> None:
        self.Z = np.atleast_2d(np.asarray(self.Z, dtype=float))
        self.H = np.atleast_2d(np.asarray(self.H, dtype=float))
        self.T = np.atleast_2d(np.asarray(self.T, dtype=float))
        self.Q = np.atleast_2d(np.asarray(self.Q, dtype=float))
        self.a1 = np.asarray(self.a1, dtype=float).reshape(-1)
        self.P1 = np.atleast_2d(np.asarray(self.P1, dtype=float))
        self.validate_state_space()

    @property
    def p(self) -> int:
        return int(self.Z.shape[0])

    @property
    def m(self) -> int:
        return int(self.Z.shape[1])

    def validate_state_space(self) -> None:
        p, m = self.Z.shape
        if self.H.shape != (p, p):
            raise ValueError(f"H must be ({p}, {p}), got {self.H.shape}")
        if self.T.shape != (m, m):
            raise ValueError(f"T must be ({m}, {m}), got {self.T.shape}")
        if self.Q.shape != (m, m):
            raise ValueError(f"Q must be ({m}, {m}), got {self.Q.shape}")
        if self.a1.shape != (m,):
            raise ValueError(f"a1 must have length {m}, got {self.a1.shape}")
        if self.P1.shape != (m, m):
            raise ValueError(f"P1 must be ({m}, {m}), got {self.P1.shape}")

    def check_sample(self, y: np.ndarray) -> np.ndarray:
        y = np.asarray(y, dtype=float)
        if y.ndim == 1:
            y = y.reshape(-1, 1)
        if y.ndim != 2 or y.shape[1] != self.p:
            raise ValueError(f"y must have shape (n, {self.p}), got {y.shape}")
        return y

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def filter(self, y: np.ndarray) -> Tuple[np.ndarray, float, Dict[str, np.ndarray]]:
        """
        Run the Kalman filter.

        Returns
        -------
        a : ndarray
            Predicted state means with shape ``(n + 1, m)``; row ``t`` holds the
            mean before observing ``y_t`` and the last row is the one-step-ahead
            prediction after the last observation.
        logli : float
            Gaussian log-likelihood (prediction-error decomposition).
        filter_out : dict
            Predicted covariances ``P``, filtered moments ``att``/``Ptt``,
            zero-filled innovations ``v``, inverse innovation covariances
            ``Finv`` and gains ``K``.
        """
        y = self.check_sample(y)
        n = y.shape[0]
        p, m = self.p, self.m
        Z, H, T, Q = self.Z, self.H, self.T, self.Q

        a = np.zeros((n + 1, m))
        P = np.zeros((n + 1, m, m))
        att = np.zeros((n, m))
        Ptt = np.zeros((n, m, m))
        v = np.zeros((n, p))
        Finv = np.zeros((n, p, p))
        K = np.zeros((n, m, p))

        a[0] = self.a1
        P[0] = enforce_symmetric(self.P1)
        logli = 0.0
        nobs = 0

        for t in range(n):
            at = a[t]
            Pt = P[t]
            obs = np.isfinite(y[t])
            if obs.any():
                Zt = Z[obs]
                vt = y[t, obs] - Zt @ at
                PZt = Pt @ Zt.T
                Ft = enforce_symmetric(Zt @ PZt + H[np.ix_(obs, obs)])
                try:
                    c_and_lower = cho_factor(Ft, lower=True)
                except LinAlgError as exc:
                    raise SmoothingInstability(
                        f"Innovation covariance is not positive definite at t={t}."
                    ) from exc
                Finv_t = cho_solve(c_and_lower, np.eye(Ft.shape[0]))
                logdet = 2.0 * float(np.sum(np.log(np.diag(c_and_lower[0]))))
                gain = PZt @ Finv_t
                Kt = T @ gain

                att[t] = at + gain @ vt
                Ptt[t] = enforce_symmetric(Pt - gain @ PZt.T)
                a[t + 1] = T @ att[t]
                P[t + 1] = enforce_symmetric(T @ Ptt[t] @ T.T + Q)

                logli -= 0.5 * (vt.size * _LOG_2PI + logdet + float(vt @ Finv_t @ vt))
                nobs += vt.size
                v[t, obs] = vt
                Finv[t][np.ix_(obs, obs)] = Finv_t
                K[t][:, obs] = Kt
            else:
                att[t] = at
                Ptt[t] = Pt
                a[t + 1] = T @ at
                P[t + 1] = enforce_symmetric(T @ Pt @ T.T + Q)

        if not (np.isfinite(logli) and np.all(np.isfinite(a)) and np.all(np.isfinite(P))):
            raise SmoothingInstability("Kalman filter produced non-finite moments.")

        filter_out = {
            "a": a,
            "P": P,
            "att": att,
            "Ptt": Ptt,
            "v": v,
            "Finv": Finv,
            "K": K,
            "nobs": nobs,
        }
        return a, logli, filter_out

    def loglik(self, y: np.ndarray) -> float:
        return self.filter(y)[1]

    def smooth(
        self,
        y: np.ndarray,
        covariances: bool = True,
    ) -> Tuple[np.ndarray, Dict[str, np.ndarray], Dict[str, np.ndarray]]:
        """
        Run the fixed-interval smoother.

        Returns
        -------
        alpha : ndarray
            Smoothed state means with shape ``(n, m)``.
        smoother_out : dict
            Smoothed covariances ``V`` (when requested) and the adjoint
            variables ``r``.
        filter_out : dict
            Output of :meth:`filter` reused by the smoother.
        """
        y = self.check_sample(y)
        _, _, filter_out = self.filter(y)
        a = filter_out["a"]
        P = filter_out["P"]
        v = filter_out["v"]
        Finv = filter_out["Finv"]
        K = filter_out["K"]

        n = y.shape[0]
        m = self.m
        Z, T = self.Z, self.T

        alpha = np.zeros((n, m))
        V = np.zeros((n, m, m)) if covariances else None
        r = np.zeros((n, m))
        r_t = np.zeros(m)
        N_t = np.zeros((m, m))

        for t in range(n - 1, -1, -1):
            L_t = T - K[t] @ Z
            ZF = Z.T @ Finv[t]
            r_t = ZF @ v[t] + L_t.T @ r_t
            alpha[t] = a[t] + P[t] @ r_t
            r[t] = r_t
            if covariances:
                N_t = enforce_symmetric(ZF @ Z + L_t.T @ N_t @ L_t)
                V[t] = enforce_symmetric(P[t] - P[t] @ N_t @ P[t])

        if not np.all(np.isfinite(alpha)):
            raise SmoothingInstability("Smoother produced non-finite state means.")
        if covariances:
            if not np.all(np.isfinite(V)):
                raise SmoothingInstability("Smoother produced non-finite covariances.")
            diag = np.diagonal(V, axis1=1, axis2=2)
            scale = max(1.0, float(np.max(np.abs(P))))
            if np.any(diag < -1e-8 * scale):
                raise SmoothingInstability("Smoothed state variances became negative.")

        smoother_out = {"alpha": alpha, "V": V, "r": r}
        return alpha, smoother_out, filter_out

    def simulate(self, n: int, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        """
        Draw states and observations of length ``n`` from the model.
        """
        alpha = np.zeros((n, self.m))
        y = np.zeros((n, self.p))
        state = draw_normal(self.a1, self.P1, rng)
        for t in range(n):
            alpha[t] = state
            y[t] = draw_normal(self.Z @ state, self.H, rng)
            state = draw_normal(self.T @ state, self.Q, rng)
        return alpha, y

    def simulate_posterior(
        self,
        y: np.ndarray,
        nsim: int,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """
        Draw ``nsim`` state paths from ``p(alpha | y)``.

        Durbin-Koopman simulation smoother: an unconditional draw is smoothed
        on its own simulated observations and the smoothing error is added
        to the smoothed mean of the data.

        Returns
        -------
        ndarray
            Posterior draws with shape ``(nsim, n, m)``.
        """
        y = self.check_sample(y)
        missing = ~np.isfinite(y)
        alpha_hat, _, _ = self.smooth(y, covariances=False)
        draws = np.zeros((nsim,) + alpha_hat.shape)
        for i in range(nsim):
            alpha_plus, y_plus = self.simulate(y.shape[0], rng)
            y_plus[missing] = np.nan
            alpha_hat_plus, _, _ = self.smooth(y_plus, covariances=False)
            draws[i] = alpha_hat + alpha_plus - alpha_hat_plus
        return draws


__all__ = ["StateSpace"]
