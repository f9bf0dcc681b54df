"""Marginalisation of old states into a linear prior for the sliding window.

Parameter blocks are 1-D numpy arrays and are identified by object identity,
so the same array must be passed wherever the same state is meant. Cost
functions expose ``num_residuals``, ``parameter_block_sizes`` and
``evaluate(parameters, compute_jacobians)`` returning ``(residuals, jacobians)``,
with one ``num_residuals x block_size`` Jacobian per block. Blocks of size 7
are poses whose tangent space has 6 dimensions.
"""

from __future__ import annotations

import math

import numpy as np

from .rotation import positify, quat_inverse, quat_multiply

_POSE_GLOBAL = 7
_POSE_LOCAL = 6


def _local_size(size: int) -> int:
    return _POSE_LOCAL if size == _POSE_GLOBAL else size


def _global_size(size: int) -> int:
    return _POSE_GLOBAL if size == _POSE_LOCAL else size


def _eigh(mat: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    if mat.size == 0:
        return np.zeros(0), np.zeros((0, 0))
    return np.linalg.eigh(mat)


def _pose_quat(x: np.ndarray) -> np.ndarray:
    return np.array([x[6], x[3], x[4], x[5]])


class CauchyLoss:
    """Robust loss ``rho(s) = a^2 log(1 + s / a^2)`` with its first two derivatives."""

    def __init__(self, a: float = 1.0):
        if a <= 0.0:
            raise ValueError("Cauchy scale must be positive")
        self.b = a * a
        self.c = 1.0 / self.b

    def evaluate(self, sq_norm) -> np.ndarray:
        """Return ``(rho, rho', rho'')`` at the squared residual norm."""
        s = float(sq_norm)
        total = 1.0 + s * self.c
        inv = 1.0 / total
        return np.array(
            [
                self.b * math.log(total),
                max(np.finfo(float).tiny, inv),
                -self.c * (inv * inv),
            ]
        )


class ResidualBlockInfo:
    """One residual taking part in marginalisation, with the blocks it touches.

    ``drop_set`` lists the positions in ``parameter_blocks`` of the blocks
    to be marginalised out.
    """

    def __init__(self, cost_function, loss_function, parameter_blocks, drop_set):
        self.cost_function = cost_function
        self.loss_function = loss_function
        self.parameter_blocks = list(parameter_blocks)
        self.drop_set = [int(i) for i in drop_set]
        sizes = tuple(cost_function.parameter_block_sizes)
        if len(sizes) != len(self.parameter_blocks):
            raise ValueError(
                f"cost function takes {len(sizes)} blocks, got {len(self.parameter_blocks)}"
            )
        for block, size in zip(self.parameter_blocks, sizes):
            if np.asarray(block).shape != (size,):
                raise ValueError(f"parameter block must have {size} values")
        for i in self.drop_set:
            if not 0 <= i < len(self.parameter_blocks):
                raise ValueError(f"drop index {i} out of range")
        self.residuals: np.ndarray | None = None
        self.jacobians: list[np.ndarray] | None = None

    def evaluate(self) -> None:
        """Evaluate residual and Jacobians, reweighting them by the robust loss."""
        residuals, jacobians = self.cost_function.evaluate(self.parameter_blocks, True)
        residuals = np.array(residuals, dtype=float).reshape(-1)
        jacobians = [np.array(j, dtype=float).reshape(len(residuals), -1) for j in jacobians]

        if self.loss_function is not None:
            sq_norm = float(residuals @ residuals)
            rho = self.loss_function.evaluate(sq_norm)
            sqrt_rho1 = math.sqrt(rho[1])
            if sq_norm == 0.0 or rho[2] <= 0.0:
                residual_scaling = sqrt_rho1
                alpha_sq_norm = 0.0
            else:
                d = 1.0 + 2.0 * sq_norm * rho[2] / rho[1]
                alpha = 1.0 - math.sqrt(d)
                residual_scaling = sqrt_rho1 / (1.0 - alpha)
                alpha_sq_norm = alpha / sq_norm
            jacobians = [
                sqrt_rho1 * (j - alpha_sq_norm * np.outer(residuals, residuals @ j))
                for j in jacobians
            ]
            residuals = residuals * residual_scaling

        self.residuals = residuals
        self.jacobians = jacobians


class MarginalizationInfo:
    """Collects residuals, marginalises the dropped blocks and keeps a linear prior."""

    eps = 1e-8

    def __init__(self):
        self.factors: list[ResidualBlockInfo] = []
        self.m = 0
        self.n = 0
        self.parameter_block_size: dict[int, int] = {}
        self.parameter_block_idx: dict[int, int] = {}
        self.parameter_block_data: dict[int, np.ndarray] = {}
        self.sum_block_size = 0
        self.keep_block_size: list[int] = []
        self.keep_block_idx: list[int] = []
        self.keep_block_data: list[np.ndarray] = []
        self.linearized_jacobians = np.zeros((0, 0))
        self.linearized_residuals = np.zeros(0)
        self._blocks: dict[int, np.ndarray] = {}

    def local_size(self, size):
        """Tangent dimension of a block of the given size."""
        return _local_size(size)

    def global_size(self, size):
        """Stored dimension of a block with the given tangent size."""
        return _global_size(size)

    def add_residual_block_info(self, residual_block_info: ResidualBlockInfo) -> None:
        """Register a residual and the blocks it touches."""
        self.factors.append(residual_block_info)
        sizes = tuple(residual_block_info.cost_function.parameter_block_sizes)
        for block, size in zip(residual_block_info.parameter_blocks, sizes):
            self._blocks[id(block)] = block
            self.parameter_block_size[id(block)] = int(size)
        for i in residual_block_info.drop_set:
            self.parameter_block_idx[id(residual_block_info.parameter_blocks[i])] = 0

    def pre_marginalize(self) -> None:
        """Evaluate every residual and snapshot the linearisation point of each block."""
        for factor in self.factors:
            factor.evaluate()
            for block in factor.parameter_blocks:
                key = id(block)
                if key not in self.parameter_block_data:
                    self.parameter_block_data[key] = np.array(block, dtype=float)

    def marginalize(self) -> None:
        """Form the Schur complement and factor it into a linear prior."""
        pos = 0
        for key in self.parameter_block_idx:
            self.parameter_block_idx[key] = pos
            pos += _local_size(self.parameter_block_size[key])
        self.m = pos
        for key, size in self.parameter_block_size.items():
            if key not in self.parameter_block_idx:
                self.parameter_block_idx[key] = pos
                pos += _local_size(size)
        self.n = pos - self.m
        m = self.m

        a = np.zeros((pos, pos))
        b = np.zeros(pos)
        for factor in self.factors:
            if factor.jacobians is None:
                raise RuntimeError("pre_marginalize must run before marginalize")
            keys = [id(block) for block in factor.parameter_blocks]
            for i, key_i in enumerate(keys):
                idx_i = self.parameter_block_idx[key_i]
                size_i = _local_size(self.parameter_block_size[key_i])
                jac_i = factor.jacobians[i][:, :size_i]
                for j in range(i, len(keys)):
                    idx_j = self.parameter_block_idx[keys[j]]
                    size_j = _local_size(self.parameter_block_size[keys[j]])
                    jac_j = factor.jacobians[j][:, :size_j]
                    a[idx_i:idx_i + size_i, idx_j:idx_j + size_j] += jac_i.T @ jac_j
                    if i != j:
                        a[idx_j:idx_j + size_j, idx_i:idx_i + size_i] = a[
                            idx_i:idx_i + size_i, idx_j:idx_j + size_j
                        ].T
                b[idx_i:idx_i + size_i] += jac_i.T @ factor.residuals

        amm = 0.5 * (a[:m, :m] + a[:m, :m].T)
        values, vectors = _eigh(amm)
        inv_values = np.divide(1.0, values, out=np.zeros_like(values), where=values > self.eps)
        amm_inv = vectors @ np.diag(inv_values) @ vectors.T

        bmm = b[:m]
        amr = a[:m, m:]
        arm = a[m:, :m]
        arr = a[m:, m:]
        brr = b[m:]
        a_schur = arr - arm @ amm_inv @ amr
        b_schur = brr - arm @ amm_inv @ bmm

        values2, vectors2 = _eigh(a_schur)
        keep = values2 > self.eps
        s = np.where(keep, values2, 0.0)
        s_inv = np.divide(1.0, values2, out=np.zeros_like(values2), where=keep)
        self.linearized_jacobians = np.diag(np.sqrt(s)) @ vectors2.T
        self.linearized_residuals = np.diag(np.sqrt(s_inv)) @ vectors2.T @ b_schur

    def get_parameter_blocks(self, addr_shift):
        """Blocks the prior depends on, as they are named in the next window.

        ``addr_shift`` maps ``id(block)`` of each kept block to the array that
        will hold that state after the window slides.
        """
        kept = []
        self.keep_block_size = []
        self.keep_block_idx = []
        self.keep_block_data = []
        for key, idx in self.parameter_block_idx.items():
            if idx < self.m:
                continue
            if key not in self.parameter_block_data:
                raise RuntimeError("pre_marginalize must run before get_parameter_blocks")
            if key not in addr_shift:
                raise ValueError("no new block given for a kept parameter block")
            self.keep_block_size.append(self.parameter_block_size[key])
            self.keep_block_idx.append(idx)
            self.keep_block_data.append(self.parameter_block_data[key])
            kept.append(addr_shift[key])
        self.sum_block_size = sum(self.keep_block_size)
        return kept


class MarginalizationFactor:
    """Linear prior left over from marginalisation, as a cost function."""

    def __init__(self, marginalization_info: MarginalizationInfo):
        self.marginalization_info = marginalization_info
        self.parameter_block_sizes = tuple(marginalization_info.keep_block_size)
        self.num_residuals = marginalization_info.n

    def evaluate(self, parameters, compute_jacobians=True):
        """Return ``(residuals, jacobians)``; jacobians is ``None`` when not requested."""
        info = self.marginalization_info
        if len(parameters) != len(info.keep_block_size):
            raise ValueError(
                f"prior takes {len(info.keep_block_size)} blocks, got {len(parameters)}"
            )
        n, m = info.n, info.m
        dx = np.zeros(n)
        for block, size, idx, x0 in zip(
            parameters, info.keep_block_size, info.keep_block_idx, info.keep_block_data
        ):
            x = np.asarray(block, dtype=float)
            if x.shape != (size,):
                raise ValueError(f"parameter block must have {size} values")
            start = idx - m
            if size != _POSE_GLOBAL:
                dx[start:start + size] = x - x0
            else:
                dx[start:start + 3] = x[:3] - x0[:3]
                dq = quat_multiply(quat_inverse(_pose_quat(x0)), _pose_quat(x))
                dx[start + 3:start + 6] = 2.0 * positify(dq)[1:]
        residuals = info.linearized_residuals + info.linearized_jacobians @ dx
        if not compute_jacobians:
            return residuals, None
        jacobians = []
        for size, idx in zip(info.keep_block_size, info.keep_block_idx):
            local = _local_size(size)
            start = idx - m
            jac = np.zeros((n, size))
            jac[:, :local] = info.linearized_jacobians[:, start:start + local]
            jacobians.append(jac)
        return residuals, jacobians