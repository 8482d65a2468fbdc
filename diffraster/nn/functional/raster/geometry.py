# SPDX-FileCopyrightText: Copyright (c) 2023 - 2026 NVIDIA CORPORATION & AFFILIATES.
# SPDX-FileCopyrightText: All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""Geometric primitives shared by the forward scatter and its pullback.

Both halves of the operation must agree on the transform below, so every
implementation derives voxel indices and interpolation factors from these
functions (or, in Warp kernels, from a literal transcription of them).

Along an axis with ``size`` cells, cell ``k`` is centered at canonical
coordinate ``-1 + (2k + 1) / size``, so the canonical hypercube ``[-1, 1]``
is covered exactly by the grid.
"""

from functools import lru_cache
from typing import Sequence

import torch
from jaxtyping import Float, Int


@lru_cache(maxsize=None)
def voxel_shifts(n_dims: int) -> tuple[tuple[int, ...], ...]:
    """Offsets of all ``2**n_dims`` cells touching a point.

    Entry ``k`` holds the binary digits of ``k``, least significant first, so
    axis ``n`` selects the upper neighbor when bit ``n`` of ``k`` is set.
    """
    if n_dims < 1:
        raise ValueError(f"n_dims must be positive, got {n_dims=}")
    return tuple(
        tuple((k >> n) & 1 for n in range(n_dims)) for k in range(2**n_dims)
    )


def grid_scale(
    grid_size: Sequence[int], dtype: torch.dtype, device: torch.device
) -> Float[torch.Tensor, "n_out"]:
    """Factor mapping canonical extent to cell units along each axis."""
    return torch.tensor(grid_size, dtype=dtype, device=device) / 2


def reference_coordinate_and_deltas(
    points: Float[torch.Tensor, "n_in ..."],
    rotation: Float[torch.Tensor, "n_rows n_in"],
    projection_idxs: slice,
    origin: Float[torch.Tensor, "n_out"],
    scale: Float[torch.Tensor, "n_out"],
) -> tuple[Int[torch.Tensor, "n_out ..."], Float[torch.Tensor, "n_out 2 ..."]]:
    r"""Locate transformed points relative to the grid.

    Parameters
    ----------
    points : Float[torch.Tensor, "n_in ..."]
        One point (``(n_in,)``) or a cloud of points (``(n_in, count)``).
    rotation : Float[torch.Tensor, "n_rows n_in"]
        Rotation matrix. Only the rows selected by ``projection_idxs`` are
        applied, which drops the last rotated axis for projections.
    projection_idxs : slice
        Rows of ``rotation`` that map onto grid axes.
    origin : Float[torch.Tensor, "n_out"]
        Canonical position of the grid's lower corner relative to the
        translated frame, ``-1 - translation``.
    scale : Float[torch.Tensor, "n_out"]
        Half the grid size along each axis.

    Returns
    -------
    tuple
        ``reference_voxel`` holds the integer index of the lower neighboring
        cell per axis. ``deltas[n, 1]`` is the distance from the lower cell
        center along axis ``n`` (in cell units) and ``deltas[n, 0]`` is the
        distance to the upper cell center, so ``deltas[n, s]`` is the
        interpolation factor for shift bit ``s``.
    """
    projected = torch.tensordot(rotation[projection_idxs], points, dims=1)
    broadcast = (...,) + (None,) * (points.dim() - 1)
    coord = (projected - origin[broadcast]) * scale[broadcast] - 0.5
    reference = torch.floor(coord)
    upper = coord - reference
    deltas = torch.stack((1 - upper, upper), dim=1)
    return reference.long(), deltas


def voxel_weight(
    deltas: Float[torch.Tensor, "n_out 2 ..."], shift: Sequence[int]
) -> Float[torch.Tensor, "..."]:
    """Multilinear weight a point contributes to the cell at ``shift``."""
    value = deltas[0, shift[0]]
    for n in range(1, len(shift)):
        value = value * deltas[n, shift[n]]
    return value


def interpolation_weight(
    axis: int,
    n_dims: int,
    deltas: Float[torch.Tensor, "n_out 2 ..."],
    shift: Sequence[int],
) -> Float[torch.Tensor, "..."]:
    """Derivative of :func:`voxel_weight` with respect to the coordinate on ``axis``.

    The factor along ``axis`` is ``d`` for the upper cell and ``1 - d`` for
    the lower one, so it differentiates to ``+1`` or ``-1``.
    """
    value = None
    for n in range(n_dims):
        if n == axis:
            continue
        factor = deltas[n, shift[n]]
        value = factor if value is None else value * factor
    sign = 1.0 if shift[axis] == 1 else -1.0
    if value is None:
        return torch.full_like(deltas[0, 0], sign)
    return sign * value


def points_in_cell_interiors(
    grid_size: Sequence[int],
    rotation: Float[torch.Tensor, "n_in n_in"],
    translation: Float[torch.Tensor, "n_out"],
    num_points: int,
    margin: float = 0.1,
    generator: torch.Generator | None = None,
) -> Float[torch.Tensor, "n_in num_points"]:
    """Sample points whose transformed coordinates avoid cell-center planes.

    Each transformed coordinate lands at least ``margin`` cells away from the
    nearest cell center, one cell beyond the grid on every side included, so
    implementations with different rounding agree on the reference voxel.
    ``rotation`` must be orthogonal.
    """
    n_out = len(grid_size)
    n_in = rotation.shape[0]
    sizes = torch.tensor(grid_size, dtype=rotation.dtype)
    cells = torch.stack(
        [
            torch.randint(-1, size + 1, (num_points,), generator=generator)
            for size in grid_size
        ]
    ).to(rotation.dtype)
    fraction = margin + (1 - 2 * margin) * torch.rand(
        n_out, num_points, generator=generator, dtype=rotation.dtype
    )
    canonical = (cells + fraction + 0.5) * 2 / sizes[:, None] - 1
    rotated = torch.rand(n_in, num_points, generator=generator, dtype=rotation.dtype)
    rotated[:n_out] = canonical - translation.cpu()[:, None]
    return rotation.cpu().T @ rotated
