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


import logging
from typing import Optional, Sequence

import torch
from torch import Tensor

from diffraster.core.function_spec import FunctionSpec

from ._torch_impl import raster_torch
from ._validation import as_scalar_inputs, check_inputs
from ._warp_impl import raster_warp
from .geometry import points_in_cell_interiors
from .pullback import _pullback

logger = logging.getLogger(__name__)


class Raster(FunctionSpec):
    """Scatter one transformed point cloud into a grid, in place.

    Each point ``p`` is transformed to ``R p + t`` (keeping only the first
    ``out.ndim`` rows of ``R``) and its ``weight`` is distributed onto the
    ``2**out.ndim`` nearest cells by multilinear interpolation, where the
    grid spans the canonical hypercube ``[-1, 1]``. Cells outside the grid
    are skipped. ``out`` is set to ``background`` first.

    Parameters
    ----------
    out : torch.Tensor
        Output grid, overwritten.
    points : torch.Tensor
        Point cloud of shape ``(n_in, count)``.
    rotation : torch.Tensor
        ``(n_in, n_in)`` rotation.
    translation : torch.Tensor
        Translation of shape ``(out.ndim,)``.
    background, weight : torch.Tensor or float
        Scalars.
    implementation : {"warp", "torch"} or None
        Implementation to use. When ``None``, dispatch selects the available
        implementation.
    """

    @FunctionSpec.register(name="warp", required_imports=("warp>=1.0",), rank=1)
    def warp_forward(
        out: Tensor,
        points: Tensor,
        rotation: Tensor,
        translation: Tensor,
        background: Tensor | float = 0.0,
        weight: Tensor | float = 1.0,
    ) -> Tensor:
        return raster_warp(out, points, rotation, translation, background, weight)

    @FunctionSpec.register(name="torch", rank=0, baseline=True)
    def torch_forward(
        out: Tensor,
        points: Tensor,
        rotation: Tensor,
        translation: Tensor,
        background: Tensor | float = 0.0,
        weight: Tensor | float = 1.0,
    ) -> Tensor:
        return raster_torch(out, points, rotation, translation, background, weight)

    @classmethod
    def make_inputs(cls, device: torch.device | str = "cpu"):
        device = torch.device(device)
        generator = torch.Generator().manual_seed(0)
        cases = [
            ("1d", 1, (32,), 128),
            ("2d", 2, (16, 16), 1024),
            ("3d", 3, (16, 16, 16), 2048),
            ("3d-to-2d", 3, (16, 16), 2048),
        ]
        for label, n_in, grid_size, num_points in cases:
            rotation = torch.linalg.qr(torch.randn(n_in, n_in, generator=generator))[0]
            translation = 0.1 * torch.randn(len(grid_size), generator=generator)
            points = points_in_cell_interiors(
                grid_size, rotation, translation, num_points, generator=generator
            )
            yield (
                f"{label}-g{'x'.join(map(str, grid_size))}-n{num_points}",
                (
                    torch.zeros(grid_size, device=device),
                    points.to(device),
                    rotation.to(device),
                    translation.to(device),
                ),
                {"background": 0.25, "weight": 2.0},
            )


def _raster_into(
    out: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor,
    weight: Tensor,
    implementation: str | None = None,
) -> Tensor:
    if rotation.dim() == 2:
        return Raster.dispatch(
            out,
            points,
            rotation,
            translation,
            background,
            weight,
            implementation=implementation,
        )
    shared_points = points.dim() == 2
    logger.debug(
        "Rasterizing batch of %d (shared points: %s)", out.shape[-1], shared_points
    )
    for i in range(out.shape[-1]):
        Raster.dispatch(
            out[..., i],
            points if shared_points else points[..., i],
            rotation[..., i],
            translation[..., i],
            background[i],
            weight[i],
            implementation=implementation,
        )
    return out


def _output_shape(grid_size: Sequence[int], rotation: Tensor) -> list[int]:
    if rotation.dim() == 3:
        return [*grid_size, rotation.shape[2]]
    return list(grid_size)


# Register rasterization with torch custom ops so it participates in autograd.
@torch.library.custom_op("diffraster::raster", mutates_args=())
def raster_impl(
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor,
    weight: Tensor,
    grid_size: list[int],
    implementation: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> Tensor:
    out = points.new_empty(_output_shape(grid_size, rotation))
    return _raster_into(
        out, points, rotation, translation, background, weight, implementation
    )


# Register fake tensor propagation for torch compile/fake mode.
@raster_impl.register_fake
def _(
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor,
    weight: Tensor,
    grid_size: list[int],
    implementation: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> Tensor:
    return points.new_empty(_output_shape(grid_size, rotation))


def setup_raster_context(
    ctx: torch.autograd.function.FunctionCtx, inputs: tuple, output: Tensor
) -> None:
    (
        points,
        rotation,
        translation,
        background,
        weight,
        grid_size,
        implementation,
        max_workers,
    ) = inputs
    ctx.save_for_backward(points, rotation, translation, background, weight)
    ctx.project = len(grid_size) < points.shape[0]
    ctx.implementation = implementation
    ctx.max_workers = max_workers


# Backward recomputes the transform through the pullback instead of caching it.
def backward_raster(
    ctx: torch.autograd.function.FunctionCtx, grad_output: Tensor
) -> tuple[
    Tensor | None,
    Tensor | None,
    Tensor | None,
    Tensor | None,
    Tensor | None,
    None,
    None,
    None,
]:
    points, rotation, translation, background, weight = ctx.saved_tensors
    if grad_output is None:
        return None, None, None, None, None, None, None, None
    grads = _pullback(
        grad_output,
        points,
        rotation,
        translation,
        background,
        weight,
        ctx.project,
        prealloc=None,
        accumulate=False,
        max_workers=ctx.max_workers,
        implementation=ctx.implementation,
    )
    return (
        grads.points,
        grads.rotation,
        grads.translation,
        grads.background,
        grads.weight,
        None,
        None,
        None,
    )


raster_impl.register_autograd(backward_raster, setup_context=setup_raster_context)


def _prepare(
    grid_shape: Sequence[int],
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None,
    weight: Tensor | float | None,
    project: bool,
) -> tuple[Tensor, Tensor]:
    batch_size = grid_shape[-1] if rotation.dim() == 3 and grid_shape else None
    background, weight = as_scalar_inputs(
        background, weight, batch_size, points.dtype, points.device
    )
    check_inputs(grid_shape, points, rotation, translation, background, weight, project)
    return background, weight


def _raster(
    grid_size,
    points,
    rotation,
    translation,
    background,
    weight,
    project,
    implementation,
    max_workers,
):
    grid_shape = _output_shape(grid_size, rotation)
    background, weight = _prepare(
        grid_shape, points, rotation, translation, background, weight, project
    )
    return raster_impl(
        points,
        rotation,
        translation,
        background,
        weight,
        [int(s) for s in grid_size],
        implementation,
        max_workers,
    )


def raster(
    grid_size: Sequence[int],
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    implementation: str | None = None,
    max_workers: int | None = None,
) -> Tensor:
    r"""Interpolate points multilinearly into a grid of size ``grid_size``.

    Each point :math:`p` is first transformed to :math:`\hat p = R p + t`.
    Points that fall into the hypercube spanning ``(-1, 1)`` along every axis
    distribute their ``weight`` onto the :math:`2^N` cells whose centers are
    nearest, via :math:`N`-linear interpolation. Every cell starts at
    ``background``.

    A 3-d ``rotation`` of shape ``(n, n, batch)`` selects the batched form,
    which returns a grid of shape ``(*grid_size, batch)``; ``translation``,
    ``background`` and ``weight`` then carry the batch axis last.

    Differentiable with respect to ``points``, ``rotation``, ``translation``,
    ``background`` and ``weight``; the backward pass is
    :func:`raster_pullback`, called with the same ``implementation`` and
    ``max_workers``.
    """
    return _raster(
        grid_size,
        points,
        rotation,
        translation,
        background,
        weight,
        False,
        implementation,
        max_workers,
    )


def raster_project(
    grid_size: Sequence[int],
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    implementation: str | None = None,
    max_workers: int | None = None,
) -> Tensor:
    r"""Interpolate ``n``-d points multilinearly into an ``n-1``-d grid.

    Each point is transformed to :math:`\hat p = P R p + t`, where the
    projection :math:`P` drops the last coordinate of :math:`R p`, and is
    then rasterized as in :func:`raster`.
    """
    return _raster(
        grid_size,
        points,
        rotation,
        translation,
        background,
        weight,
        True,
        implementation,
        max_workers,
    )


def _raster_(out, points, rotation, translation, background, weight, project, implementation):
    background, weight = _prepare(
        out.shape, points, rotation, translation, background, weight, project
    )
    background = background.to(out.dtype)
    weight = weight.to(out.dtype)
    with torch.no_grad():
        return _raster_into(
            out, points, rotation, translation, background, weight, implementation
        )


def raster_(
    out: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    implementation: str | None = None,
) -> Tensor:
    """In-place :func:`raster`: write the result into ``out`` and return it.

    Not tracked by autograd.
    """
    return _raster_(
        out, points, rotation, translation, background, weight, False, implementation
    )


def raster_project_(
    out: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    implementation: str | None = None,
) -> Tensor:
    """In-place :func:`raster_project`: write the result into ``out`` and return it.

    Not tracked by autograd.
    """
    return _raster_(
        out, points, rotation, translation, background, weight, True, implementation
    )


raster_scatter = Raster.make_function("raster_scatter")
