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


from typing import NamedTuple

import torch
from torch import Tensor

from .geometry import (
    grid_scale,
    interpolation_weight,
    reference_coordinate_and_deltas,
    voxel_shifts,
    voxel_weight,
)


class RasterGradients(NamedTuple):
    """Sensitivities of a scalar with respect to each rasterization input."""

    points: Tensor
    rotation: Tensor
    translation: Tensor
    background: Tensor
    weight: Tensor


def _store(target: Tensor, value: Tensor, accumulate: bool) -> None:
    if accumulate:
        target.add_(value)
    else:
        target.copy_(value)


def _finite_points(deltas: Tensor) -> Tensor:
    # Points whose transformed coordinate is finite on every axis.
    return deltas.isfinite().flatten(0, 1).all(dim=0)


def _voxel_indices(
    reference: Tensor,
    finite: Tensor,
    shift: tuple[int, ...],
    grid_size: tuple[int, ...],
) -> tuple[list[Tensor], Tensor]:
    # Per-axis cell indices for one shift, plus the mask of in-grid cells.
    # Non-finite coordinates have no meaningful integer index and never land inside.
    indices = []
    inside = finite.clone()
    for n, size in enumerate(grid_size):
        idx = reference[n] + shift[n]
        inside &= (idx >= 0) & (idx < size)
        indices.append(idx)
    return indices, inside


def raster_torch(
    out: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float,
    weight: Tensor | float,
) -> Tensor:
    """Scatter one point cloud into ``out`` (in place) and return ``out``.

    Differentiable with respect to every input when called under autograd.
    """
    grid_size = tuple(out.shape)
    n_out = len(grid_size)
    dtype = out.dtype
    points = points.to(dtype)
    rotation = rotation.to(dtype)
    origin = -1 - translation.to(dtype)
    scale = grid_scale(grid_size, dtype, out.device)

    reference, deltas = reference_coordinate_and_deltas(
        points, rotation, slice(0, n_out), origin, scale
    )

    out.zero_()
    out.add_(background)
    finite = _finite_points(deltas)
    for shift in voxel_shifts(n_out):
        indices, inside = _voxel_indices(reference, finite, shift, grid_size)
        values = weight * voxel_weight(deltas, shift)
        out.index_put_(
            tuple(idx[inside] for idx in indices), values[inside], accumulate=True
        )
    return out


def raster_pullback_torch(
    ds_dout: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float,
    weight: Tensor | float,
    ds_dpoints: Tensor,
    ds_drotation: Tensor,
    ds_dtranslation: Tensor,
    ds_dbackground: Tensor,
    ds_dweight: Tensor,
    accumulate: bool = False,
) -> RasterGradients:
    """Pullback of :func:`raster_torch` for a single instance.

    The forward transform is recomputed rather than cached. All results are
    written into the given buffers, which are overwritten, or added to when
    ``accumulate`` is set.
    """
    # The output is affine in background, so it only enters through sum(ds_dout).
    _ = background
    grid_size = tuple(ds_dout.shape)
    n_out = len(grid_size)
    dtype = ds_dout.dtype
    points = points.to(dtype)
    rotation = rotation.to(dtype)
    origin = -1 - translation.to(dtype)
    scale = grid_scale(grid_size, dtype, ds_dout.device)

    reference, deltas = reference_coordinate_and_deltas(
        points, rotation, slice(0, n_out), origin, scale
    )

    finite = _finite_points(deltas)
    ds_dcoord = torch.zeros_like(deltas[:, 0])
    weight_acc = ds_dout.new_zeros(())
    touched = torch.zeros_like(finite)
    for shift in voxel_shifts(n_out):
        indices, inside = _voxel_indices(reference, finite, shift, grid_size)
        touched |= inside
        clamped = tuple(
            idx.clamp(0, size - 1) for idx, size in zip(indices, grid_size)
        )
        grad = ds_dout[clamped]
        # Select rather than mask by zero so clipped cells cannot leak NaN.
        weight_acc += torch.where(inside, voxel_weight(deltas, shift) * grad, 0).sum()
        factor = grad * weight
        for axis in range(n_out):
            ds_dcoord[axis] += torch.where(
                inside, factor * interpolation_weight(axis, n_out, deltas, shift), 0
            )

    scaled = ds_dcoord * scale[:, None]
    _store(ds_dtranslation, scaled.sum(dim=1), accumulate)
    # Points with no in-grid cell contribute nothing, including non-finite ones.
    used_points = torch.where(touched, points, 0)
    _store(ds_drotation[:n_out], scaled @ used_points.T, accumulate)
    if not accumulate:
        # The dropped projection axis carries no gradient.
        ds_drotation[n_out:].zero_()
        ds_dpoints.zero_()
    ds_dpoints.add_(rotation[:n_out].T @ scaled)
    _store(ds_dbackground, ds_dout.sum(), accumulate)
    _store(ds_dweight, weight_acc, accumulate)

    return RasterGradients(
        points=ds_dpoints,
        rotation=ds_drotation,
        translation=ds_dtranslation,
        background=ds_dbackground,
        weight=ds_dweight,
    )
