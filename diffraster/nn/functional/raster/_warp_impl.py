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


import torch
import warp as wp
from torch import Tensor

from diffraster.core.function_spec import FunctionSpec

from ._torch_impl import RasterGradients, _store
from .geometry import voxel_shifts

# Initialize Warp once for kernel launch.
wp.config.quiet = True
wp.init()


# Transcription of geometry.reference_coordinate_and_deltas for one axis of one point.
@wp.func
def _coordinate(
    points: wp.array2d(dtype=wp.float32),
    rotation: wp.array2d(dtype=wp.float32),
    translation: wp.array(dtype=wp.float32),
    sizes: wp.array(dtype=wp.int32),
    axis: int,
    tid: int,
) -> wp.float32:
    projected = wp.float32(0.0)
    for j in range(points.shape[0]):
        projected += rotation[axis, j] * points[j, tid]
    half_size = wp.float32(sizes[axis]) * 0.5
    return (projected + translation[axis] + 1.0) * half_size - 0.5


@wp.func
def _delta(coord: wp.float32, shift: int) -> wp.float32:
    upper = coord - wp.floor(coord)
    if shift == 1:
        return upper
    return 1.0 - upper


# Flat index of the cell selected by shift row s, or -1 when it is clipped.
@wp.func
def _cell_index(
    points: wp.array2d(dtype=wp.float32),
    rotation: wp.array2d(dtype=wp.float32),
    translation: wp.array(dtype=wp.float32),
    sizes: wp.array(dtype=wp.int32),
    strides: wp.array(dtype=wp.int32),
    shifts: wp.array2d(dtype=wp.int32),
    s: int,
    tid: int,
) -> int:
    flat = int(0)
    inside = int(1)
    for n in range(sizes.shape[0]):
        coord = _coordinate(points, rotation, translation, sizes, n, tid)
        # Comparisons are false for NaN, and far or infinite values never reach the int cast.
        if coord >= -1.0 and coord < wp.float32(sizes[n]):
            idx = wp.int32(wp.floor(coord)) + shifts[s, n]
            if idx < 0 or idx >= sizes[n]:
                inside = 0
            flat += idx * strides[n]
        else:
            inside = 0
    if inside == 0:
        return -1
    return flat


# Product of interpolation factors over all axes except skip_axis (-1 keeps all).
@wp.func
def _cell_weight(
    points: wp.array2d(dtype=wp.float32),
    rotation: wp.array2d(dtype=wp.float32),
    translation: wp.array(dtype=wp.float32),
    sizes: wp.array(dtype=wp.int32),
    shifts: wp.array2d(dtype=wp.int32),
    s: int,
    skip_axis: int,
    tid: int,
) -> wp.float32:
    value = wp.float32(1.0)
    for n in range(sizes.shape[0]):
        if n != skip_axis:
            coord = _coordinate(points, rotation, translation, sizes, n, tid)
            value *= _delta(coord, shifts[s, n])
    return value


@wp.kernel
def _raster_kernel(
    points: wp.array2d(dtype=wp.float32),
    rotation: wp.array2d(dtype=wp.float32),
    translation: wp.array(dtype=wp.float32),
    weight: wp.float32,
    sizes: wp.array(dtype=wp.int32),
    strides: wp.array(dtype=wp.int32),
    shifts: wp.array2d(dtype=wp.int32),
    out: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    for s in range(shifts.shape[0]):
        flat = _cell_index(
            points, rotation, translation, sizes, strides, shifts, s, tid
        )
        if flat >= 0:
            value = _cell_weight(points, rotation, translation, sizes, shifts, s, -1, tid)
            wp.atomic_add(out, flat, weight * value)


@wp.kernel
def _raster_pullback_kernel(
    ds_dout: wp.array(dtype=wp.float32),
    points: wp.array2d(dtype=wp.float32),
    rotation: wp.array2d(dtype=wp.float32),
    translation: wp.array(dtype=wp.float32),
    weight: wp.float32,
    sizes: wp.array(dtype=wp.int32),
    strides: wp.array(dtype=wp.int32),
    shifts: wp.array2d(dtype=wp.int32),
    ds_dpoints: wp.array2d(dtype=wp.float32),
    ds_drotation: wp.array2d(dtype=wp.float32),
    ds_dtranslation: wp.array(dtype=wp.float32),
    ds_dweight: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    n_in = points.shape[0]
    for s in range(shifts.shape[0]):
        flat = _cell_index(
            points, rotation, translation, sizes, strides, shifts, s, tid
        )
        if flat < 0:
            continue
        grad = ds_dout[flat]
        value = _cell_weight(points, rotation, translation, sizes, shifts, s, -1, tid)
        wp.atomic_add(ds_dweight, 0, value * grad)
        for axis in range(sizes.shape[0]):
            sign = wp.float32(2 * shifts[s, axis] - 1)
            derivative = sign * _cell_weight(
                points, rotation, translation, sizes, shifts, s, axis, tid
            )
            half_size = wp.float32(sizes[axis]) * 0.5
            scaled = grad * weight * derivative * half_size
            wp.atomic_add(ds_dtranslation, axis, scaled)
            for j in range(n_in):
                wp.atomic_add(ds_drotation, axis, j, scaled * points[j, tid])
                wp.atomic_add(ds_dpoints, j, tid, rotation[axis, j] * scaled)


def _grid_tables(grid_size: torch.Size, device: torch.device):
    # Sizes, contiguous element strides and the shift table as int32 device arrays.
    strides = []
    stride = 1
    for size in reversed(grid_size):
        strides.append(stride)
        stride *= size
    strides.reverse()
    shifts = torch.tensor(voxel_shifts(len(grid_size)), dtype=torch.int32, device=device)
    return (
        wp.from_torch(torch.tensor(grid_size, dtype=torch.int32, device=device)),
        wp.from_torch(torch.tensor(strides, dtype=torch.int32, device=device)),
        wp.from_torch(shifts),
    )


def _float32_input(tensor: Tensor) -> Tensor:
    return tensor.detach().to(torch.float32).contiguous()


class _WarpTarget:
    """Float32 contiguous view of a gradient buffer for atomic accumulation.

    Buffers that already qualify are written directly; others go through a
    zeroed staging tensor that is stored back by :meth:`finish`.
    """

    def __init__(self, buffer: Tensor, accumulate: bool):
        self.buffer = buffer
        self.accumulate = accumulate
        if buffer.dtype == torch.float32 and buffer.is_contiguous():
            self.staging = None
            if not accumulate:
                buffer.zero_()
            self.array = wp.from_torch(buffer)
        else:
            self.staging = torch.zeros(
                buffer.shape, dtype=torch.float32, device=buffer.device
            )
            self.array = wp.from_torch(self.staging)

    def finish(self) -> None:
        if self.staging is not None:
            _store(self.buffer, self.staging, self.accumulate)


def raster_warp(
    out: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float,
    weight: Tensor | float,
) -> Tensor:
    """Scatter one point cloud into ``out`` with a Warp kernel."""
    n_out = out.dim()
    direct = out.dtype == torch.float32 and out.is_contiguous()
    target = out if direct else torch.empty(
        out.shape, dtype=torch.float32, device=out.device
    )
    target.fill_(float(background))

    points32 = _float32_input(points)
    rotation32 = _float32_input(rotation[:n_out])
    translation32 = _float32_input(translation)
    sizes, strides, shifts = _grid_tables(out.shape, out.device)

    wp_device, wp_stream = FunctionSpec.warp_launch_context(points32)
    with wp.ScopedStream(wp_stream):
        wp.launch(
            _raster_kernel,
            dim=points32.shape[1],
            inputs=[
                wp.from_torch(points32),
                wp.from_torch(rotation32),
                wp.from_torch(translation32),
                float(weight),
                sizes,
                strides,
                shifts,
                wp.from_torch(target.view(-1)),
            ],
            device=wp_device,
            stream=wp_stream,
        )

    if not direct:
        out.copy_(target)
    return out


def raster_pullback_warp(
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
    """Single-instance pullback with one Warp thread per point.

    Computes in float32; per-cell contributions are combined with atomics, so
    summation order across points is unspecified.
    """
    # Keep signature parity with the torch implementation API.
    _ = background
    n_out = ds_dout.dim()

    grad32 = _float32_input(ds_dout).view(-1)
    points32 = _float32_input(points)
    rotation32 = _float32_input(rotation[:n_out])
    translation32 = _float32_input(translation)
    sizes, strides, shifts = _grid_tables(ds_dout.shape, ds_dout.device)

    if not accumulate:
        # The dropped projection axis carries no gradient.
        ds_drotation[n_out:].zero_()
    targets = [
        _WarpTarget(ds_dpoints, accumulate),
        _WarpTarget(ds_drotation[:n_out], accumulate),
        _WarpTarget(ds_dtranslation, accumulate),
        _WarpTarget(ds_dweight.view(1), accumulate),
    ]

    wp_device, wp_stream = FunctionSpec.warp_launch_context(points32)
    with wp.ScopedStream(wp_stream):
        wp.launch(
            _raster_pullback_kernel,
            dim=points32.shape[1],
            inputs=[
                wp.from_torch(grad32),
                wp.from_torch(points32),
                wp.from_torch(rotation32),
                wp.from_torch(translation32),
                float(weight),
                sizes,
                strides,
                shifts,
            ]
            + [target.array for target in targets],
            device=wp_device,
            stream=wp_stream,
        )

    for target in targets:
        target.finish()
    _store(ds_dbackground, ds_dout.sum(), accumulate)

    return RasterGradients(
        points=ds_dpoints,
        rotation=ds_drotation,
        translation=ds_dtranslation,
        background=ds_dbackground,
        weight=ds_dweight,
    )
