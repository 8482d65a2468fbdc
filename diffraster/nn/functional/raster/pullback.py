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
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Mapping

import torch
from torch import Tensor

from diffraster.core.function_spec import FunctionSpec

from ._allocation import plan_allocation
from ._torch_impl import RasterGradients, _store, raster_pullback_torch
from ._validation import as_scalar_inputs, check_inputs
from ._warp_impl import raster_pullback_warp
from .geometry import points_in_cell_interiors

logger = logging.getLogger(__name__)

NUM_THREADS_ENV = "DIFFRASTER_NUM_THREADS"


class RasterPullback(FunctionSpec):
    """Single-instance pullback of multilinear point rasterization.

    Given ``ds_dout``, the sensitivity of a scalar ``s`` to the output grid of
    one rasterization, recompute the forward transform and write the
    sensitivities of ``s`` to points, rotation, translation, background and
    weight into the ``ds_d*`` buffers.

    Parameters
    ----------
    ds_dout : torch.Tensor
        Gradient grid of shape ``grid_size``.
    points : torch.Tensor
        Point cloud of shape ``(n_in, count)``.
    rotation : torch.Tensor
        ``(n_in, n_in)`` rotation. When the grid has ``n_in - 1`` axes, the
        last rotated axis is dropped and its gradient row is zero.
    translation : torch.Tensor
        Translation of shape ``(n_out,)``.
    background, weight : torch.Tensor or float
        Scalars of the forward call.
    ds_dpoints, ds_drotation, ds_dtranslation, ds_dbackground, ds_dweight : torch.Tensor
        Output buffers shaped like the corresponding inputs.
    accumulate : bool, optional
        Add into the buffers instead of overwriting them, by default False.
    implementation : {"warp", "torch"} or None
        Implementation to use. When ``None``, dispatch selects the available
        implementation.
    """

    @FunctionSpec.register(name="warp", required_imports=("warp>=1.0",), rank=1)
    def warp_forward(
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
        return raster_pullback_warp(
            ds_dout,
            points,
            rotation,
            translation,
            background,
            weight,
            ds_dpoints,
            ds_drotation,
            ds_dtranslation,
            ds_dbackground,
            ds_dweight,
            accumulate=accumulate,
        )

    @FunctionSpec.register(name="torch", rank=0, baseline=True)
    def torch_forward(
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
        return raster_pullback_torch(
            ds_dout,
            points,
            rotation,
            translation,
            background,
            weight,
            ds_dpoints,
            ds_drotation,
            ds_dtranslation,
            ds_dbackground,
            ds_dweight,
            accumulate=accumulate,
        )

    @classmethod
    def make_inputs(cls, device: torch.device | str = "cpu"):
        device = torch.device(device)
        generator = torch.Generator().manual_seed(0)
        cases = [
            ("1d", 1, (16,), 64),
            ("2d", 2, (8, 8), 256),
            ("3d", 3, (8, 8, 8), 512),
            ("3d-to-2d", 3, (8, 8), 512),
        ]
        for label, n_in, grid_size, num_points in cases:
            rotation = torch.linalg.qr(torch.randn(n_in, n_in, generator=generator))[0]
            translation = 0.1 * torch.randn(len(grid_size), generator=generator)
            points = points_in_cell_interiors(
                grid_size, rotation, translation, num_points, generator=generator
            )
            ds_dout = torch.randn(grid_size, generator=generator)
            yield (
                f"{label}-g{'x'.join(map(str, grid_size))}-n{num_points}",
                (
                    ds_dout.to(device),
                    points.to(device),
                    rotation.to(device),
                    translation.to(device),
                    torch.tensor(0.5, device=device),
                    torch.tensor(1.5, device=device),
                ),
                {},
            )


def default_num_workers() -> int:
    """Worker count used when ``max_workers`` is not given.

    ``DIFFRASTER_NUM_THREADS`` wins when set. Otherwise the CPU count is
    divided by ``torch.get_num_threads()``, since every worker runs its torch
    ops on an intra-op pool of that size.
    """
    value = os.getenv(NUM_THREADS_ENV)
    if value:
        try:
            return int(value)
        except ValueError as err:
            raise ValueError(
                f"{NUM_THREADS_ENV} must be an integer, got {value!r}"
            ) from err
    return max(1, (os.cpu_count() or 1) // torch.get_num_threads())


def partition(n_items: int, n_chunks: int) -> list[range]:
    """Split ``range(n_items)`` into ``n_chunks`` contiguous, near-equal ranges."""
    base, extra = divmod(n_items, n_chunks)
    chunks = []
    start = 0
    for chunk in range(n_chunks):
        stop = start + base + (1 if chunk < extra else 0)
        chunks.append(range(start, stop))
        start = stop
    return chunks


def _input_shapes(points, rotation, translation, background, weight):
    return {
        "points": tuple(points.shape),
        "rotation": tuple(rotation.shape),
        "translation": tuple(translation.shape),
        "background": tuple(background.shape),
        "weight": tuple(weight.shape),
    }


def _pullback(
    ds_dout: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None,
    weight: Tensor | float | None,
    project: bool,
    prealloc: Mapping[str, Tensor] | None,
    accumulate: bool,
    max_workers: int | None,
    implementation: str | None,
) -> RasterGradients:
    batched = rotation.dim() == 3 and ds_dout.dim() > 0
    batch_size = ds_dout.shape[-1] if batched else None
    background, weight = as_scalar_inputs(
        background, weight, batch_size, ds_dout.dtype, ds_dout.device
    )
    check_inputs(
        ds_dout.shape, points, rotation, translation, background, weight, project
    )
    if batch_size is None:
        return _pullback_single(
            ds_dout,
            points,
            rotation,
            translation,
            background,
            weight,
            prealloc,
            accumulate,
            implementation,
        )
    return _pullback_batched(
        ds_dout,
        points,
        rotation,
        translation,
        background,
        weight,
        prealloc,
        accumulate,
        max_workers,
        implementation,
    )


def _pullback_single(
    ds_dout,
    points,
    rotation,
    translation,
    background,
    weight,
    prealloc,
    accumulate,
    implementation,
) -> RasterGradients:
    plan = plan_allocation(
        _input_shapes(points, rotation, translation, background, weight), prealloc
    )
    buffers = plan.resolve(ds_dout.dtype, ds_dout.device)
    return RasterPullback.dispatch(
        ds_dout,
        points,
        rotation,
        translation,
        background,
        weight,
        **buffers.as_kwargs(),
        accumulate=accumulate,
        implementation=implementation,
    )


def _pullback_batched(
    ds_dout,
    points,
    rotation,
    translation,
    background,
    weight,
    prealloc,
    accumulate,
    max_workers,
    implementation,
) -> RasterGradients:
    batch_size = ds_dout.shape[-1]
    if max_workers is None:
        max_workers = default_num_workers()
    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")
    n_workers = max(1, min(max_workers, batch_size))

    # One cloud shared by the whole batch is staged per worker and reduced below.
    shared_points = points.dim() == 2
    plan = plan_allocation(
        _input_shapes(points, rotation, translation, background, weight),
        prealloc,
        n_workers=n_workers if shared_points else None,
    )
    buffers = plan.resolve(ds_dout.dtype, ds_dout.device, zero_provided=not accumulate)
    chunks = partition(batch_size, n_workers)
    logger.debug(
        "Batched pullback: batch=%d workers=%d chunks=%s plan=(%s)",
        batch_size,
        n_workers,
        [(chunk.start, chunk.stop) for chunk in chunks],
        plan.describe(),
    )

    def run_chunk(worker: int, indices: range) -> None:
        for i in indices:
            RasterPullback.dispatch(
                ds_dout[..., i],
                points if shared_points else points[..., i],
                rotation[..., i],
                translation[..., i],
                background[i],
                weight[i],
                **buffers.instance(i, worker),
                accumulate=True,
                implementation=implementation,
            )

    with ThreadPoolExecutor(
        max_workers=n_workers, thread_name_prefix="diffraster-pullback"
    ) as pool:
        futures = [
            pool.submit(run_chunk, worker, indices)
            for worker, indices in enumerate(chunks)
        ]
        for future in futures:
            future.result()

    if buffers.points_staging is not None:
        # Every worker contributed to the same shared cloud.
        _store(buffers.points, buffers.points_staging.sum(dim=0), accumulate)

    return RasterGradients(
        points=buffers.points,
        rotation=buffers.rotation,
        translation=buffers.translation,
        background=buffers.background,
        weight=buffers.weight,
    )


def raster_pullback(
    ds_dout: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    prealloc: Mapping[str, Tensor] | None = None,
    accumulate: bool = False,
    max_workers: int | None = None,
    implementation: str | None = None,
) -> RasterGradients:
    """Pullback for :func:`raster` / :func:`raster_`.

    Take ``ds_dout``, the sensitivity of some scalar ``s`` to the output of
    ``raster(grid_size, points, rotation, translation, background, weight)``,
    together with the same arguments, and return the sensitivities of ``s``
    to those arguments.

    A 3-d ``rotation`` selects the batched form: ``ds_dout``, ``rotation``,
    ``translation``, ``background`` and ``weight`` then carry a trailing
    batch axis, and ``points`` is either shared by every batch element or
    carries the batch axis too. The batch is split into contiguous chunks
    processed by up to ``max_workers`` threads.

    Parameters
    ----------
    ds_dout : torch.Tensor
        Gradient grid, ``grid_size`` or ``(*grid_size, batch)``.
    points : torch.Tensor
        ``(n, count)`` or ``(n, count, batch)``.
    rotation : torch.Tensor
        ``(n, n)`` or ``(n, n, batch)``.
    translation : torch.Tensor
        ``(n,)`` or ``(n, batch)``.
    background : torch.Tensor or float, optional
        Defaults to zero.
    weight : torch.Tensor or float, optional
        Defaults to one.
    prealloc : Mapping[str, torch.Tensor], optional
        Buffers to write gradients into, keyed by input name, e.g.
        ``{"translation": torch.empty(2, 8)}`` for 2-d points and a batch of 8.
    accumulate : bool, optional
        Add into ``prealloc`` buffers instead of overwriting them.
    max_workers : int, optional
        Thread count for the batched form. Defaults to the
        ``DIFFRASTER_NUM_THREADS`` environment variable, else the CPU count
        divided by ``torch.get_num_threads()`` (see :func:`default_num_workers`).
    implementation : {"warp", "torch"} or None
        Single-instance implementation to use.

    Returns
    -------
    RasterGradients
        Gradients shaped like the corresponding inputs.
    """
    return _pullback(
        ds_dout,
        points,
        rotation,
        translation,
        background,
        weight,
        False,
        prealloc,
        accumulate,
        max_workers,
        implementation,
    )


def raster_project_pullback(
    ds_dout: Tensor,
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor | float | None = None,
    weight: Tensor | float | None = None,
    *,
    prealloc: Mapping[str, Tensor] | None = None,
    accumulate: bool = False,
    max_workers: int | None = None,
    implementation: str | None = None,
) -> RasterGradients:
    """Pullback for :func:`raster_project` / :func:`raster_project_`.

    Same as :func:`raster_pullback` for a grid with one axis fewer than the
    points. The last row of the rotation gradient is always zero.
    """
    return _pullback(
        ds_dout,
        points,
        rotation,
        translation,
        background,
        weight,
        True,
        prealloc,
        accumulate,
        max_workers,
        implementation,
    )
