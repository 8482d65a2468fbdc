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


"""Resolution of gradient output buffers for the pullback entry points.

Every gradient output is classified once, before any worker starts, as a
caller buffer, fresh storage, or per-worker staging that is reduced after
the workers finish.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Mapping

import torch
from torch import Tensor

GRADIENT_NAMES = ("points", "rotation", "translation", "background", "weight")


class BufferSource(Enum):
    PROVIDED = "provided"
    ALLOCATE = "allocate"
    ALLOCATE_PER_WORKER = "allocate_per_worker"


@dataclass(frozen=True)
class BufferPlan:
    """Where one gradient output lives.

    For ``ALLOCATE_PER_WORKER`` the plan still carries the caller buffer, if
    any, as the target of the final reduction.
    """

    source: BufferSource
    shape: tuple[int, ...]
    provided: Tensor | None = None


@dataclass
class GradientBuffers:
    points: Tensor
    rotation: Tensor
    translation: Tensor
    background: Tensor
    weight: Tensor
    points_staging: Tensor | None = None

    def as_kwargs(self) -> dict[str, Tensor]:
        """Buffers as keyword arguments of a single-instance pullback."""
        return {f"ds_d{name}": getattr(self, name) for name in GRADIENT_NAMES}

    def instance(self, index: int, worker: int) -> dict[str, Tensor]:
        """Views a single-instance pullback writes into for one batch element."""
        if self.points_staging is not None:
            ds_dpoints = self.points_staging[worker]
        else:
            ds_dpoints = self.points[..., index]
        return {
            "ds_dpoints": ds_dpoints,
            "ds_drotation": self.rotation[..., index],
            "ds_dtranslation": self.translation[..., index],
            "ds_dbackground": self.background[index],
            "ds_dweight": self.weight[index],
        }


@dataclass(frozen=True)
class AllocationPlan:
    points: BufferPlan
    rotation: BufferPlan
    translation: BufferPlan
    background: BufferPlan
    weight: BufferPlan
    n_workers: int = 1

    def resolve(
        self, dtype: torch.dtype, device: torch.device, zero_provided: bool = False
    ) -> GradientBuffers:
        """Materialize every buffer.

        Fresh storage is zero-filled. Caller buffers are zeroed only when
        ``zero_provided`` is set, which the batched path needs because its
        workers accumulate into their slots.
        """
        tensors = {}
        for name in GRADIENT_NAMES:
            plan = getattr(self, name)
            if plan.provided is None:
                tensors[name] = torch.zeros(plan.shape, dtype=dtype, device=device)
            else:
                if zero_provided and plan.source is BufferSource.PROVIDED:
                    plan.provided.zero_()
                tensors[name] = plan.provided

        staging = None
        if self.points.source is BufferSource.ALLOCATE_PER_WORKER:
            staging = torch.zeros(
                (self.n_workers, *self.points.shape), dtype=dtype, device=device
            )
        return GradientBuffers(**tensors, points_staging=staging)

    def describe(self) -> str:
        return ", ".join(
            f"{f.name}={getattr(self, f.name).source.value}"
            for f in fields(self)
            if f.name in GRADIENT_NAMES
        )


def plan_allocation(
    shapes: Mapping[str, tuple[int, ...]],
    prealloc: Mapping[str, Tensor] | None = None,
    n_workers: int | None = None,
) -> AllocationPlan:
    """Classify each gradient output.

    Parameters
    ----------
    shapes : Mapping[str, tuple[int, ...]]
        Shape of each differentiable input, which is also the shape of its
        gradient.
    prealloc : Mapping[str, Tensor], optional
        Caller buffers keyed by input name.
    n_workers : int, optional
        Number of workers sharing one point cloud. When given, the points
        gradient is staged per worker.

    Raises
    ------
    ValueError
        If ``prealloc`` names an unknown input or a buffer has the wrong shape.
    """
    prealloc = dict(prealloc or {})
    unknown = sorted(set(prealloc) - set(GRADIENT_NAMES))
    if unknown:
        raise ValueError(
            f"Unknown pre-allocated gradients {unknown}, expected names in {GRADIENT_NAMES}"
        )

    plans = {}
    for name in GRADIENT_NAMES:
        shape = tuple(shapes[name])
        provided = prealloc.get(name)
        if provided is not None and tuple(provided.shape) != shape:
            raise ValueError(
                f"Pre-allocated gradient for {name!r} has shape "
                f"{tuple(provided.shape)}, expected {shape}"
            )
        if name == "points" and n_workers is not None:
            source = BufferSource.ALLOCATE_PER_WORKER
        elif provided is not None:
            source = BufferSource.PROVIDED
        else:
            source = BufferSource.ALLOCATE
        plans[name] = BufferPlan(source=source, shape=shape, provided=provided)

    return AllocationPlan(**plans, n_workers=n_workers or 1)
