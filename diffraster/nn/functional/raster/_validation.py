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


from typing import Sequence

import torch
from torch import Tensor


def as_scalar_inputs(
    background: Tensor | float | None,
    weight: Tensor | float | None,
    batch_size: int | None,
    dtype: torch.dtype,
    device: torch.device,
) -> tuple[Tensor, Tensor]:
    """Convert background and weight to tensors, filling in defaults.

    Defaults are a background of zero and a weight of one, per batch element
    when ``batch_size`` is given.
    """
    shape = () if batch_size is None else (batch_size,)
    if background is None:
        background = torch.zeros(shape, dtype=dtype, device=device)
    if weight is None:
        weight = torch.ones(shape, dtype=dtype, device=device)
    background = torch.as_tensor(background, dtype=dtype, device=device)
    weight = torch.as_tensor(weight, dtype=dtype, device=device)
    return background, weight


def check_inputs(
    grid_shape: Sequence[int],
    points: Tensor,
    rotation: Tensor,
    translation: Tensor,
    background: Tensor,
    weight: Tensor,
    project: bool,
) -> int | None:
    """Validate shapes of one rasterization call.

    ``grid_shape`` is the shape of the output (or output gradient) including
    the trailing batch axis for batched calls. Returns the batch size, or
    ``None`` for a single instance.

    Raises
    ------
    ValueError
        If any shape is inconsistent. Nothing is broadcast or truncated.
    """
    if rotation.dim() not in (2, 3):
        raise ValueError(
            f"rotation must be a matrix or a batch of matrices, got shape {tuple(rotation.shape)}"
        )
    batched = rotation.dim() == 3
    n_out = len(grid_shape) - int(batched)
    n_in = n_out + 1 if project else n_out
    if n_out < 1:
        raise ValueError(
            f"Output grid must have at least one spatial axis, got shape {tuple(grid_shape)}"
        )

    if tuple(rotation.shape[:2]) != (n_in, n_in):
        raise ValueError(
            f"rotation must be {n_in}x{n_in} for a {n_out}-d grid, "
            f"got {tuple(rotation.shape[:2])}"
        )

    max_points_dim = 3 if batched else 2
    if not 2 <= points.dim() <= max_points_dim or points.shape[0] != n_in:
        raise ValueError(
            f"points must have shape ({n_in}, count{', [batch]' if batched else ''}), "
            f"got {tuple(points.shape)}"
        )

    if translation.dim() != 1 + int(batched) or translation.shape[0] != n_out:
        raise ValueError(
            f"translation must have {n_out} entries per instance, got shape "
            f"{tuple(translation.shape)}"
        )

    if not batched:
        for name, value in (("background", background), ("weight", weight)):
            if value.dim() != 0:
                raise ValueError(
                    f"{name} must be a scalar for a single instance, got shape "
                    f"{tuple(value.shape)}"
                )
        return None

    axes = {
        "output": grid_shape[-1],
        "rotation": rotation.shape[2],
        "translation": translation.shape[1],
        "background": background.shape[0] if background.dim() == 1 else None,
        "weight": weight.shape[0] if weight.dim() == 1 else None,
    }
    if points.dim() == 3:
        axes["points"] = points.shape[2]
    if len(set(axes.values())) != 1:
        raise ValueError(f"Batch axes disagree: {axes}")
    return grid_shape[-1]
