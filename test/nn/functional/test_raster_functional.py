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


import pytest
import torch

from diffraster import (
    raster,
    raster_,
    raster_project,
    raster_project_,
    raster_project_pullback,
    raster_pullback,
)
from diffraster.nn.functional import raster_scatter
from diffraster.nn.functional.raster import RasterPullback

DTYPE = torch.float64


def _random_rotation(n, generator):
    return torch.linalg.qr(torch.randn(n, n, dtype=DTYPE, generator=generator))[0]


class TestRasterForward:
    def test_single_point_at_origin(self):
        out = raster(
            (4, 4),
            torch.zeros(2, 1, dtype=DTYPE),
            torch.eye(2, dtype=DTYPE),
            torch.zeros(2, dtype=DTYPE),
            background=0.1,
            weight=1.0,
        )
        expected = torch.full((4, 4), 0.1, dtype=DTYPE)
        expected[1:3, 1:3] += 0.25
        torch.testing.assert_close(out, expected)

    def test_defaults(self):
        out = raster(
            (4,),
            torch.zeros(1, 1, dtype=DTYPE),
            torch.eye(1, dtype=DTYPE),
            torch.zeros(1, dtype=DTYPE),
        )
        torch.testing.assert_close(
            out, torch.tensor([0.0, 0.5, 0.5, 0.0], dtype=DTYPE)
        )

    def test_point_at_cell_center(self):
        # Cell 2 of 4 is centered at -1 + 5 / 4.
        points = torch.tensor([[0.25]], dtype=DTYPE)
        out = raster(
            (4,), points, torch.eye(1, dtype=DTYPE), torch.zeros(1, dtype=DTYPE)
        )
        torch.testing.assert_close(
            out, torch.tensor([0.0, 0.0, 1.0, 0.0], dtype=DTYPE)
        )

    @pytest.mark.parametrize("grid_size,n_in", [((8,), 1), ((8, 7), 2), ((6, 8, 5), 3)])
    def test_mass_conservation_inside_grid(self, grid_size, n_in):
        generator = torch.Generator().manual_seed(0)
        points = 0.6 * (2 * torch.rand(n_in, 300, dtype=DTYPE, generator=generator) - 1)
        out = raster(
            grid_size,
            points,
            torch.eye(n_in, dtype=DTYPE),
            torch.zeros(n_in, dtype=DTYPE),
            background=0.5,
            weight=2.0,
        )
        expected = 0.5 * out.numel() + 2.0 * 300
        torch.testing.assert_close(out.sum(), torch.tensor(expected, dtype=DTYPE))

    def test_points_outside_grid_are_dropped(self):
        points = torch.tensor([[5.0, -3.0], [0.0, 0.0]], dtype=DTYPE)
        out = raster(
            (4, 4), points, torch.eye(2, dtype=DTYPE), torch.zeros(2, dtype=DTYPE)
        )
        assert not out.any()

    @pytest.mark.parametrize("coordinate", [3e38, float("nan"), float("inf")])
    def test_non_finite_points_are_dropped(self, coordinate):
        points = torch.tensor([[0.1, coordinate], [0.2, 0.3]])
        out = raster((4, 4), points, torch.eye(2), torch.zeros(2))
        expected = raster((4, 4), points[:, :1], torch.eye(2), torch.zeros(2))
        torch.testing.assert_close(out, expected)

    def test_translation_moves_mass(self):
        points = torch.zeros(1, 1, dtype=DTYPE)
        out = raster(
            (4,), points, torch.eye(1, dtype=DTYPE), torch.tensor([0.25], dtype=DTYPE)
        )
        torch.testing.assert_close(
            out, torch.tensor([0.0, 0.0, 1.0, 0.0], dtype=DTYPE)
        )

    def test_project_drops_last_rotated_axis(self):
        generator = torch.Generator().manual_seed(1)
        points = torch.rand(3, 50, dtype=DTYPE, generator=generator) - 0.5
        rotation = _random_rotation(3, generator)
        translation = torch.tensor([0.05, -0.1], dtype=DTYPE)
        projected = raster_project((6, 5), points, rotation, translation, 0.2, 1.3)
        expected = raster(
            (6, 5),
            (rotation @ points)[:2],
            torch.eye(2, dtype=DTYPE),
            translation,
            0.2,
            1.3,
        )
        torch.testing.assert_close(projected, expected)

    def test_batched_matches_instances(self):
        generator = torch.Generator().manual_seed(2)
        batch = 4
        points = torch.rand(3, 40, dtype=DTYPE, generator=generator) - 0.5
        rotations = torch.stack(
            [_random_rotation(3, generator) for _ in range(batch)], dim=-1
        )
        translations = 0.1 * torch.randn(3, batch, dtype=DTYPE, generator=generator)
        backgrounds = torch.rand(batch, dtype=DTYPE, generator=generator)
        weights = torch.rand(batch, dtype=DTYPE, generator=generator)
        out = raster((5, 6, 4), points, rotations, translations, backgrounds, weights)
        assert out.shape == (5, 6, 4, batch)
        for i in range(batch):
            expected = raster(
                (5, 6, 4),
                points,
                rotations[..., i],
                translations[..., i],
                backgrounds[i],
                weights[i],
            )
            torch.testing.assert_close(out[..., i], expected)

    def test_grid_dimensionality_mismatch(self):
        with pytest.raises(ValueError, match="rotation must be 2x2"):
            raster(
                (4, 4),
                torch.zeros(3, 1, dtype=DTYPE),
                torch.eye(3, dtype=DTYPE),
                torch.zeros(2, dtype=DTYPE),
            )
        with pytest.raises(ValueError, match="rotation must be 3x3"):
            raster_project(
                (4, 4),
                torch.zeros(2, 1, dtype=DTYPE),
                torch.eye(2, dtype=DTYPE),
                torch.zeros(2, dtype=DTYPE),
            )


class TestRasterInPlace:
    def test_matches_out_of_place(self):
        generator = torch.Generator().manual_seed(3)
        points = torch.rand(2, 30, dtype=DTYPE, generator=generator) - 0.5
        rotation = _random_rotation(2, generator)
        translation = torch.tensor([0.1, 0.2], dtype=DTYPE)
        out = torch.full((5, 7), float("nan"), dtype=DTYPE)
        result = raster_(out, points, rotation, translation, 0.3, 0.9)
        assert result is out
        torch.testing.assert_close(
            out, raster((5, 7), points, rotation, translation, 0.3, 0.9)
        )

    def test_project(self):
        generator = torch.Generator().manual_seed(4)
        points = torch.rand(3, 30, dtype=DTYPE, generator=generator) - 0.5
        rotation = _random_rotation(3, generator)
        translation = torch.zeros(2, dtype=DTYPE)
        out = torch.empty(6, 6, dtype=DTYPE)
        raster_project_(out, points, rotation, translation)
        torch.testing.assert_close(
            out, raster_project((6, 6), points, rotation, translation)
        )

    def test_not_tracked_by_autograd(self):
        points = torch.zeros(2, 1, dtype=DTYPE, requires_grad=True)
        out = torch.empty(4, 4, dtype=DTYPE)
        raster_(out, points, torch.eye(2, dtype=DTYPE), torch.zeros(2, dtype=DTYPE))
        assert not out.requires_grad

    def test_wrong_output_shape(self):
        with pytest.raises(ValueError, match="translation must have 3 entries"):
            raster_(
                torch.empty(4, 4, 4, dtype=DTYPE),
                torch.zeros(3, 1, dtype=DTYPE),
                torch.eye(3, dtype=DTYPE),
                torch.zeros(2, dtype=DTYPE),
            )

    def test_raster_scatter_dispatch(self):
        out = torch.empty(4, 4, dtype=DTYPE)
        raster_scatter(
            out,
            torch.zeros(2, 1, dtype=DTYPE),
            torch.eye(2, dtype=DTYPE),
            torch.zeros(2, dtype=DTYPE),
            implementation="torch",
        )
        assert out.sum().item() == pytest.approx(1.0)
        assert raster_scatter.__name__ == "raster_scatter"


class TestRasterAutograd:
    def _leaves(self, seed, n_in, batch=None):
        generator = torch.Generator().manual_seed(seed)
        tail = () if batch is None else (batch,)
        points = 1.2 * (2 * torch.rand(n_in, 80, dtype=DTYPE, generator=generator) - 1)
        if batch is None:
            rotation = _random_rotation(n_in, generator)
        else:
            rotation = torch.stack(
                [_random_rotation(n_in, generator) for _ in range(batch)], dim=-1
            )
        return [
            points,
            rotation,
            0.1 * torch.randn(n_in, *tail, dtype=DTYPE, generator=generator),
            torch.rand(tail, dtype=DTYPE, generator=generator),
            1.0 + torch.rand(tail, dtype=DTYPE, generator=generator),
        ]

    def test_backward_uses_pullback(self):
        leaves = self._leaves(0, 2)
        ds_dout = torch.randn(6, 5, dtype=DTYPE, generator=torch.Generator().manual_seed(9))
        inputs = [t.clone().requires_grad_(True) for t in leaves]
        out = raster((6, 5), *inputs)
        out.backward(ds_dout)
        expected = raster_pullback(ds_dout, *leaves)
        for leaf, grad in zip(inputs, expected):
            torch.testing.assert_close(leaf.grad, grad)

    def test_batched_backward(self):
        leaves = self._leaves(1, 3, batch=3)
        ds_dout = torch.randn(5, 5, 5, 3, dtype=DTYPE, generator=torch.Generator().manual_seed(9))
        inputs = [t.clone().requires_grad_(True) for t in leaves]
        out = raster((5, 5, 5), *inputs)
        out.backward(ds_dout)
        expected = raster_pullback(ds_dout, *leaves)
        for leaf, grad in zip(inputs, expected):
            torch.testing.assert_close(leaf.grad, grad)

    def test_project_backward(self):
        leaves = self._leaves(2, 3)
        leaves[2] = leaves[2][:2].contiguous()
        ds_dout = torch.randn(7, 6, dtype=DTYPE, generator=torch.Generator().manual_seed(9))
        inputs = [t.clone().requires_grad_(True) for t in leaves]
        out = raster_project((7, 6), *inputs)
        out.backward(ds_dout)
        expected = raster_project_pullback(ds_dout, *leaves)
        for leaf, grad in zip(inputs, expected):
            torch.testing.assert_close(leaf.grad, grad)
        assert not inputs[1].grad[2].any()

    def test_gradcheck_translation(self):
        points = torch.tensor([[0.13, -0.41, 0.27], [0.05, 0.33, -0.22]], dtype=DTYPE)
        rotation = torch.eye(2, dtype=DTYPE)
        translation = torch.tensor([0.02, -0.03], dtype=DTYPE, requires_grad=True)

        def func(t):
            return raster((6, 6), points, rotation, t, 0.0, 1.0)

        assert torch.autograd.gradcheck(func, (translation,), eps=1e-6, atol=1e-5)

    def test_backward_uses_requested_implementation(self, monkeypatch):
        requested = []
        dispatch = RasterPullback.dispatch

        def recording_dispatch(cls, *args, implementation=None, **kwargs):
            requested.append(implementation)
            return dispatch(*args, implementation=implementation, **kwargs)

        monkeypatch.setattr(RasterPullback, "dispatch", classmethod(recording_dispatch))
        leaves = self._leaves(3, 2)
        inputs = [t.clone().requires_grad_(True) for t in leaves]
        raster((5, 5), *inputs, implementation="torch").sum().backward()
        assert requested == ["torch"]
        expected = raster_pullback(torch.ones(5, 5, dtype=DTYPE), *leaves)
        for leaf, grad in zip(inputs, expected):
            torch.testing.assert_close(leaf.grad, grad)

    def test_backward_uses_requested_worker_count(self):
        leaves = self._leaves(4, 2, batch=3)
        inputs = [t.clone().requires_grad_(True) for t in leaves]
        out = raster((5, 5), *inputs, max_workers=0)
        with pytest.raises(ValueError, match="max_workers"):
            out.sum().backward()

    def test_unknown_implementation(self):
        leaves = self._leaves(5, 2)
        with pytest.raises(ValueError, match="Unknown implementation"):
            raster((5, 5), *leaves, implementation="does-not-exist")
