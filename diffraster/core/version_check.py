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


import importlib
import importlib.util
import logging
from functools import lru_cache

from packaging.requirements import InvalidRequirement, Requirement
from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def _installed_version(module_name: str) -> Version | None:
    # Missing modules and modules without a parsable version report None.
    if importlib.util.find_spec(module_name) is None:
        return None
    module = importlib.import_module(module_name)
    raw = getattr(module, "__version__", None)
    if raw is None:
        return None
    try:
        return Version(str(raw))
    except InvalidVersion:
        logger.debug("Unparsable version %r for module %s", raw, module_name)
        return None


def check_version_spec(
    name: str, min_version: str | None = None, hard_fail: bool = True
) -> bool:
    """Check that an importable module satisfies a version requirement.

    Parameters
    ----------
    name : str
        Module name, optionally carrying a PEP 440 specifier such as
        ``"warp>=1.0"``.
    min_version : str, optional
        Minimum version, combined with any specifier in ``name``.
    hard_fail : bool, optional
        Raise ``ImportError`` instead of returning ``False``, by default True.

    Returns
    -------
    bool
        ``True`` when the module is importable and satisfies the requirement.
    """
    try:
        requirement = Requirement(name)
    except InvalidRequirement as err:
        raise ValueError(f"Invalid requirement string {name!r}") from err

    specifier = requirement.specifier
    if min_version is not None:
        specifier &= f">={min_version}"

    installed = _installed_version(requirement.name)
    if installed is None:
        ok = importlib.util.find_spec(requirement.name) is not None and not str(
            specifier
        )
    else:
        ok = specifier.contains(installed, prereleases=True)

    if not ok and hard_fail:
        raise ImportError(
            f"{requirement.name}{specifier} is required, "
            f"found {installed if installed is not None else 'nothing'}"
        )
    return ok
