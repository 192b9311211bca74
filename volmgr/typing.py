"""Certain types used across the package."""

from __future__ import annotations

from os import PathLike
from typing import TYPE_CHECKING, Callable, Union

from typing_extensions import TypeAlias

__all__ = ["StrPath", "Sleeper"]


# `PathLike` cannot be subscripted at runtime.
if TYPE_CHECKING:
    StrPath: TypeAlias = Union[str, PathLike[str]]

Sleeper: TypeAlias = Callable[[float], None]
