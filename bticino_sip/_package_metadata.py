from __future__ import annotations

import importlib.metadata as importlib_metadata
import warnings
from email.message import Message
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import toml


DISTRIBUTION_NAME: str = "bticino-sip"

metadata: Message | Mapping[str, Any] | None = None
try:
    metadata = importlib_metadata.metadata(DISTRIBUTION_NAME)
except importlib_metadata.PackageNotFoundError:
    package_path = Path(__file__).resolve().parent
    for relpaths in (("..", "pyproject.toml"), ("pyproject.toml",)):
        pyproj_toml_path = Path(package_path, *relpaths)
        if pyproj_toml_path.exists():
            metadata = toml.load(pyproj_toml_path)
            break
    else:
        warnings.warn(
            "Didn't find distinfo nor pyproject.toml for package metadata", stacklevel=1
        )


def get_metadata(
    distinfo_key: str,
    toml_getter: str | int | Sequence[str | int] | Callable[[Mapping[str, Any]], Any],
) -> Any:
    """
    Look up a package metadata value.

    :param distinfo_key: the key in the installed distribution's METADATA.
    :param toml_getter: a key, a path of keys, or a callable to look the value
        up in the parsed pyproject.toml when the package is not installed.
    :return: the metadata value, or None if unavailable.
    """
    if metadata is None:
        return None
    if isinstance(metadata, Message):
        return metadata.get(distinfo_key)
    if isinstance(metadata, dict):
        try:
            if callable(toml_getter):
                return toml_getter(metadata)
            if isinstance(toml_getter, (list, tuple)):
                value: Any = metadata
                for key in toml_getter:
                    value = value[key]
                return value
            return metadata[toml_getter]
        except (KeyError, IndexError, TypeError):
            return None
    return None
