"""
Key-addressed persistence for fit results.

Stores expose has(key) / get(key) / put(key, value). NetCDFResultStore
writes each InferenceData to a temporary file in the target directory and
renames it into place, so a key either holds a complete result or nothing.
"""

import logging
import os
import re
import uuid
from pathlib import Path
from typing import Dict, Protocol, Union

import arviz as az

from salmon_ipm.errors import CacheCorruptionError

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    def has(self, key: str) -> bool:
        ...

    def get(self, key: str) -> az.InferenceData:
        ...

    def put(self, key: str, value: az.InferenceData) -> None:
        ...

    def discard(self, key: str) -> None:
        ...


class MemoryResultStore:
    """In-process store; results live as long as the store object."""

    def __init__(self) -> None:
        self._results: Dict[str, az.InferenceData] = {}

    def has(self, key: str) -> bool:
        return key in self._results

    def get(self, key: str) -> az.InferenceData:
        if key not in self._results:
            raise KeyError(key)
        return self._results[key]

    def put(self, key: str, value: az.InferenceData) -> None:
        self._results[key] = value

    def discard(self, key: str) -> None:
        self._results.pop(key, None)

    def __len__(self) -> int:
        return len(self._results)


class NetCDFResultStore:
    """
    One NetCDF file per key under ``root``.

    Parameters
    ----------
    root : str or Path
        Cache directory; created on first write.
    """

    suffix = ".nc"

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        if not key:
            raise ValueError("Cache key must be non-empty")
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.root / f"{safe}{self.suffix}"

    def has(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def get(self, key: str) -> az.InferenceData:
        """
        Load a stored result fully into memory.

        Raises
        ------
        KeyError
            If nothing is stored under ``key``.
        CacheCorruptionError
            If the file exists but cannot be read.
        """
        path = self.path_for(key)
        if not path.is_file():
            raise KeyError(key)
        try:
            idata = az.from_netcdf(str(path))
            for group in idata.groups():
                getattr(idata, group).load()
        except (OSError, ValueError, KeyError, RuntimeError) as e:
            raise CacheCorruptionError(f"Cannot read cached result {path}: {e}") from e
        return idata

    def put(self, key: str, value: az.InferenceData) -> None:
        """Write to a temporary file, then atomically rename over the target."""
        path = self.path_for(key)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
        try:
            value.to_netcdf(str(tmp))
            os.replace(tmp, path)
        except BaseException:
            if tmp.exists():
                tmp.unlink()
            raise
        logger.debug("Stored %s at %s", key, path)

    def discard(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()

    def __repr__(self) -> str:
        return f"NetCDFResultStore({str(self.root)!r})"
