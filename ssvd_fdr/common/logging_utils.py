"""Logging and JSONL helpers for SSVD/eFDR analyses.

Every module logger is a child of the ``ssvd_fdr`` package logger, which owns
the single stream handler; ``set_verbosity`` therefore adjusts the whole
package at once.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

PACKAGE_LOGGER = "ssvd_fdr"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def _configure_package_logger() -> logging.Logger:
    root = logging.getLogger(PACKAGE_LOGGER)
    if not root.handlers:
        root.setLevel(logging.INFO)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
    return root


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Return a logger that reports through the package handler.

    Parameters
    ----------
    name:
        Logger name, usually ``__name__``. Names outside the package are
        nested under it so they share its handler and level.
    """

    _configure_package_logger()
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


def set_verbosity(verbose: int) -> None:
    """Map a CLI ``-v`` count onto the package log level (0 -> INFO, 1+ -> DEBUG)."""

    level = logging.DEBUG if verbose > 0 else logging.INFO
    _configure_package_logger().setLevel(level)


def append_jsonl(path: Path, record: Mapping[str, Any]) -> None:
    """Append one record to a JSONL (one-JSON-per-line) file.

    Parameters
    ----------
    path:
        Destination file path; parent directories are created.
    record:
        Mapping to be serialized as JSON on a single line. NumPy scalars are
        converted through ``float``/``int``.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        json.dump(dict(record), f, default=_json_default)
        f.write("\n")


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "tolist"):
        return obj.tolist()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
