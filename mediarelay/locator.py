"""Find the files yt-dlp left in a workspace."""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List, Tuple, Union

from .errors import AmbiguousOutput, NoOutputProduced

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"(\d+)")


def natural_key(name: str) -> Tuple[Union[Tuple[int, int], Tuple[int, str]], ...]:
    """Sort key comparing digit runs numerically: ``2 - a`` < ``10 - b``."""
    parts = []
    for token in _DIGITS.split(name):
        if not token:
            continue
        if token.isdigit():
            parts.append((0, int(token)))
        else:
            parts.append((1, token.casefold()))
    return tuple(parts)


def locate(workspace: Union[str, os.PathLike], extension: str, *, single: bool = False) -> List[Path]:
    """Return files in ``workspace`` ending with ``extension``, in natural order."""
    extension = extension.lower()
    with os.scandir(workspace) as entries:
        matches = [
            Path(entry.path)
            for entry in entries
            if entry.is_file() and entry.name.lower().endswith(extension)
        ]
    if not matches:
        raise NoOutputProduced(f"no *{extension} files in {workspace}")
    matches.sort(key=lambda path: natural_key(path.name))
    if single and len(matches) > 1:
        names = ", ".join(path.name for path in matches)
        raise AmbiguousOutput(f"expected one *{extension} file in {workspace}, found {len(matches)}: {names}")
    logger.debug("Located outputs workspace=%s count=%d", workspace, len(matches))
    return matches
