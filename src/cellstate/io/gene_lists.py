"""
Gene-list files.

Plain text, one gene symbol per line. Blank lines and lines starting with
'#' are ignored; surrounding whitespace is stripped. Order is preserved, so
a list can be used wherever ordered gene ids are expected.

Example file (regev_s_genes.txt):

    # S-phase markers
    MCM5
    PCNA
    TYMS
"""

from __future__ import annotations

import logging
from pathlib import Path

from cellstate.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['load_gene_list']


def load_gene_list(path: Path) -> list[str]:
    """
    Read an ordered gene list.

    Args:
        path: Text file with one gene per line

    Returns:
        Gene symbols in file order

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidInputError: If the file lists no genes or repeats a gene
    """
    if not isinstance(path, Path):
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Gene list not found: {path}")

    if not path.is_file():
        raise InvalidInputError(f"Path is not a file: {path}")

    genes: list[str] = []
    seen: dict[str, int] = {}
    with open(path, 'r') as f:
        for line_no, line in enumerate(f, start=1):
            name = line.strip()
            if not name or name.startswith('#'):
                continue
            if name in seen:
                raise InvalidInputError(
                    f"{path}: gene '{name}' on line {line_no} already listed on line {seen[name]}"
                )
            seen[name] = line_no
            genes.append(name)

    if not genes:
        raise InvalidInputError(f"Gene list is empty: {path}")

    logger.debug(f"Loaded {len(genes)} genes from {path}")
    return genes
