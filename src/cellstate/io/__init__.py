"""Input helpers."""

from cellstate.io.gene_lists import load_gene_list

__all__ = ['load_gene_list']
