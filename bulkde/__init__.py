"""
bulkde: bulk RNA-seq differential expression and gene-set enrichment.
"""

from bulkde.version import __version__

__all__ = ["__version__"]
