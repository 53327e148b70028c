"""Built-in enrichment sources."""

from .local import LocalCatalogSource
from .wikipedia import WikipediaSource

__all__ = ["LocalCatalogSource", "WikipediaSource"]
