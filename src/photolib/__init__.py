"""photolib: headless engine of a desktop photo manager.

Asset index, smart-album rules, query pipeline and the enrichment
task ledger with its asyncio dispatcher.
"""

__version__ = "0.1.0"

from photolib.library import Library
from photolib.query import Query, SearchMode
from photolib.snapshot import Snapshot

__all__ = ["Library", "Query", "SearchMode", "Snapshot", "__version__"]
