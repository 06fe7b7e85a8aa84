"""iRODS catalog access: connection and UUID to path resolution."""

from purgeman.catalog.irods import CatalogEntry, IRODSCatalog
from purgeman.catalog.resolver import PathResolver

__all__ = [
    "CatalogEntry",
    "IRODSCatalog",
    "PathResolver",
]
