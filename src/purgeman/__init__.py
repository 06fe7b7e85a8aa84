"""purgeman: purges Varnish caches when files change in iRODS."""

from purgeman.version import get_version

__version__ = get_version()
