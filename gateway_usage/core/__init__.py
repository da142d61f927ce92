"""
Core modules for the gateway usage cache.

This package contains the query key codec, the page, graph and daily
caches, the summary resolver, the fallback generator and the refresh
scheduler, tied together by UsageCacheService.
"""
