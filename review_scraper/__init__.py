"""
Multi-tier product review scraper.

Targets are canonicalized, then escalated through API discovery and replay,
direct API paging, server-rendered HTML paging and real-browser paging until
the wanted number of unique reviews is stored.
"""
