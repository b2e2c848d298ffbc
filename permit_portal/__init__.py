"""
Permit Portal Resolver — one authoritative submission answer per jurisdiction.

Architecture: Cache → Offline heuristic → Cheap oracle → Expensive oracle → Resolver
Batch path:   Seed → Search → Endpoint classification → Crawl → Freshness → Parse
Philosophy:   Let the oracle propose. Let code, probes and humans decide.
"""

__version__ = "1.0.0"
