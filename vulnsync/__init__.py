"""VulnSync: CPE vulnerability matching and NVD feed synchronization.

This package provides the matching engine that decides whether a CPE
identifier is affected by a catalogued vulnerable-software record, and
the controller that keeps the local catalog in step with the NVD feeds.
"""

__version__ = "0.1.0"
