"""
Campaign Provisioner

Bulk creation of campaign hierarchies on a rate-limited remote platform.
"""

__version__ = "1.0.0"
