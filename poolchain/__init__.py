"""
poolchain: staged grid-search calibration of a chained multi-pool first-order decay model against depth/age-resolved concentration data.
"""

__version__ = "0.1.0"
