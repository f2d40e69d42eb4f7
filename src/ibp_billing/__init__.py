"""IBP billing: cost aggregation and SLA credit engine for IBP GeoDNS members."""

__version__ = "0.1.0"
