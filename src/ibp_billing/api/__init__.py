"""HTTP query layer for the IBP billing service."""
