"""Core billing engine: cost model, downtime merge, SLA evaluation, store and scheduler."""
