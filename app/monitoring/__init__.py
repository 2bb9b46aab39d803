"""Monitoring integration and aggregation layer.

Vendor-neutral readings, vendor sessions and connectors, normalization,
aggregation and sync scheduling. Modules here import nothing from Flask
except ``runtime``, which wires the async core to the app.
"""
