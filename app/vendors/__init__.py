"""Vendor API clients and the connector endpoints that drive them."""
