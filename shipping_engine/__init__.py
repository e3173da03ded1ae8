"""
Shipping Aggregation & Rate-Selection Engine

Talks to Indian courier-aggregator APIs (Shiprocket, Shipway, Shipyaari),
normalizes their responses, picks a rate by strategy, and drives the
shipment lifecycle and inbound webhooks.
"""
__version__ = "1.0.0"
