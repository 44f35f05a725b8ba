"""
SHIPMENTS App - Dispatch & negotiation engine for PAP

Shipment lifecycle, courier decision windows, rejection escalation,
counter-offers and notification throttling.
"""
