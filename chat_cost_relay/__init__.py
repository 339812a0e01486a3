"""
Chat Cost Relay.

Streams chat completions to the browser while accounting tokens and cost
for every exchange.
"""

__version__ = "1.0.0"
