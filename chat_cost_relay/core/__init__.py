"""
Core modules for Chat Cost Relay.

This package contains token counting and pricing, shared by the
streaming relay and the command line.
"""
