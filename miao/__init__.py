"""
miao - supervisor and configuration generator for the sing-box proxy engine.

Builds the engine configuration from subscriptions and manual nodes, compiles
the split-tunneling rule-set, and runs the engine with connectivity-verified
start/stop/restart behind a small HTTP API.
"""

__version__ = "0.1.0"
