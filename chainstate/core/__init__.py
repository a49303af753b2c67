"""
chainstate Core - record models, error kinds, and the event bus.
"""
