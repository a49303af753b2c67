"""
chainstate Domain - graph storage, token budgeting, recovery, and coordination.
"""
