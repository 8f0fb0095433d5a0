"""
Shared plumbing: request context, error taxonomy, tile types, config and logging.
"""
