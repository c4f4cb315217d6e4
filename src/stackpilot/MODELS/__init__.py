"""
Data models for compose discovery, project configuration, plans, runtime state and results.
"""
