"""
Orchestration, health monitoring, scaling and lifecycle hooks.
"""
