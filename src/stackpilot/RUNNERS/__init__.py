"""
Runtime command execution and execution planning.
"""
