"""
Parsers for compose files.
"""
