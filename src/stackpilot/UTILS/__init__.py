"""
Small helpers shared by the parsers and resolvers.
"""
