"""
Command line front end.
"""
