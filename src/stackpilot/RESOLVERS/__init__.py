"""
Discovery of compose files and resolution of the project configuration.
"""
