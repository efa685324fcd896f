"""
session/ — Workspace session state, its operation log, and archives.
"""
