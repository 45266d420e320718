"""
HTTP API for the Enrollment Platform.
"""
