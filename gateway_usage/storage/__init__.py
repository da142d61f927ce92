"""
Storage layer: usage data models and query backends.
"""
