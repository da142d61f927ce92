"""
Panel configuration.
"""
