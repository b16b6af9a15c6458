"""
CMS backend: authorization engine for the multilingual content-management API.
"""
__version__ = "0.1.0"
