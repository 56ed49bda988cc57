"""
ComptaX chat client for the OHADA accounting assistant
"""

__version__ = "0.1.0"
