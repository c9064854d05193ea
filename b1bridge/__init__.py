"""
b1bridge - resilient integration client for the SAP Business One Service Layer.
"""

__version__ = "0.1.0"
