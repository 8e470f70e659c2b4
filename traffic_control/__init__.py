"""
Distributed traffic control network, simulated inside a single process.
"""

__version__ = "0.1.0"
