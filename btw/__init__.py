"""
btw - voice-activated local assistant daemon
"""

__version__ = "0.1.0"
